from __future__ import annotations

import hashlib
import threading
from typing import Any, Callable, Mapping, Sequence

import pytest

from webgen_factory.models import FilesResponse, GeneratedFile, TextResponse
from webgen_factory.sandbox import CommandResult


@pytest.fixture(autouse=True)
def _deterministic_embeddings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep index tests offline: hash-based embeddings instead of OpenAI."""

    class _DeterministicEmbeddingFunction:
        def __init__(self, *, dims: int = 96) -> None:
            self._dims = dims

        def __call__(self, input):  # noqa: ANN001,ANN201
            if isinstance(input, str):
                values = [input]
            else:
                values = [str(item) for item in input]
            vectors: list[list[float]] = []
            for value in values:
                digest = hashlib.sha256(value.encode("utf-8")).digest()
                vector = [((digest[idx % len(digest)] / 255.0) * 2.0) - 1.0 for idx in range(self._dims)]
                vectors.append(vector)
            return vectors

        def embed_query(self, input):  # noqa: ANN001,ANN201
            return self.__call__(input)

        @staticmethod
        def name() -> str:
            return "default"

        @staticmethod
        def build_from_config(config: dict[str, object]):  # noqa: ANN205
            dims_raw = config.get("dims")
            if isinstance(dims_raw, int) and dims_raw > 0:
                return _DeterministicEmbeddingFunction(dims=dims_raw)
            return _DeterministicEmbeddingFunction()

        def get_config(self) -> dict[str, object]:
            return {"dims": self._dims}

        def is_legacy(self) -> bool:
            return False

        def default_space(self) -> str:
            return "cosine"

        def supported_spaces(self) -> list[str]:
            return ["cosine", "l2", "ip"]

    monkeypatch.setattr(
        "webgen_factory.context_index._build_embedding_function",
        lambda *, model_name: _DeterministicEmbeddingFunction(),
    )


def files_response(path: str, content: str) -> FilesResponse:
    return FilesResponse(files=[GeneratedFile(path=path, content=content)])


class FakeGenerationClient:
    """Scripted generation client.

    ``script`` is either a list consumed in call order (items may be responses or
    exceptions to raise) or a callable ``(prompt, context_files) -> response``.
    """

    def __init__(self, script: Sequence[Any] | Callable[[str, Mapping[str, str]], Any] = ()) -> None:
        self._script = script if callable(script) else list(script)
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def generate(self, prompt: str, context_files: Mapping[str, str], images: Sequence[Any] = ()) -> Any:
        with self._lock:
            self.calls.append({"prompt": prompt, "context_files": dict(context_files), "images": list(images)})
            if callable(self._script):
                result = self._script(prompt, context_files)
            elif self._script:
                result = self._script.pop(0)
            else:
                result = TextResponse(text="no scripted response left")
        if isinstance(result, BaseException):
            raise result
        return result


class FakeSandbox:
    """In-memory sandbox. ``handlers`` map a command string to ``fn(sandbox) -> CommandResult``."""

    def __init__(self, handlers: Mapping[str, Callable[["FakeSandbox"], CommandResult]] | None = None) -> None:
        self.files: dict[str, bytes] = {}
        self.handlers = dict(handlers or {})
        self.commands: list[str] = []

    def upload_file(self, path: str, data: bytes) -> None:
        self.files[path] = data

    def download_file(self, path: str) -> bytes:
        return self.files[path]

    def create_folder(self, path: str) -> None:
        return None

    def exists(self, path: str) -> bool:
        return path in self.files

    def list_files(self, directory: str) -> list[str]:
        prefix = directory.rstrip("/") + "/"
        return sorted(path for path in self.files if path.startswith(prefix))

    def remove(self, path: str) -> None:
        prefix = path.rstrip("/") + "/"
        for key in [key for key in self.files if key == path or key.startswith(prefix)]:
            del self.files[key]

    def text(self, path: str) -> str:
        return self.files[path].decode("utf-8")

    def run_command(self, command: str, timeout_seconds: float) -> CommandResult:
        self.commands.append(command)
        handler = self.handlers.get(command)
        if handler is None:
            return CommandResult(output="", exit_code=0)
        return handler(self)


def green_build(sandbox: FakeSandbox) -> CommandResult:
    sandbox.files["dist/index.html"] = b"<!doctype html><div id=root></div>"
    sandbox.files["dist/assets/index.js"] = b"console.log('app')"
    return CommandResult(output="vite v5 building for production...\nbuilt in 1.2s", exit_code=0)


@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()
