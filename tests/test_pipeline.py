from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Any, Mapping

import pytest

from conftest import FakeGenerationClient, FakeSandbox, files_response, green_build
from webgen_factory.__main__ import load_request, main
from webgen_factory.context_index import ContextIndex
from webgen_factory.errors import GenerationTransportError, StorageError
from webgen_factory.models import ActionsResponse, Blueprint, BuildStatus, ComponentSpec, RunOutcome, WriteAction
from webgen_factory.pipeline import WebAppOrchestrator, read_tree
from webgen_factory.planner import Planner
from webgen_factory.retry import RetryPolicy
from webgen_factory.sandbox import CommandResult
from webgen_factory.settings import RuntimeSettings
from webgen_factory.state_store import ProjectStore

PROJECT = "PROJECT-001"
_TARGET_RE = re.compile(r"contents of `([^`]+)`")

BLUEPRINT = Blueprint(
    project_name="bakery",
    summary="Landing page for a neighbourhood bakery",
    components=[
        ComponentSpec(file_path="src/pages/Index.tsx", purpose="Home page with hero and opening hours"),
        ComponentSpec(file_path="src/App.tsx", purpose="Router shell", dependencies=["src/pages/Index.tsx"]),
    ],
)


class _StaticAdapter:
    def __init__(self, blueprint: Blueprint) -> None:
        self.blueprint = blueprint

    def invoke(self, prompt: str) -> Blueprint:
        return self.blueprint


def _echo(prompt: str, context: Mapping[str, str]) -> Any:
    target = _TARGET_RE.search(prompt).group(1)
    return files_response(target, f"export default function Page() {{ return '{target}'; }}\n")


def _orchestrator(
    tmp_path: Path,
    *,
    blueprint: Blueprint = BLUEPRINT,
    client: FakeGenerationClient | None = None,
    sandbox: FakeSandbox | None = None,
    context_index: ContextIndex | None = None,
    checkpoint: bool = False,
    cancel_event: threading.Event | None = None,
) -> WebAppOrchestrator:
    settings = RuntimeSettings(
        state_store_root=str(tmp_path / "state"),
        repair_max_attempts=1,
        retry_backoff_seconds=0.0,
        retry_backoff_cap_seconds=0.0,
    )
    return WebAppOrchestrator(
        settings=settings,
        planner=Planner(_StaticAdapter(blueprint), policy=RetryPolicy(max_attempts=1)),
        client=client or FakeGenerationClient(_echo),
        repair_client=FakeGenerationClient(),
        sandbox=sandbox or FakeSandbox({settings.build_command: green_build}),
        state_root=tmp_path / "state",
        context_index=context_index,
        checkpoint=checkpoint,
        cancel_event=cancel_event,
    )


def test_generate_plans_builds_and_promotes(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, checkpoint=True)
    try:
        report = orchestrator.generate("A bakery landing page", base_files={"src/main.tsx": "import App from './App';\n"})
    finally:
        orchestrator.close()

    assert report.outcome == RunOutcome.SUCCEEDED
    assert report.failure_reason is None
    assert report.build is not None
    assert report.build.status == BuildStatus.SUCCESS
    assert report.build.version == 1
    current = ProjectStore(tmp_path / "state", project_id=PROJECT).current_files()
    assert sorted(current) == ["src/App.tsx", "src/main.tsx", "src/pages/Index.tsx"]
    steps = [update.step for update in orchestrator.status.history(report.run_id)]
    assert steps == ["plan", "execute", "validate", "promote", "done"]
    assert (tmp_path / "state" / "checkpoints" / "pipeline.sqlite").is_file()


def test_cyclic_blueprint_fails_without_generation(tmp_path: Path) -> None:
    cyclic = Blueprint(
        components=[
            ComponentSpec(file_path="src/A.tsx", purpose="a", dependencies=["src/B.tsx"]),
            ComponentSpec(file_path="src/B.tsx", purpose="b", dependencies=["src/A.tsx"]),
        ]
    )
    client = FakeGenerationClient(_echo)

    report = _orchestrator(tmp_path, blueprint=cyclic, client=client).generate("Anything")

    assert report.outcome == RunOutcome.FAILED
    assert "CyclicDependencyError" in (report.failure_reason or "")
    assert client.call_count == 0
    assert report.build is None


def test_empty_plan_fails_the_run(tmp_path: Path) -> None:
    report = _orchestrator(tmp_path, blueprint=Blueprint()).generate("Anything")

    assert report.outcome == RunOutcome.FAILED
    assert "NoPlanError" in (report.failure_reason or "")


def test_compile_errors_that_never_clear_block_promotion(tmp_path: Path) -> None:
    settings = RuntimeSettings()
    broken = CommandResult(output="src/App.tsx(1,1): error TS2339: Property 'x' does not exist.\n", exit_code=2)
    sandbox = FakeSandbox({settings.compile_command: lambda box: broken, settings.build_command: green_build})

    report = _orchestrator(tmp_path, sandbox=sandbox).generate("A bakery landing page")

    assert report.outcome == RunOutcome.FAILED
    assert [item.code for item in report.diagnostics] == ["TS2339"]
    assert report.build is None
    assert settings.build_command not in sandbox.commands
    assert ProjectStore(tmp_path / "state", project_id=PROJECT).current_build() is None


def test_failed_build_is_reported_and_nothing_promoted(tmp_path: Path) -> None:
    settings = RuntimeSettings()
    sandbox = FakeSandbox({settings.build_command: lambda box: CommandResult(output="ok", exit_code=0)})

    report = _orchestrator(tmp_path, sandbox=sandbox).generate("A bakery landing page")

    assert report.outcome == RunOutcome.FAILED
    assert "BuildError" in (report.failure_reason or "")
    store = ProjectStore(tmp_path / "state", project_id=PROJECT)
    assert store.current_build() is None
    assert [record.status for record in store.list_builds()] == [BuildStatus.FAILED]


def test_cancelled_run_is_not_promoted(tmp_path: Path) -> None:
    cancel = threading.Event()
    cancel.set()

    report = _orchestrator(tmp_path, cancel_event=cancel).generate("A bakery landing page")

    assert report.outcome == RunOutcome.FAILED
    assert report.cancelled is True
    assert ProjectStore(tmp_path / "state", project_id=PROJECT).list_builds() == []


def test_chat_amends_current_version(tmp_path: Path) -> None:
    rounds: list[int] = []

    def script(prompt: str, context: Mapping[str, str]) -> Any:
        if "Conversation so far" not in prompt:
            return _echo(prompt, context)
        rounds.append(1)
        if len(rounds) == 1:
            return ActionsResponse(
                actions=[WriteAction(path="src/components/Footer.tsx", content="export default function Footer() {}\n")],
                message="Added a footer.",
            )
        return ActionsResponse(actions=[])

    index = ContextIndex(tmp_path / "index", always_relevant_files=("src/App.tsx",))
    orchestrator = _orchestrator(tmp_path, client=FakeGenerationClient(script), context_index=index)
    first = orchestrator.generate("A bakery landing page")

    outcome = orchestrator.chat("Add a footer with opening hours")

    assert outcome.failure is None
    assert outcome.step.done is True
    assert outcome.step.response_text == "Added a footer."
    assert outcome.build is not None
    assert outcome.build.record.version == 2
    store = ProjectStore(tmp_path / "state", project_id=PROJECT)
    assert "src/components/Footer.tsx" in store.current_files()
    assert [amendment.file_paths for amendment in store.list_amendments()] == [["src/components/Footer.tsx"]]
    assert [message.role for message in store.read_conversation()][:2] == ["user", "assistant"]
    assert index.latest_build_id(PROJECT) == outcome.build.record.build_id

    record = orchestrator.rollback(1)
    assert record.build_id == first.build.build_id
    assert "src/components/Footer.tsx" not in store.current_files()
    assert index.latest_build_id(PROJECT) == first.build.build_id


def test_chat_without_changes_promotes_nothing(tmp_path: Path) -> None:
    client = FakeGenerationClient(lambda prompt, context: ActionsResponse(actions=[], message="Already done."))
    outcome = _orchestrator(tmp_path, client=client).chat("Is there a footer?")

    assert outcome.step.done is True
    assert outcome.build is None
    assert outcome.repair is None


def test_read_tree_skips_build_output(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.tsx").write_text("import App from './App';\n", encoding="utf-8")
    (tmp_path / "dist").mkdir()
    (tmp_path / "dist" / "index.html").write_text("<html/>", encoding="utf-8")
    (tmp_path / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\xff\xfe")

    assert read_tree(tmp_path) == {"src/main.tsx": "import App from './App';\n"}
    with pytest.raises(FileNotFoundError):
        read_tree(tmp_path / "missing")


def test_load_request_validation(tmp_path: Path) -> None:
    request_file = tmp_path / "request.md"
    request_file.write_text("# Bakery\n", encoding="utf-8")

    assert load_request(request_file=None, request_text="  A bakery  ") == "A bakery"
    assert load_request(request_file=request_file, request_text=None) == "# Bakery\n"
    with pytest.raises(ValueError):
        load_request(request_file=request_file, request_text="x")
    with pytest.raises(ValueError):
        load_request(request_file=None, request_text=None)
    with pytest.raises(FileNotFoundError):
        load_request(request_file=tmp_path / "missing.md", request_text=None)


def test_cli_rejects_missing_request_before_building_anything(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_from_settings(*args: object, **kwargs: object) -> None:
        raise AssertionError("orchestrator must not be constructed")

    monkeypatch.setattr(WebAppOrchestrator, "from_settings", fail_from_settings)
    assert main(["generate"]) == 1


def test_chat_generation_failure_is_reported_and_request_kept(tmp_path: Path) -> None:
    client = FakeGenerationClient(lambda prompt, context: GenerationTransportError("provider unreachable"))

    outcome = _orchestrator(tmp_path, client=client).chat("Add a footer")

    assert "GenerationTransportError" in (outcome.failure or "")
    assert outcome.build is None
    assert outcome.step.done is False
    assert outcome.step.error == "provider unreachable"
    conversation = ProjectStore(tmp_path / "state", project_id=PROJECT).read_conversation()
    assert [(message.role, message.content) for message in conversation] == [("user", "Add a footer")]


def test_cli_reports_orchestrator_errors_without_traceback(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    closed: list[bool] = []

    class _Failing:
        def chat(self, request: str, *, project_id: str | None = None) -> Any:
            raise StorageError("disk full")

        def close(self) -> None:
            closed.append(True)

    monkeypatch.setattr(WebAppOrchestrator, "from_settings", lambda settings: _Failing())

    with caplog.at_level(logging.ERROR):
        assert main(["chat", "Add a footer"]) == 1

    assert closed == [True]
    failures = [record for record in caplog.records if "disk full" in record.getMessage()]
    assert failures
    assert all(record.exc_info is None for record in failures)
