from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Mapping, Protocol, Sequence, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .errors import MalformedResponseError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

# Provider finish reasons that mean "stopped before a natural end".
_ABNORMAL_FINISH_REASONS: dict[str, str] = {
    "length": "length",
    "max_tokens": "length",
    "content_filter": "safety",
    "safety": "safety",
    "recitation": "recitation",
}


class SupportsInvoke(Protocol):
    def invoke(self, input: Any) -> Any:  # noqa: ANN401
        ...


@dataclass(frozen=True)
class ImageAttachment:
    media_type: str
    data: bytes

    def as_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional repo root path to search for .env file.

    Returns:
        The API key string.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for generation and embedding calls")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = 120,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with a hard request deadline.

    Client-side retries are disabled (``max_retries=0``); attempts are bounded by
    ``retry.call_with_retry`` at the call site instead.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": 0,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def build_messages(
    *,
    system_prompt: str,
    prompt: str,
    context_files: Mapping[str, str],
    images: Sequence[ImageAttachment] = (),
) -> list[BaseMessage]:
    """Render the system prompt, file context and user prompt as chat messages.

    Context files are rendered as ``FILE: <path>`` blocks ahead of the prompt.
    Images become ``image_url`` content parts on the human message.
    """
    sections: list[str] = []
    if context_files:
        rendered = "\n\n".join(f"FILE: {path}\n```\n{content}\n```" for path, content in context_files.items())
        sections.append(f"Project files:\n\n{rendered}")
    sections.append(prompt)
    text = "\n\n".join(sections)

    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    if images:
        parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
        parts.extend({"type": "image_url", "image_url": {"url": image.as_data_url()}} for image in images)
        messages.append(HumanMessage(content=parts))
    else:
        messages.append(HumanMessage(content=text))
    return messages


def message_text(message: Any) -> str:
    """Flatten a LangChain message's content (string or content-part list) into text."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for part in content:
            if isinstance(part, str):
                chunks.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                chunks.append(str(part.get("text", "")))
        return "".join(chunks)
    return str(content or "")


def abnormal_stop_reason(message: Any) -> str | None:
    """Return ``recitation``, ``safety`` or ``length`` when the provider stopped early, else None."""
    metadata = getattr(message, "response_metadata", None) or {}
    raw = metadata.get("finish_reason") or metadata.get("stop_reason")
    if not raw:
        return None
    return _ABNORMAL_FINISH_REASONS.get(str(raw).strip().lower())


def coerce_structured_output(raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Turn whatever a ``with_structured_output(..., include_raw=True)`` runnable returned into ``schema``.

    Accepts the ``{"raw", "parsed", "parsing_error"}`` envelope, an instance of
    ``schema`` or another pydantic model, or a plain mapping.

    Raises:
        MalformedResponseError: If nothing validates against ``schema``.
    """
    name = schema.__name__
    candidate = raw_output
    if isinstance(candidate, Mapping) and {"parsed", "parsing_error"} <= set(candidate):
        error = candidate.get("parsing_error")
        if error is not None:
            raise MalformedResponseError(f"{name}: provider output did not parse ({error!r})") from error
        candidate = candidate.get("parsed")

    if isinstance(candidate, schema):
        return candidate
    if isinstance(candidate, BaseModel):
        candidate = candidate.model_dump(mode="json")
    if not isinstance(candidate, Mapping):
        raise MalformedResponseError(f"{name}: expected an object, got {type(candidate).__name__}")
    try:
        return schema.model_validate(dict(candidate))
    except ValidationError as exc:
        raise MalformedResponseError(f"{name}: {exc.error_count()} validation error(s): {exc}") from exc


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Invokes a schema-bound runnable and validates what comes back."""

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str) -> ModelT:
        return coerce_structured_output(self.runnable.invoke(prompt), self.schema)


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = 120,
    method: StructuredOutputMethod = "function_calling",
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    model = get_chat_model(model_name=model_name, temperature=temperature, timeout=timeout, repo_root=repo_root)
    return StructuredOutputAdapter(schema, model.with_structured_output(schema, method=method, include_raw=True))
