from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence

import openai

from .errors import AbnormalStopError, GenerationTimeoutError, GenerationTransportError, MalformedResponseError
from .llm import ImageAttachment, SupportsInvoke, abnormal_stop_reason, build_messages, get_chat_model, message_text
from .models import GenerationResponse
from .responses import decode_response
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You generate source files for a React + Vite + TypeScript + Tailwind web application. "
    'Answer with a single JSON object: {"kind": "files", "files": [{"path": ..., "content": ...}], '
    '"summary": ...} for new files, {"kind": "actions", "actions": [...], "message": ...} for edits, '
    'or {"kind": "text", "text": ...} when no file change is needed.'
)


class SupportsGenerate(Protocol):
    """Capability consumed by the executor, the action loop and the repair loop."""

    def generate(
        self,
        prompt: str,
        context_files: Mapping[str, str],
        images: Sequence[ImageAttachment] = (),
    ) -> GenerationResponse:
        ...


class GenerationClient:
    """Wraps a chat model and decodes its reply into the response union.

    One call is one attempt: transport failures raise ``GenerationTransportError``
    (``GenerationTimeoutError`` past the deadline), a provider-reported early stop
    raises ``AbnormalStopError``. Retrying is the caller's decision.
    """

    def __init__(self, model: SupportsInvoke, *, system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> None:
        self.model = model
        self.system_prompt = system_prompt

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        model_name: str | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> "GenerationClient":
        model = get_chat_model(
            model_name=model_name or settings.model_generation,
            temperature=0.2,
            timeout=settings.generation_timeout_seconds,
        )
        return cls(model, system_prompt=system_prompt)

    def _invoke(self, messages: list[Any]) -> Any:
        try:
            return self.model.invoke(messages)
        except openai.APITimeoutError as exc:
            raise GenerationTimeoutError(f"Generation call exceeded its deadline: {exc}") from exc
        except openai.APIStatusError as exc:
            raise GenerationTransportError(f"Provider returned HTTP {exc.status_code}: {exc.message}") from exc
        except openai.APIConnectionError as exc:
            raise GenerationTransportError(f"Provider unreachable: {exc}") from exc

    def generate(
        self,
        prompt: str,
        context_files: Mapping[str, str],
        images: Sequence[ImageAttachment] = (),
    ) -> GenerationResponse:
        """Send one generation request.

        Args:
            prompt: Task or conversation prompt.
            context_files: Project files (path -> content) rendered ahead of the prompt.
            images: Optional image attachments.

        Returns:
            ``FilesResponse``, ``ActionsResponse`` or ``TextResponse``.

        Raises:
            GenerationTransportError: Provider unreachable or failed at the HTTP level.
            AbnormalStopError: Provider stopped for recitation, safety or length.
            MalformedResponseError: Reply was empty or undecodable.
        """
        messages = build_messages(
            system_prompt=self.system_prompt,
            prompt=prompt,
            context_files=context_files,
            images=images,
        )
        reply = self._invoke(messages)
        text = message_text(reply)
        reason = abnormal_stop_reason(reply)
        if reason is not None:
            logger.warning("Generation stopped abnormally (%s) after %d chars", reason, len(text))
            raise AbnormalStopError(reason, partial_text=text)
        if not text.strip():
            raise MalformedResponseError("Provider returned an empty response")
        response = decode_response(text)
        logger.debug("Generation decoded as %s response", response.kind)
        return response
