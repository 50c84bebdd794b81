from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Sequence

from .actions import ActionResult, apply_action, dedupe_actions
from .context_index import ContextIndex
from .errors import AbnormalStopError, GenerationError
from .generation import SupportsGenerate
from .llm import ImageAttachment
from .models import (
    ActionsResponse,
    ConversationMessage,
    ConversationState,
    FileAction,
    FilesResponse,
    GenerationResponse,
    TextResponse,
    WriteAction,
)
from .retry import RetryPolicy, call_with_retry
from .settings import DEFAULT_PROTECTED_FILES

logger = logging.getLogger(__name__)

_SOFTENED_REQUEST_CHARS = 600
_SOFTENED_PREAMBLE = (
    "Implement the following change in your own words and with original code. "
    "Keep the edit minimal and use the file actions only."
)


@dataclass(frozen=True)
class StepResult:
    files: dict[str, str]
    response_text: str
    done: bool
    state: ConversationState
    applied: list[ActionResult] = field(default_factory=list)
    iterations: int = 0
    error: str | None = None

    @property
    def changed_paths(self) -> list[str]:
        return touched_paths(self.applied)


def touched_paths(results: Iterable[ActionResult]) -> list[str]:
    """Paths written, edited, deleted or created by successful actions, in first-touch order."""
    paths: list[str] = []
    for result in results:
        if not result.success:
            continue
        for path in (result.action.path, getattr(result.action, "new_path", None)):
            if path and path not in paths:
                paths.append(path)
    return paths


def response_actions(response: GenerationResponse) -> tuple[list[FileAction], str]:
    """Return the file actions and user-facing text carried by a response."""
    if isinstance(response, ActionsResponse):
        return list(response.actions), response.message
    if isinstance(response, FilesResponse):
        return [WriteAction(path=item.path, content=item.content) for item in response.files], response.summary
    if isinstance(response, TextResponse):
        return [], response.text
    return [], ""


def render_history(messages: Iterable[ConversationMessage]) -> str:
    lines: list[str] = []
    for message in messages:
        label = f"tool:{message.tool_name}" if message.role == "tool" and message.tool_name else message.role
        lines.append(f"[{label}] {message.content}")
    return "\n".join(lines)


class ConversationalActionLoop:
    """Edits an existing project through repeated generate -> apply rounds.

    Each round sends the conversation so far plus the relevant files, applies the
    returned actions to a private copy of the files and feeds the results back. The
    loop ends when a round returns no actions (``done=True``) or after
    ``max_iterations`` action rounds (``done=False``).
    """

    def __init__(
        self,
        client: SupportsGenerate,
        *,
        max_iterations: int = 10,
        history_limit: int = 50,
        context_index: ContextIndex | None = None,
        context_k: int = 12,
        build_id: str | None = None,
        protected_files: Sequence[str] = DEFAULT_PROTECTED_FILES,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.client = client
        self.max_iterations = max_iterations
        self.history_limit = history_limit
        self.context_index = context_index
        self.context_k = context_k
        self.build_id = build_id
        self.protected_files = tuple(protected_files)
        self.policy = policy or RetryPolicy(max_attempts=3)
        self._sleep = sleep

    def _select_paths(self, state: ConversationState, files: Mapping[str, str], user_request: str) -> list[str]:
        if self.context_index is None:
            return sorted(files)
        paths = self.context_index.query(state.project_id, user_request, self.context_k, build_id=self.build_id)
        # Nothing indexed yet for this project: fall back to the whole tree.
        return [path for path in paths if path in files] or sorted(files)

    def _prompt(self, state: ConversationState) -> str:
        return (
            "Conversation so far:\n"
            f"{render_history(state.recent(self.history_limit))}\n\n"
            'Reply with {"kind": "actions", "actions": [...], "message": ...}. '
            "Return an empty action list once the request is fully handled."
        )

    @staticmethod
    def _softened_prompt(user_request: str) -> str:
        request = user_request.strip()
        if len(request) > _SOFTENED_REQUEST_CHARS:
            request = request[:_SOFTENED_REQUEST_CHARS].rstrip() + " ..."
        return f"{_SOFTENED_PREAMBLE}\n\nRequest: {request}"

    def _generate(self, prompt: str, context: Mapping[str, str], images: Sequence[ImageAttachment]) -> GenerationResponse:
        return call_with_retry(
            lambda: self.client.generate(prompt, context, images),
            policy=self.policy,
            description="Action loop generation",
            sleep=self._sleep,
        )

    def step(
        self,
        state: ConversationState,
        current_files: Mapping[str, str],
        user_request: str,
        images: Sequence[ImageAttachment] = (),
    ) -> StepResult:
        """Handle one user request against ``current_files``.

        ``current_files`` is never mutated; the returned ``files`` is a new mapping.

        Raises:
            AbnormalStopError: If the provider stops abnormally before any action was
                applied, both on the first call and on the softened retry.
            GenerationError: If generation fails before any action was applied.
        """
        files = dict(current_files)
        state = state.append(ConversationMessage(role="user", content=user_request))
        selected = self._select_paths(state, files, user_request)
        applied: list[ActionResult] = []
        response_text = ""
        iterations = 0
        softened = False
        prompt = self._prompt(state)

        while iterations < self.max_iterations:
            wanted = dict.fromkeys([*selected, *touched_paths(applied)])
            context = {path: files[path] for path in wanted if path in files}
            try:
                response = self._generate(prompt, context, images)
            except AbnormalStopError as exc:
                if any(result.success for result in applied):
                    logger.warning("Generation stopped (%s) after %d applied action(s); keeping progress", exc.reason, len(applied))
                    return StepResult(files, response_text, False, state, applied, iterations, error=str(exc))
                if softened:
                    logger.error("Softened retry also stopped abnormally (%s)", exc.reason)
                    raise
                logger.warning("Generation stopped (%s) before any change; retrying with a softened request", exc.reason)
                softened = True
                prompt = self._softened_prompt(user_request)
                continue
            except GenerationError as exc:
                if not any(result.success for result in applied):
                    raise
                logger.error("Generation failed after %d applied action(s); keeping progress: %s", len(applied), exc)
                return StepResult(files, response_text, False, state, applied, iterations, error=str(exc))

            actions, text = response_actions(response)
            unique = dedupe_actions(actions)
            if text:
                response_text = text
            state = state.append(
                ConversationMessage(
                    role="assistant",
                    content=text or f"{len(unique)} file action(s)",
                    metadata={"actions": [action.model_dump(mode="json") for action in unique]},
                )
            )
            if not unique:
                logger.info("Action loop finished after %d round(s)", iterations)
                return StepResult(files, response_text, True, state, applied, iterations)

            iterations += 1
            logger.info("Round %d/%d: applying %d action(s)", iterations, self.max_iterations, len(unique))
            for action in unique:
                result = apply_action(files, action, protected_files=self.protected_files)
                applied.append(result)
                state = state.append(
                    ConversationMessage(role="tool", tool_name=action.type, content=result.render())
                )
            prompt = self._prompt(state)

        logger.warning("Action loop hit its %d-round cap", self.max_iterations)
        return StepResult(files, response_text, False, state, applied, iterations)
