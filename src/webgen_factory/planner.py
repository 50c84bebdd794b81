from __future__ import annotations

import logging
from typing import Protocol, Sequence

from .errors import NoPlanError
from .llm import get_structured_chat_model
from .models import Blueprint
from .retry import RetryPolicy, call_with_retry, linear_backoff
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

PLANNER_INSTRUCTIONS = """You are a web application architect planning a React + Vite + TypeScript + Tailwind app.
Produce a blueprint:
- routes: every page with its path, name and sections (required_elements counts what each section shows).
- components: one entry per source file to generate (file_path under src/), its purpose, and
  the file_paths of other planned components or existing files it imports (dependencies).
- Components take zero props and own their content. Pages live in src/pages/, shared pieces in src/components/.
- src/App.tsx must be planned and must depend on every page it routes to.
- Dependencies must not form cycles.
- style_directives: palette, typography and layout rules every file must follow."""


class SupportsStructuredInvoke(Protocol):
    def invoke(self, prompt: str) -> Blueprint:
        ...


class Planner:
    """Turns a user request into a ``Blueprint`` via schema-constrained generation.

    No usable blueprint is fatal for the run: ``NoPlanError`` is raised instead of
    falling back to unplanned generation.
    """

    def __init__(self, adapter: SupportsStructuredInvoke, *, policy: RetryPolicy | None = None) -> None:
        self.adapter = adapter
        self.policy = policy or RetryPolicy(max_attempts=2)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "Planner":
        adapter = get_structured_chat_model(
            model_name=settings.model_planner,
            schema=Blueprint,
            temperature=0.0,
            timeout=settings.generation_timeout_seconds,
        )
        policy = RetryPolicy(
            max_attempts=settings.task_max_attempts,
            backoff=linear_backoff(settings.retry_backoff_seconds, settings.retry_backoff_cap_seconds),
        )
        return cls(adapter, policy=policy)

    @staticmethod
    def build_prompt(request: str, existing_paths: Sequence[str] = ()) -> str:
        sections = [PLANNER_INSTRUCTIONS, f"User request:\n{request.strip()}"]
        if existing_paths:
            sections.append("Files already present in the project:\n" + "\n".join(f"- {path}" for path in existing_paths))
        return "\n\n".join(sections)

    def plan(self, request: str, existing_paths: Sequence[str] = ()) -> Blueprint:
        """Plan the files to generate for ``request``.

        Raises:
            NoPlanError: If the request is blank, the model output cannot be validated
                as a blueprint, or the blueprint plans no components.
        """
        if not request.strip():
            raise NoPlanError("Cannot plan an empty request")
        prompt = self.build_prompt(request, existing_paths)
        try:
            blueprint = call_with_retry(lambda: self.adapter.invoke(prompt), policy=self.policy, description="Planning")
        except RuntimeError as exc:
            raise NoPlanError(f"Planner returned no usable blueprint: {exc}") from exc
        if not blueprint.components:
            raise NoPlanError("Planner returned a blueprint without components")
        logger.info(
            "Planned %d route(s) and %d component(s) for %s",
            len(blueprint.routes),
            len(blueprint.components),
            blueprint.project_name or "project",
        )
        return blueprint
