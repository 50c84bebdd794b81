"""Exception taxonomy shared by every orchestrator component."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .models import Diagnostic


class OrchestratorError(Exception):
    """Base class for all orchestrator failures."""


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

class PlanningError(OrchestratorError, ValueError):
    """Blueprint is malformed; the run must fail before any generation call."""


class CyclicDependencyError(PlanningError):
    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Task dependency graph contains a cycle: {' -> '.join(self.cycle)}")


class DanglingDependencyError(PlanningError):
    def __init__(self, component: str, dependency: str) -> None:
        self.component = component
        self.dependency = dependency
        super().__init__(f"Component {component} depends on unknown component {dependency}")


class NoPlanError(PlanningError):
    """The planner could not produce a blueprint for the request."""


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class GenerationError(OrchestratorError, RuntimeError):
    """A Generation Client call failed."""


class GenerationTransportError(GenerationError):
    """The provider could not be reached or answered with a transport-level failure."""


class GenerationTimeoutError(GenerationTransportError):
    """The provider call exceeded its deadline."""


class MalformedResponseError(GenerationError):
    """The provider answered but no usable payload could be decoded."""


class AbnormalStopError(GenerationError):
    """The provider stopped for a reason other than natural completion.

    ``reason`` is one of ``recitation``, ``safety`` or ``length``. ``partial_text``
    holds whatever text the provider emitted before stopping.
    """

    def __init__(self, reason: str, partial_text: str = "") -> None:
        self.reason = reason
        self.partial_text = partial_text
        super().__init__(f"Generation stopped abnormally: {reason}")


# ---------------------------------------------------------------------------
# Compilation / build / storage
# ---------------------------------------------------------------------------

class CompilationError(OrchestratorError, RuntimeError):
    def __init__(self, message: str, diagnostics: Sequence["Diagnostic"] = ()) -> None:
        self.diagnostics = list(diagnostics)
        super().__init__(message)


class BuildError(OrchestratorError, RuntimeError):
    def __init__(self, message: str, log_tail: str = "") -> None:
        self.log_tail = log_tail
        super().__init__(message)


class StorageError(OrchestratorError, RuntimeError):
    """Upload, download or persistence failed."""


class SandboxError(OrchestratorError, RuntimeError):
    """A sandbox file operation or command could not be carried out."""


class SandboxCommandTimeout(SandboxError):
    def __init__(self, command: str, timeout_seconds: float) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Command timed out after {timeout_seconds}s: {command}")


class RunCancelledError(OrchestratorError, RuntimeError):
    """The caller cancelled the run; nothing further is dispatched or promoted."""
