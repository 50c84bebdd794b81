from importlib.metadata import version

from .action_loop import ConversationalActionLoop, StepResult
from .build_gate import BuildGate
from .context_index import ContextIndex
from .diagnostics import DEFAULT_RULES, DiagnosticRule
from .errors import (
    AbnormalStopError,
    BuildError,
    CompilationError,
    CyclicDependencyError,
    DanglingDependencyError,
    GenerationError,
    GenerationTimeoutError,
    GenerationTransportError,
    MalformedResponseError,
    NoPlanError,
    OrchestratorError,
    PlanningError,
    RunCancelledError,
    StorageError,
)
from .executor import TaskGraphExecutor
from .generation import GenerationClient
from .models import (
    ActionsResponse,
    Blueprint,
    BuildArtifact,
    BuildRecord,
    BuildStatus,
    ComponentSpec,
    ConversationState,
    Diagnostic,
    FilesResponse,
    RepairResult,
    RunOutcome,
    RunReport,
    StagedFileSet,
    Task,
    TaskStatus,
    TextResponse,
)
from .pipeline import WebAppOrchestrator
from .planner import Planner
from .repair import RepairLoop
from .retry import RetryPolicy, call_with_retry
from .settings import RuntimeSettings


def get_version() -> str:
    try:
        return version("webgen-factory")
    except Exception:
        return "0.0.0"


__all__ = [
    "AbnormalStopError",
    "ActionsResponse",
    "Blueprint",
    "BuildArtifact",
    "BuildError",
    "BuildGate",
    "BuildRecord",
    "BuildStatus",
    "CompilationError",
    "ComponentSpec",
    "ContextIndex",
    "ConversationState",
    "ConversationalActionLoop",
    "CyclicDependencyError",
    "DEFAULT_RULES",
    "DanglingDependencyError",
    "Diagnostic",
    "DiagnosticRule",
    "FilesResponse",
    "GenerationClient",
    "GenerationError",
    "GenerationTimeoutError",
    "GenerationTransportError",
    "MalformedResponseError",
    "NoPlanError",
    "OrchestratorError",
    "PlanningError",
    "Planner",
    "RepairLoop",
    "RepairResult",
    "RetryPolicy",
    "RunCancelledError",
    "RunOutcome",
    "RunReport",
    "RuntimeSettings",
    "StagedFileSet",
    "StepResult",
    "Task",
    "TaskGraphExecutor",
    "TaskStatus",
    "TextResponse",
    "WebAppOrchestrator",
    "call_with_retry",
    "get_version",
]
