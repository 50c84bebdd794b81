from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    return datetime.now(UTC)


def normalize_file_path(path: str) -> str:
    """Normalize a project-relative path (strip workspace prefixes and leading ``./`` or ``/``)."""
    value = path.strip().replace("\\", "/")
    if value.startswith("/workspace/"):
        value = value[len("/workspace/"):]
    while value.startswith("./"):
        value = value[2:]
    value = value.lstrip("/")
    if not value:
        raise ValueError("file path must be non-empty")
    if any(part == ".." for part in value.split("/")):
        raise ValueError(f"file path escapes the project root: {path}")
    return value


# ---------------------------------------------------------------------------
# Blueprint
# ---------------------------------------------------------------------------

class RouteSection(BaseModel):
    name: str
    description: str = ""
    required_elements: dict[str, int] = Field(default_factory=dict)


class Route(BaseModel):
    path: str
    name: str
    sections: list[RouteSection] = Field(default_factory=list)


class ComponentSpec(BaseModel):
    """One generated file and the component files it depends on."""

    file_path: str
    purpose: str
    dependencies: list[str] = Field(default_factory=list)

    @field_validator("file_path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        return normalize_file_path(value)

    @field_validator("dependencies")
    @classmethod
    def _normalize_dependencies(cls, value: list[str]) -> list[str]:
        return [normalize_file_path(item) for item in value]


class Blueprint(BaseModel):
    """Planned routes and components for one generation run. Read-only to the executor."""

    model_config = ConfigDict(frozen=True)

    project_name: str = ""
    summary: str = ""
    style_directives: str = ""
    routes: list[Route] = Field(default_factory=list)
    components: list[ComponentSpec] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Tasks and staged files
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class Task(BaseModel):
    task_id: str
    target_file_path: str
    description: str
    depends_on: list[str] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING


class StagedFileSet(BaseModel):
    """Working tree accumulated during one run (path -> content)."""

    files: dict[str, str] = Field(default_factory=dict)

    def write(self, path: str, content: str) -> None:
        self.files[normalize_file_path(path)] = content

    def delete(self, path: str) -> bool:
        return self.files.pop(normalize_file_path(path), None) is not None

    def get(self, path: str) -> str | None:
        return self.files.get(normalize_file_path(path))

    def subset(self, paths: list[str]) -> dict[str, str]:
        selected: dict[str, str] = {}
        for path in paths:
            content = self.get(path)
            if content is not None:
                selected[normalize_file_path(path)] = content
        return selected

    def copy_files(self) -> "StagedFileSet":
        return StagedFileSet(files=dict(self.files))

    def paths(self) -> list[str]:
        return sorted(self.files)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and normalize_file_path(path) in self.files


# ---------------------------------------------------------------------------
# Generation client responses (tagged union)
# ---------------------------------------------------------------------------

class GeneratedFile(BaseModel):
    path: str
    content: str

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        return normalize_file_path(value)


class WriteAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["write"] = "write"
    path: str
    content: str


class ReplaceRegionAction(BaseModel):
    """Replace ``search`` with ``replace`` inside lines ``first_line..last_line`` (1-indexed, inclusive)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["replace_region"] = "replace_region"
    path: str
    search: str
    replace: str
    first_line: int = Field(ge=1)
    last_line: int = Field(ge=1)


class DeleteAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["delete"] = "delete"
    path: str


class RenameAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["rename"] = "rename"
    path: str
    new_path: str


FileAction = Annotated[
    Union[WriteAction, ReplaceRegionAction, DeleteAction, RenameAction],
    Field(discriminator="type"),
]


class FilesResponse(BaseModel):
    kind: Literal["files"] = "files"
    files: list[GeneratedFile]
    summary: str = ""


class ActionsResponse(BaseModel):
    kind: Literal["actions"] = "actions"
    actions: list[FileAction] = Field(default_factory=list)
    message: str = ""


class TextResponse(BaseModel):
    kind: Literal["text"] = "text"
    text: str


GenerationResponse = Annotated[
    Union[FilesResponse, ActionsResponse, TextResponse],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

class Diagnostic(BaseModel):
    model_config = ConfigDict(frozen=True)

    file_path: str
    line: int
    column: int
    code: str
    message: str

    def render(self) -> str:
        return f"{self.file_path}({self.line},{self.column}): error {self.code}: {self.message}"


class RepairAttempt(BaseModel):
    iteration: int
    stage: Literal["deterministic", "ai", "export"]
    diagnostics_before: list[Diagnostic]
    diagnostics_after: list[Diagnostic]
    files_touched: list[str]


class RepairResult(BaseModel):
    files: StagedFileSet
    ok: bool
    remaining_diagnostics: list[Diagnostic] = Field(default_factory=list)
    attempts: list[RepairAttempt] = Field(default_factory=list)
    check_count: int = 0
    ai_fix_calls: int = 0
    ai_fix_failures: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Builds
# ---------------------------------------------------------------------------

class BuildStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class BuildRecord(BaseModel):
    build_id: str = Field(default_factory=lambda: f"BUILD-{uuid.uuid4().hex[:12]}")
    project_id: str
    user_id: str
    version: int
    status: BuildStatus = BuildStatus.PENDING
    created_at: datetime = Field(default_factory=_utc_now)
    finalized_at: datetime | None = None
    storage_prefix: str = ""
    build_hash: str | None = None
    file_count: int = 0
    error: str | None = None


class BuildArtifact(BaseModel):
    record: BuildRecord
    artifact_paths: list[str]
    storage_prefix: str
    indexed_chunks: int = 0
    index_error: str | None = None


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


class ConversationMessage(BaseModel):
    sequence: int = 0
    role: MessageRole
    content: str
    tool_name: str | None = None
    tool_call_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)


class ConversationState(BaseModel):
    """Conversation history threaded explicitly through every action-loop step."""

    project_id: str
    messages: list[ConversationMessage] = Field(default_factory=list)

    def append(self, message: ConversationMessage) -> "ConversationState":
        next_sequence = self.messages[-1].sequence + 1 if self.messages else 1
        stamped = message.model_copy(update={"sequence": next_sequence})
        return self.model_copy(update={"messages": [*self.messages, stamped]})

    def recent(self, limit: int) -> list[ConversationMessage]:
        return self.messages[-limit:] if limit > 0 else []


class Amendment(BaseModel):
    amendment_id: str = Field(default_factory=lambda: f"AMD-{uuid.uuid4().hex[:12]}")
    project_id: str
    build_id: str | None = None
    prompt: str
    summary: str
    file_paths: list[str]
    created_at: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Run reporting
# ---------------------------------------------------------------------------

class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_SKIPS = "succeeded_with_skips"
    FAILED = "failed"


class TaskOutcome(BaseModel):
    task_id: str
    target_file_path: str
    status: TaskStatus
    attempts: int = 0
    error: str | None = None
    started_seq: int | None = None
    finished_seq: int | None = None
    skipped_because: list[str] = Field(default_factory=list)


class RunReport(BaseModel):
    run_id: str = Field(default_factory=lambda: f"RUN-{uuid.uuid4().hex[:8]}")
    project_id: str = ""
    outcome: RunOutcome = RunOutcome.SUCCEEDED
    tasks: list[TaskOutcome] = Field(default_factory=list)
    skipped_paths: list[str] = Field(default_factory=list)
    failed_paths: list[str] = Field(default_factory=list)
    cancelled: bool = False
    failure_reason: str | None = None
    diagnostics: list[Diagnostic] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    build: BuildRecord | None = None

    def mark_failed(self, reason: str) -> None:
        self.outcome = RunOutcome.FAILED
        self.failure_reason = reason
