"""End-to-end orchestration: plan -> execute -> validate -> promote, plus conversational amendments."""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, TypedDict

from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph

from .action_loop import ConversationalActionLoop, StepResult
from .build_gate import BuildGate
from .context_index import ContextIndex
from .errors import OrchestratorError
from .executor import TaskGraphExecutor
from .generation import GenerationClient, SupportsGenerate
from .imports import undeclared_packages
from .models import (
    Amendment,
    Blueprint,
    BuildArtifact,
    BuildRecord,
    ConversationMessage,
    ConversationState,
    Diagnostic,
    RepairResult,
    RunReport,
    StagedFileSet,
    Task,
)
from .planner import Planner
from .repair import RepairLoop
from .retry import RetryPolicy, always_retry, linear_backoff
from .sandbox import LocalSandbox, Sandbox
from .settings import RuntimeSettings
from .state_store import ArtifactStore, ProjectStore
from .status import StatusTracker

logger = logging.getLogger(__name__)

_SKIPPED_TREE_PARTS = {"node_modules", "dist", ".git", ".vite"}


def read_tree(root: Path) -> dict[str, str]:
    """Load every UTF-8 text file under ``root`` (dependency and build folders excluded)."""
    if not root.is_dir():
        raise FileNotFoundError(f"Directory does not exist: {root}")
    files: dict[str, str] = {}
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if not path.is_file() or _SKIPPED_TREE_PARTS.intersection(relative.parts):
            continue
        try:
            files[relative.as_posix()] = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            logger.debug("Skipping non-text file %s", relative)
    return files


class PipelineState(TypedDict, total=False):
    run_id: str
    project_id: str
    request: str
    base_files: dict[str, str]
    blueprint: dict[str, Any]
    staged_files: dict[str, str]
    report: dict[str, Any]
    repair: dict[str, Any]
    build: dict[str, Any]
    warnings: list[str]
    failure: str | None


@dataclass
class ChatOutcome:
    step: StepResult
    repair: RepairResult | None = None
    build: BuildArtifact | None = None
    amendment: Amendment | None = None
    failure: str | None = None


class WebAppOrchestrator:
    """Runs one generation request through the plan/execute/validate/promote graph.

    Collaborators are passed in explicitly; ``from_settings`` wires the default
    OpenAI, local sandbox and filesystem-store implementations.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        planner: Planner,
        client: SupportsGenerate,
        repair_client: SupportsGenerate,
        sandbox: Sandbox,
        state_root: Path,
        context_index: ContextIndex | None = None,
        status: StatusTracker | None = None,
        cancel_event: threading.Event | None = None,
        checkpoint: bool = True,
    ) -> None:
        self.settings = settings
        self.planner = planner
        self.client = client
        self.repair_client = repair_client
        self.sandbox = sandbox
        self.state_root = state_root
        self.context_index = context_index
        self.status = status or StatusTracker()
        self.cancel_event = cancel_event or threading.Event()
        self.artifacts = ArtifactStore(state_root / "artifacts")
        self.gate = BuildGate(
            sandbox,
            state_root=state_root,
            artifacts=self.artifacts,
            user_id=settings.user_id,
            context_index=context_index,
            build_command=settings.build_command,
            output_dir=settings.build_output_dir,
            root_artifact=settings.root_artifact,
            build_timeout_seconds=settings.build_timeout_seconds,
            transfer_timeout_seconds=settings.transfer_timeout_seconds,
            cancel_event=self.cancel_event,
        )
        self._conn: sqlite3.Connection | None = None
        if checkpoint:
            checkpoint_path = state_root / "checkpoints" / "pipeline.sqlite"
            checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(checkpoint_path, check_same_thread=False)
            self.graph = self._build_graph().compile(checkpointer=SqliteSaver(self._conn))
        else:
            self.graph = self._build_graph().compile()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "WebAppOrchestrator":
        state_root = settings.state_store_path(repo_root or Path.cwd())
        return cls(
            settings=settings,
            planner=Planner.from_settings(settings),
            client=GenerationClient.from_settings(settings),
            repair_client=GenerationClient.from_settings(settings, model_name=settings.model_repair),
            sandbox=LocalSandbox(settings.workspace_root_path),
            state_root=state_root,
            context_index=ContextIndex(
                state_root / "context_index",
                embedding_model=settings.embedding_model,
                always_relevant_files=settings.always_relevant_files,
                literal_cap=settings.context_literal_cap,
                max_chars=settings.chunk_max_chars,
                overlap=settings.chunk_overlap,
            ),
        )

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def store_for(self, project_id: str) -> ProjectStore:
        return ProjectStore(self.state_root, project_id=project_id, user_id=self.settings.user_id)

    def _retry_policy(self, is_retryable: Any = None) -> RetryPolicy:
        backoff = linear_backoff(self.settings.retry_backoff_seconds, self.settings.retry_backoff_cap_seconds)
        if is_retryable is None:
            return RetryPolicy(max_attempts=self.settings.task_max_attempts, backoff=backoff)
        return RetryPolicy(max_attempts=self.settings.task_max_attempts, backoff=backoff, is_retryable=is_retryable)

    def _repair_loop(self) -> RepairLoop:
        return RepairLoop(
            self.sandbox,
            self.repair_client,
            compile_command=self.settings.compile_command,
            max_attempts=self.settings.repair_max_attempts,
            deterministic_rounds=self.settings.repair_deterministic_rounds,
            files_per_round=self.settings.ai_fix_files_per_round,
            compile_timeout_seconds=self.settings.compile_timeout_seconds,
            policy=self._retry_policy(),
            cancel_event=self.cancel_event,
        )

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineState)
        graph.add_node("plan", self._plan_node)
        graph.add_node("execute", self._execute_node)
        graph.add_node("validate", self._validate_node)
        graph.add_node("promote", self._promote_node)

        graph.add_edge(START, "plan")
        graph.add_conditional_edges("plan", self._continue_route, {"next": "execute", "end": END})
        graph.add_conditional_edges("execute", self._continue_route, {"next": "validate", "end": END})
        graph.add_conditional_edges("validate", self._continue_route, {"next": "promote", "end": END})
        graph.add_edge("promote", END)
        return graph

    def _continue_route(self, state: PipelineState) -> str:
        if state.get("failure") or self.cancel_event.is_set():
            return "end"
        return "next"

    def _plan_node(self, state: PipelineState) -> dict[str, Any]:
        self.status.add(state["run_id"], "plan", "Planning routes and components", progress=5)
        try:
            blueprint = self.planner.plan(state["request"], existing_paths=sorted(state.get("base_files", {})))
        except OrchestratorError as exc:
            logger.error("Planning failed: %s", exc)
            return {"failure": f"{type(exc).__name__}: {exc}"}
        return {"blueprint": blueprint.model_dump(mode="json")}

    def _context_provider(self, project_id: str, base_files: Mapping[str, str]) -> Any:
        index = self.context_index
        if index is None or not base_files or index.latest_build_id(project_id) is None:
            return None

        def provide(task: Task) -> dict[str, str]:
            paths = index.query(project_id, task.description, self.settings.context_top_k)
            return {path: base_files[path] for path in paths if path in base_files}

        return provide

    def _execute_node(self, state: PipelineState) -> dict[str, Any]:
        blueprint = Blueprint.model_validate(state["blueprint"])
        self.status.add(state["run_id"], "execute", f"Generating {len(blueprint.components)} file(s)", progress=15)
        base_files = state.get("base_files", {})
        executor = TaskGraphExecutor(
            self.client,
            max_workers=self.settings.max_workers,
            policy=self._retry_policy(always_retry),
            context_provider=self._context_provider(state["project_id"], base_files),
            cancel_event=self.cancel_event,
        )
        try:
            staged, report = executor.run(blueprint, base_files=StagedFileSet(files=dict(base_files)))
        except OrchestratorError as exc:
            logger.error("Task graph rejected: %s", exc)
            return {"failure": f"{type(exc).__name__}: {exc}"}
        update: dict[str, Any] = {"staged_files": staged.files, "report": report.model_dump(mode="json")}
        if report.failure_reason:
            update["failure"] = report.failure_reason
        return update

    def _validate_node(self, state: PipelineState) -> dict[str, Any]:
        self.status.add(state["run_id"], "validate", "Type-checking generated files", progress=60)
        staged = StagedFileSet(files=dict(state["staged_files"]))
        warnings = list(state.get("warnings", []))
        try:
            missing = undeclared_packages(staged.files)
        except ValueError as exc:
            missing = []
            warnings.append(str(exc))
        if missing:
            warnings.append("Undeclared packages imported: " + ", ".join(missing))
        try:
            result = self._repair_loop().validate_and_repair(staged)
        except OrchestratorError as exc:
            logger.error("Compilation check failed: %s", exc)
            return {"failure": f"{type(exc).__name__}: {exc}", "warnings": warnings}
        update: dict[str, Any] = {
            "staged_files": result.files.files,
            "repair": result.model_dump(mode="json"),
            "warnings": warnings,
        }
        if not result.ok:
            update["failure"] = f"Compilation failed with {len(result.remaining_diagnostics)} remaining diagnostic(s)"
        return update

    def _promote_node(self, state: PipelineState) -> dict[str, Any]:
        self.status.add(state["run_id"], "promote", "Building and promoting", progress=85)
        staged = StagedFileSet(files=dict(state["staged_files"]))
        try:
            artifact = self.gate.promote_if_green(staged, state["project_id"])
        except OrchestratorError as exc:
            return {"failure": f"{type(exc).__name__}: {exc}"}
        warnings = list(state.get("warnings", []))
        if artifact.index_error:
            warnings.append(f"Context index not refreshed: {artifact.index_error}")
        return {"build": artifact.model_dump(mode="json"), "warnings": warnings}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def generate(self, request: str, *, project_id: str | None = None, base_files: Mapping[str, str] | None = None) -> RunReport:
        """Plan, generate, validate and promote a web app for ``request``.

        ``base_files`` (for example a project template) seed the staged tree; when
        omitted the project's current promoted files are used.
        """
        project = project_id or self.settings.project_id
        run_id = f"RUN-{uuid.uuid4().hex[:8]}"
        seed = dict(base_files) if base_files is not None else self.store_for(project).current_files()
        initial_state: PipelineState = {
            "run_id": run_id,
            "project_id": project,
            "request": request,
            "base_files": seed,
            "warnings": [],
            "failure": None,
        }
        final = self.graph.invoke(initial_state, config={"recursion_limit": 25, "configurable": {"thread_id": run_id}})

        report = RunReport.model_validate(final["report"]) if final.get("report") else RunReport()
        report.run_id = run_id
        report.project_id = project
        report.cancelled = report.cancelled or self.cancel_event.is_set()
        report.warnings = list(final.get("warnings") or [])
        if final.get("repair"):
            report.diagnostics = [Diagnostic.model_validate(item) for item in final["repair"]["remaining_diagnostics"]]
        if final.get("build"):
            report.build = BuildArtifact.model_validate(final["build"]).record
        if report.cancelled and not report.failure_reason:
            report.mark_failed("Run cancelled")
        elif final.get("failure"):
            report.mark_failed(str(final["failure"]))
        self.status.add(run_id, "done", f"Run finished: {report.outcome.value}", progress=100)
        logger.info("Run %s finished: %s", run_id, report.outcome.value)
        return report

    def chat(self, request: str, *, project_id: str | None = None) -> ChatOutcome:
        """Apply a conversational change to the current version and promote it if it builds."""
        project = project_id or self.settings.project_id
        store = self.store_for(project)
        current = store.current_build()
        history = store.read_conversation(limit=50)
        state = ConversationState(project_id=project, messages=history)
        loop = ConversationalActionLoop(
            self.client,
            max_iterations=self.settings.action_loop_max_iterations,
            context_index=self.context_index,
            context_k=self.settings.context_top_k,
            build_id=current.build_id if current is not None else None,
            protected_files=self.settings.protected_files,
            policy=self._retry_policy(),
        )
        files = store.current_files()
        try:
            step = loop.step(state, files, request)
        except OrchestratorError as exc:
            logger.error("Chat request for %s failed: %s", project, exc)
            state = state.append(ConversationMessage(role="user", content=request))
            store.append_messages(state.messages)
            step = StepResult(files=files, response_text="", done=False, state=state, error=str(exc))
            return ChatOutcome(step=step, failure=f"{type(exc).__name__}: {exc}")
        store.append_messages(step.state.messages)
        outcome = ChatOutcome(step=step)
        if not step.changed_paths:
            return outcome

        try:
            outcome.repair = self._repair_loop().validate_and_repair(StagedFileSet(files=step.files))
            if not outcome.repair.ok:
                outcome.failure = f"Compilation failed with {len(outcome.repair.remaining_diagnostics)} diagnostic(s)"
                return outcome
            outcome.build = self.gate.promote_if_green(outcome.repair.files, project)
        except OrchestratorError as exc:
            logger.error("Amendment for %s not promoted: %s", project, exc)
            outcome.failure = f"{type(exc).__name__}: {exc}"
            return outcome

        outcome.amendment = Amendment(
            project_id=project,
            build_id=outcome.build.record.build_id,
            prompt=request,
            summary=step.response_text,
            file_paths=step.changed_paths,
        )
        store.write_amendment(outcome.amendment)
        return outcome

    def rollback(self, version: int, *, project_id: str | None = None) -> BuildRecord:
        """Point the project back at a previously promoted version and reindex its files."""
        project = project_id or self.settings.project_id
        store = self.store_for(project)
        record = store.rollback(version)
        if self.context_index is not None:
            with store.project_lock():
                self.context_index.reindex(project, record.build_id, store.files_for_build(record.build_id))
        return record
