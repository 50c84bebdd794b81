from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Mapping

from .errors import CyclicDependencyError, DanglingDependencyError, MalformedResponseError, NoPlanError
from .generation import SupportsGenerate
from .models import (
    Blueprint,
    RunOutcome,
    RunReport,
    StagedFileSet,
    Task,
    TaskOutcome,
    TaskStatus,
    TextResponse,
)
from .responses import content_for_target, has_code_block
from .retry import RetryPolicy, always_retry, call_with_retry

logger = logging.getLogger(__name__)

ContextProvider = Callable[[Task], Mapping[str, str]]


def build_tasks(blueprint: Blueprint, existing_paths: frozenset[str] = frozenset()) -> list[Task]:
    """Turn blueprint components into tasks with task-id dependencies.

    A dependency on a path that no component produces is allowed only when the path
    is already present in ``existing_paths`` (it is then context, not an edge).

    Raises:
        NoPlanError: If the blueprint has no components.
        DanglingDependencyError: If a dependency names an unknown path.
    """
    if not blueprint.components:
        raise NoPlanError("Blueprint contains no components to generate")

    tasks: list[Task] = []
    producers: dict[str, list[str]] = defaultdict(list)
    for index, component in enumerate(blueprint.components, start=1):
        task_id = f"TASK-{index:03d}"
        producers[component.file_path].append(task_id)
        tasks.append(Task(task_id=task_id, target_file_path=component.file_path, description=component.purpose))

    for task, component in zip(tasks, blueprint.components):
        depends_on: list[str] = []
        for dependency in component.dependencies:
            owners = producers.get(dependency)
            if not owners:
                if dependency in existing_paths:
                    continue
                raise DanglingDependencyError(component.file_path, dependency)
            others = [owner for owner in owners if owner != task.task_id]
            # A component depending only on its own path is a self-loop.
            for owner in others or owners:
                if owner not in depends_on:
                    depends_on.append(owner)
        task.depends_on = depends_on
    return tasks


def find_cycle(tasks: list[Task]) -> list[str] | None:
    """Return one dependency cycle as a list of task ids (first id repeated at the end), or None."""
    by_id = {task.task_id: task for task in tasks}
    white, grey, black = 0, 1, 2
    color: dict[str, int] = {task_id: white for task_id in by_id}
    stack: list[str] = []

    def visit(task_id: str) -> list[str] | None:
        color[task_id] = grey
        stack.append(task_id)
        for dep in by_id[task_id].depends_on:
            if color[dep] == grey:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == white:
                found = visit(dep)
                if found is not None:
                    return found
        stack.pop()
        color[task_id] = black
        return None

    for task_id in sorted(by_id):
        if color[task_id] == white:
            found = visit(task_id)
            if found is not None:
                # Reported in dependency order: each item is needed by the one after it.
                return list(reversed(found))
    return None


def validate_task_graph(tasks: list[Task]) -> None:
    """Raise ``CyclicDependencyError`` naming the cycle (as file paths) if the graph is not a DAG."""
    cycle = find_cycle(tasks)
    if cycle is not None:
        by_id = {task.task_id: task for task in tasks}
        raise CyclicDependencyError([by_id[task_id].target_file_path for task_id in cycle])


def _downstream_of(tasks: list[Task], failed_task_id: str) -> list[str]:
    dependents: dict[str, list[str]] = defaultdict(list)
    for task in tasks:
        for dep in task.depends_on:
            dependents[dep].append(task.task_id)

    queue: deque[str] = deque(dependents.get(failed_task_id, []))
    visited: set[str] = {failed_task_id}
    ordered: list[str] = []
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        ordered.append(current)
        for nxt in dependents.get(current, []):
            queue.append(nxt)
    return ordered


@dataclass
class _TaskResult:
    task_id: str
    content: str | None
    attempts: int
    error: str | None
    started_seq: int
    finished_seq: int


class TaskGraphExecutor:
    """Runs blueprint tasks in dependency order on a bounded worker pool.

    A task becomes ready once every task it depends on is Done. Ready tasks are
    dispatched concurrently up to ``max_workers``. Generated content is written to
    the staged file set by the coordinating thread as each task completes, so writes
    to one path are serialized and the last completed writer wins.
    """

    def __init__(
        self,
        client: SupportsGenerate,
        *,
        max_workers: int = 4,
        policy: RetryPolicy | None = None,
        context_provider: ContextProvider | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.client = client
        self.max_workers = max_workers
        self.policy = policy or RetryPolicy(max_attempts=3, is_retryable=always_retry)
        self.context_provider = context_provider
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._clock = itertools.count(1)
        self._clock_lock = threading.Lock()

    def _tick(self) -> int:
        with self._clock_lock:
            return next(self._clock)

    @staticmethod
    def _prompt_for(task: Task, blueprint: Blueprint, dependency_paths: list[str]) -> str:
        lines = [
            f"Generate the complete contents of `{task.target_file_path}`.",
            f"Purpose: {task.description}",
        ]
        if blueprint.summary:
            lines.append(f"Application: {blueprint.summary}")
        if blueprint.style_directives:
            lines.append(f"Style directives: {blueprint.style_directives}")
        if dependency_paths:
            lines.append("It may import from: " + ", ".join(dependency_paths))
        lines.append(
            'Respond with {"kind": "files", "files": [{"path": "'
            + task.target_file_path
            + '", "content": "..."}]}.'
        )
        return "\n".join(lines)

    def _execute(self, task: Task, prompt: str, context: Mapping[str, str]) -> _TaskResult:
        started = self._tick()
        attempts = 0

        def attempt() -> str:
            nonlocal attempts
            attempts += 1
            response = self.client.generate(prompt, context)
            if isinstance(response, TextResponse) and not has_code_block(response.text):
                raise MalformedResponseError(f"Prose reply instead of code for {task.target_file_path}")
            content = content_for_target(response, task.target_file_path)
            if not content.strip():
                raise MalformedResponseError(f"Empty output for {task.target_file_path}")
            return content

        try:
            content = call_with_retry(
                attempt,
                policy=self.policy,
                description=f"Task {task.task_id} ({task.target_file_path})",
                should_stop=self.cancel_event.is_set,
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.error("Task %s failed after %d attempt(s): %s", task.task_id, attempts, exc)
            return _TaskResult(task.task_id, None, attempts, str(exc), started, self._tick())
        return _TaskResult(task.task_id, content, attempts, None, started, self._tick())

    def run(self, blueprint: Blueprint, base_files: StagedFileSet | None = None) -> tuple[StagedFileSet, RunReport]:
        """Generate every blueprint component and return the staged files with a run report.

        Raises:
            NoPlanError: If the blueprint has no components.
            DanglingDependencyError: If a dependency names an unknown component.
            CyclicDependencyError: If component dependencies form a cycle. Raised before
                any generation call.
        """
        staged = base_files.copy_files() if base_files is not None else StagedFileSet()
        tasks = build_tasks(blueprint, existing_paths=frozenset(staged.paths()))
        validate_task_graph(tasks)

        by_id = {task.task_id: task for task in tasks}
        outcomes = {
            task.task_id: TaskOutcome(task_id=task.task_id, target_file_path=task.target_file_path, status=task.status)
            for task in tasks
        }
        remaining_deps = {task.task_id: set(task.depends_on) for task in tasks}
        dependents: dict[str, list[str]] = defaultdict(list)
        for task in tasks:
            for dep in task.depends_on:
                dependents[dep].append(task.task_id)
        skipped: set[str] = set()

        def set_status(task_id: str, status: TaskStatus) -> None:
            by_id[task_id].status = status
            outcomes[task_id].status = status

        ready: deque[str] = deque()
        for task in tasks:
            if not remaining_deps[task.task_id]:
                set_status(task.task_id, TaskStatus.READY)
                ready.append(task.task_id)

        running: dict[Future[_TaskResult], str] = {}
        logger.info("Executing %d task(s) with up to %d worker(s)", len(tasks), self.max_workers)
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="task") as pool:
            while ready or running:
                while ready and len(running) < self.max_workers and not self.cancel_event.is_set():
                    task = by_id[ready.popleft()]
                    dependency_paths = [by_id[dep].target_file_path for dep in task.depends_on]
                    context = dict(self.context_provider(task)) if self.context_provider is not None else {}
                    context.update(staged.subset(dependency_paths))
                    set_status(task.task_id, TaskStatus.RUNNING)
                    prompt = self._prompt_for(task, blueprint, dependency_paths)
                    running[pool.submit(self._execute, task, prompt, context)] = task.task_id
                if not running:
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    task_id = running.pop(future)
                    result = future.result()
                    outcome = outcomes[task_id]
                    outcome.attempts = result.attempts
                    outcome.started_seq = result.started_seq
                    outcome.finished_seq = result.finished_seq
                    if result.content is None:
                        set_status(task_id, TaskStatus.FAILED)
                        outcome.error = result.error
                        for downstream in _downstream_of(tasks, task_id):
                            if downstream in skipped:
                                continue
                            skipped.add(downstream)
                            outcomes[downstream].skipped_because.append(by_id[task_id].target_file_path)
                        continue
                    staged.write(by_id[task_id].target_file_path, result.content)
                    set_status(task_id, TaskStatus.DONE)
                    for nxt in dependents.get(task_id, []):
                        remaining_deps[nxt].discard(task_id)
                        if not remaining_deps[nxt] and nxt not in skipped and by_id[nxt].status == TaskStatus.PENDING:
                            set_status(nxt, TaskStatus.READY)
                            ready.append(nxt)

        report = self._report(tasks, outcomes, skipped)
        return staged, report

    def _report(self, tasks: list[Task], outcomes: dict[str, TaskOutcome], skipped: set[str]) -> RunReport:
        cancelled = self.cancel_event.is_set()
        ordered = [outcomes[task.task_id] for task in tasks]
        failed_paths = [item.target_file_path for item in ordered if item.status == TaskStatus.FAILED]
        skipped_paths = [outcomes[task.task_id].target_file_path for task in tasks if task.task_id in skipped]
        done_count = sum(1 for item in ordered if item.status == TaskStatus.DONE)

        report = RunReport(tasks=ordered, failed_paths=failed_paths, skipped_paths=skipped_paths, cancelled=cancelled)
        if cancelled:
            report.mark_failed("Run cancelled")
        elif done_count == 0:
            report.mark_failed("No task produced output")
        elif failed_paths or skipped_paths:
            report.outcome = RunOutcome.SUCCEEDED_WITH_SKIPS
        logger.info(
            "Task graph finished: %d done, %d failed, %d skipped (%s)",
            done_count,
            len(failed_paths),
            len(skipped_paths),
            report.outcome.value,
        )
        return report
