from __future__ import annotations

import re
import threading
import time
from typing import Any, Mapping

import pytest

from conftest import FakeGenerationClient, files_response
from webgen_factory.errors import CyclicDependencyError, DanglingDependencyError, GenerationTransportError, NoPlanError
from webgen_factory.executor import TaskGraphExecutor, build_tasks, find_cycle
from webgen_factory.models import Blueprint, ComponentSpec, RunOutcome, StagedFileSet, TaskStatus, TextResponse
from webgen_factory.retry import RetryPolicy, always_retry

_TARGET_RE = re.compile(r"contents of `([^`]+)`")


def _target(prompt: str) -> str:
    match = _TARGET_RE.search(prompt)
    assert match is not None
    return match.group(1)


def _blueprint(*components: tuple[str, list[str]]) -> Blueprint:
    return Blueprint(
        summary="Bakery landing page",
        components=[ComponentSpec(file_path=path, purpose=f"Build {path}", dependencies=deps) for path, deps in components],
    )


def _echo_client() -> FakeGenerationClient:
    return FakeGenerationClient(lambda prompt, context: files_response(_target(prompt), f"export default '{_target(prompt)}';"))


def _executor(client: Any, **kwargs: Any) -> TaskGraphExecutor:
    kwargs.setdefault("policy", RetryPolicy(max_attempts=2, is_retryable=always_retry))
    return TaskGraphExecutor(client, sleep=lambda _seconds: None, **kwargs)


def test_dependencies_finish_before_dependent_starts() -> None:
    blueprint = _blueprint(("src/A.tsx", []), ("src/B.tsx", []), ("src/C.tsx", ["src/A.tsx", "src/B.tsx"]))
    client = _echo_client()

    staged, report = _executor(client).run(blueprint)

    assert sorted(staged.files) == ["src/A.tsx", "src/B.tsx", "src/C.tsx"]
    assert report.outcome == RunOutcome.SUCCEEDED
    outcomes = {item.target_file_path: item for item in report.tasks}
    assert all(item.status == TaskStatus.DONE for item in outcomes.values())
    c_started = outcomes["src/C.tsx"].started_seq
    assert outcomes["src/A.tsx"].finished_seq < c_started
    assert outcomes["src/B.tsx"].finished_seq < c_started


def test_dependent_receives_dependency_content_as_context() -> None:
    blueprint = _blueprint(("src/components/Hero.tsx", []), ("src/pages/Index.tsx", ["src/components/Hero.tsx"]))
    client = _echo_client()

    _executor(client).run(blueprint)

    index_call = next(call for call in client.calls if "src/pages/Index.tsx" in call["prompt"])
    assert index_call["context_files"] == {"src/components/Hero.tsx": "export default 'src/components/Hero.tsx';"}


def test_cycle_is_rejected_before_any_generation_call() -> None:
    blueprint = _blueprint(("src/A.tsx", ["src/B.tsx"]), ("src/B.tsx", ["src/A.tsx"]), ("src/C.tsx", []))
    client = _echo_client()

    with pytest.raises(CyclicDependencyError) as excinfo:
        _executor(client).run(blueprint)

    assert client.call_count == 0
    assert set(excinfo.value.cycle) == {"src/A.tsx", "src/B.tsx"}
    assert "src/A.tsx" in str(excinfo.value)


def test_self_dependency_is_a_cycle() -> None:
    tasks = build_tasks(_blueprint(("src/A.tsx", ["src/A.tsx"])))
    assert find_cycle(tasks) == ["TASK-001", "TASK-001"]


def test_dangling_dependency_is_a_validation_error() -> None:
    client = _echo_client()
    with pytest.raises(DanglingDependencyError) as excinfo:
        _executor(client).run(_blueprint(("src/A.tsx", ["src/Missing.tsx"])))
    assert excinfo.value.dependency == "src/Missing.tsx"
    assert client.call_count == 0


def test_dependency_on_existing_file_is_context_not_an_edge() -> None:
    base = StagedFileSet(files={"src/lib/utils.ts": "export const cn = () => '';"})
    client = _echo_client()

    staged, report = _executor(client).run(_blueprint(("src/A.tsx", ["src/lib/utils.ts"])), base_files=base)

    assert report.outcome == RunOutcome.SUCCEEDED
    assert staged.files["src/lib/utils.ts"] == "export const cn = () => '';"
    assert "src/A.tsx" in staged


def test_empty_blueprint_has_no_plan() -> None:
    with pytest.raises(NoPlanError):
        _executor(_echo_client()).run(Blueprint())


def test_failed_task_skips_dependents_and_independent_branch_continues() -> None:
    def script(prompt: str, context: Mapping[str, str]) -> Any:
        target = _target(prompt)
        if target == "src/A.tsx":
            return GenerationTransportError("provider unavailable")
        return files_response(target, f"export default '{target}';")

    client = FakeGenerationClient(script)
    blueprint = _blueprint(
        ("src/A.tsx", []),
        ("src/B.tsx", []),
        ("src/C.tsx", ["src/A.tsx"]),
        ("src/D.tsx", ["src/C.tsx"]),
    )

    staged, report = _executor(client).run(blueprint)

    assert sorted(staged.files) == ["src/B.tsx"]
    assert report.outcome == RunOutcome.SUCCEEDED_WITH_SKIPS
    assert report.failed_paths == ["src/A.tsx"]
    assert report.skipped_paths == ["src/C.tsx", "src/D.tsx"]
    outcomes = {item.target_file_path: item for item in report.tasks}
    assert outcomes["src/A.tsx"].status == TaskStatus.FAILED
    assert outcomes["src/A.tsx"].attempts == 2
    assert "provider unavailable" in (outcomes["src/A.tsx"].error or "")
    assert outcomes["src/C.tsx"].skipped_because == ["src/A.tsx"]
    a_calls = [call for call in client.calls if _target(call["prompt"]) == "src/A.tsx"]
    assert len(a_calls) == 2


def test_empty_output_is_retried() -> None:
    client = FakeGenerationClient([files_response("src/A.tsx", "   "), files_response("src/A.tsx", "export {};")])

    staged, report = _executor(client).run(_blueprint(("src/A.tsx", [])))

    assert staged.files["src/A.tsx"] == "export {};"
    assert report.tasks[0].attempts == 2


def test_prose_reply_is_retried_then_fails_the_task() -> None:
    apology = TextResponse(text="Sorry, I can't generate that component right now.")
    client = FakeGenerationClient(lambda prompt, context: apology)

    staged, report = _executor(client).run(_blueprint(("src/components/A.tsx", [])))

    assert "src/components/A.tsx" not in staged.files
    assert report.failed_paths == ["src/components/A.tsx"]
    assert report.outcome == RunOutcome.FAILED
    assert client.call_count == 2


def test_fenced_code_in_a_text_reply_is_used() -> None:
    client = FakeGenerationClient([TextResponse(text="Here you go:\n```tsx\nexport default function A() {}\n```\n")])

    staged, report = _executor(client).run(_blueprint(("src/A.tsx", [])))

    assert staged.files["src/A.tsx"] == "export default function A() {}"
    assert report.outcome == RunOutcome.SUCCEEDED


def test_all_tasks_failing_fails_the_run() -> None:
    client = FakeGenerationClient(lambda prompt, context: GenerationTransportError("down"))

    staged, report = _executor(client).run(_blueprint(("src/A.tsx", [])))

    assert staged.files == {}
    assert report.outcome == RunOutcome.FAILED
    assert report.failure_reason == "No task produced output"


def test_same_path_last_writer_wins() -> None:
    blueprint = _blueprint(("src/App.tsx", []), ("src/App.tsx", ["src/App.tsx"]))
    client = FakeGenerationClient(
        [files_response("src/App.tsx", "export default 'first';"), files_response("src/App.tsx", "export default 'second';")]
    )

    staged, report = _executor(client).run(blueprint)

    assert staged.files["src/App.tsx"] == "export default 'second';"
    assert report.outcome == RunOutcome.SUCCEEDED


def test_cancelled_run_dispatches_nothing() -> None:
    cancel = threading.Event()
    cancel.set()
    client = _echo_client()

    staged, report = _executor(client, cancel_event=cancel).run(_blueprint(("src/A.tsx", [])))

    assert client.call_count == 0
    assert staged.files == {}
    assert report.cancelled is True
    assert report.outcome == RunOutcome.FAILED


def test_worker_pool_is_bounded() -> None:
    class _ConcurrencyProbe:
        def __init__(self) -> None:
            self.active = 0
            self.peak = 0
            self._lock = threading.Lock()

        def generate(self, prompt: str, context_files: Mapping[str, str], images: Any = ()) -> Any:
            with self._lock:
                self.active += 1
                self.peak = max(self.peak, self.active)
            time.sleep(0.02)
            with self._lock:
                self.active -= 1
            return files_response(_target(prompt), "export {};")

    probe = _ConcurrencyProbe()
    blueprint = _blueprint(*[(f"src/P{index}.tsx", []) for index in range(6)])

    staged, _report = _executor(probe, max_workers=2).run(blueprint)

    assert len(staged.files) == 6
    assert 1 <= probe.peak <= 2


def test_max_workers_must_be_positive() -> None:
    with pytest.raises(ValueError):
        TaskGraphExecutor(_echo_client(), max_workers=0)
