from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Sequence

from .diagnostics import (
    DEFAULT_RULES,
    DiagnosticRule,
    add_missing_export,
    apply_rules,
    group_by_file,
    missing_member,
    module_specifier,
    parse_tsc_output,
)
from .errors import CompilationError, GenerationError, SandboxCommandTimeout
from .generation import SupportsGenerate
from .imports import imported_files, resolve_import
from .models import Diagnostic, RepairAttempt, RepairResult, StagedFileSet
from .responses import content_for_target
from .retry import RetryPolicy, call_with_retry
from .sandbox import Sandbox, sync_files

logger = logging.getLogger(__name__)

MIN_FIX_CHARS = 100
MAX_ERRORS_PER_FILE = 15

_FIX_INSTRUCTIONS = """You are fixing TypeScript errors in a React + Vite project.
- Fix every error listed below without changing behaviour.
- Match the exact types and export names used by the related files.
- If an imported name is not exported by its source, import what is actually exported.
- Return ONLY the complete corrected file in one fenced code block."""


def acceptable_fix(code: str) -> bool:
    """A model-proposed file is used only if it looks like a whole module."""
    stripped = code.strip()
    return len(stripped) > MIN_FIX_CHARS and ("import" in stripped or "export" in stripped)


class RepairLoop:
    """Check -> deterministic fix -> AI fix -> give up, over one staged file set.

    Every fix is uploaded to the sandbox and followed by a fresh compile check, so
    ``remaining_diagnostics`` always reflects the last check. A clean first check
    ends the run after exactly one check. While the deterministic rules keep
    changing files, AI fixes are held back until round ``deterministic_rounds``.
    """

    def __init__(
        self,
        sandbox: Sandbox,
        client: SupportsGenerate,
        *,
        compile_command: str = "npx tsc --noEmit",
        max_attempts: int = 5,
        deterministic_rounds: int = 1,
        files_per_round: int = 3,
        compile_timeout_seconds: float = 180,
        rules: Sequence[DiagnosticRule] = DEFAULT_RULES,
        policy: RetryPolicy | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if deterministic_rounds < 1:
            raise ValueError("deterministic_rounds must be >= 1")
        if files_per_round < 1:
            raise ValueError("files_per_round must be >= 1")
        self.sandbox = sandbox
        self.client = client
        self.compile_command = compile_command
        self.max_attempts = max_attempts
        self.deterministic_rounds = deterministic_rounds
        self.files_per_round = files_per_round
        self.compile_timeout_seconds = compile_timeout_seconds
        self.rules = tuple(rules)
        self.policy = policy or RetryPolicy(max_attempts=2)
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Compile check
    # ------------------------------------------------------------------

    def check(self) -> list[Diagnostic]:
        """Run the compiler once and return its diagnostics.

        Raises:
            CompilationError: If the compiler times out, or fails without printing
                any parseable diagnostic.
        """
        try:
            result = self.sandbox.run_command(self.compile_command, self.compile_timeout_seconds)
        except SandboxCommandTimeout as exc:
            raise CompilationError(f"Compile check timed out after {exc.timeout_seconds}s") from exc
        diagnostics = parse_tsc_output(result.output)
        if not result.ok and not diagnostics:
            raise CompilationError(f"Compiler exited with {result.exit_code} without diagnostics: {result.output[-500:]}")
        logger.info("Compile check: %d diagnostic(s) in %d file(s)", len(diagnostics), len(group_by_file(diagnostics)))
        return diagnostics

    # ------------------------------------------------------------------
    # Fix stages
    # ------------------------------------------------------------------

    def _write(self, files: StagedFileSet, path: str, content: str) -> None:
        files.write(path, content)
        self.sandbox.upload_file(path, content.encode("utf-8"))

    def _deterministic_pass(self, files: StagedFileSet, diagnostics: list[Diagnostic]) -> list[str]:
        touched: list[str] = []
        for path, file_diagnostics in group_by_file(diagnostics).items():
            content = files.get(path)
            if content is None:
                continue
            updated, fired = apply_rules(content, file_diagnostics, self.rules)
            if fired:
                logger.info("Deterministic fix in %s: %s", path, ", ".join(fired))
                self._write(files, path, updated)
                touched.append(path)
        return touched

    def _export_pass(self, files: StagedFileSet, diagnostics: list[Diagnostic]) -> list[str]:
        touched: list[str] = []
        for diagnostic in diagnostics:
            if diagnostic.code != "TS2305":
                continue
            spec, symbol = module_specifier(diagnostic), missing_member(diagnostic)
            if spec is None or symbol is None:
                continue
            source_path = resolve_import(spec, diagnostic.file_path, files.files)
            if source_path is None:
                continue
            updated = add_missing_export(files.files[source_path], symbol)
            if updated is not None:
                logger.info("Added missing export %s in %s", symbol, source_path)
                self._write(files, source_path, updated)
                touched.append(source_path)
        return touched

    def _fix_prompt(self, files: StagedFileSet, path: str, file_diagnostics: list[Diagnostic]) -> str:
        errors = "\n".join(item.render() for item in file_diagnostics[:MAX_ERRORS_PER_FILE])
        notes: list[str] = []
        for item in file_diagnostics:
            if item.code == "TS2305":
                spec, symbol = module_specifier(item), missing_member(item)
                if spec and symbol:
                    notes.append(f"- `{symbol}` is imported from `{spec}` but not exported there.")
        sections = [_FIX_INSTRUCTIONS, f"TypeScript errors:\n{errors}"]
        if notes:
            sections.append("Missing exports:\n" + "\n".join(notes))
        sections.append(f"File to fix ({path}):\n```tsx\n{files.get(path)}\n```")
        return "\n\n".join(sections)

    def _fix_context(self, files: StagedFileSet, path: str, file_diagnostics: list[Diagnostic]) -> dict[str, str]:
        context = imported_files(path, files.files)
        for item in file_diagnostics:
            spec = module_specifier(item)
            if spec:
                source = resolve_import(spec, path, files.files)
                if source is not None and source != path:
                    context[source] = files.files[source]
        return context

    def _ai_fix(self, files: StagedFileSet, path: str, file_diagnostics: list[Diagnostic]) -> str | None:
        prompt = self._fix_prompt(files, path, file_diagnostics)
        context = self._fix_context(files, path, file_diagnostics)
        response = call_with_retry(
            lambda: self.client.generate(prompt, context),
            policy=self.policy,
            description=f"AI fix for {path}",
            sleep=self._sleep,
            should_stop=self.cancel_event.is_set,
        )
        code = content_for_target(response, path)
        if not acceptable_fix(code):
            logger.warning("AI fix for %s rejected (%d chars, no import/export)", path, len(code.strip()))
            return None
        return code

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def validate_and_repair(self, staged: StagedFileSet) -> RepairResult:
        """Compile ``staged`` in the sandbox and repair it within the attempt budget.

        Raises:
            CompilationError: If a compile check cannot produce a verdict.
        """
        files = staged.copy_files()
        sync_files(self.sandbox, files.files)
        diagnostics = self.check()
        checks = 1
        ai_calls = 0
        attempts: list[RepairAttempt] = []
        failures: list[str] = []

        def recheck(iteration: int, stage: str, touched: list[str]) -> None:
            nonlocal diagnostics, checks
            before = diagnostics
            diagnostics = self.check()
            checks += 1
            attempts.append(
                RepairAttempt(
                    iteration=iteration,
                    stage=stage,
                    diagnostics_before=before,
                    diagnostics_after=diagnostics,
                    files_touched=touched,
                )
            )

        iteration = 0
        while diagnostics and iteration < self.max_attempts and not self.cancel_event.is_set():
            iteration += 1
            logger.info("Repair round %d/%d: %d diagnostic(s)", iteration, self.max_attempts, len(diagnostics))

            progressed = False
            touched = self._deterministic_pass(files, diagnostics)
            if touched:
                progressed = True
                recheck(iteration, "deterministic", touched)
                if not diagnostics:
                    break

            touched = self._export_pass(files, diagnostics)
            if touched:
                progressed = True
                recheck(iteration, "export", touched)
                if not diagnostics:
                    break

            if progressed and iteration < self.deterministic_rounds:
                # AI fixes wait until round ``deterministic_rounds`` while rules still make progress.
                continue

            ranked = sorted(group_by_file(diagnostics).items(), key=lambda item: (-len(item[1]), item[0]))
            targets = [path for path, _ in ranked if path in files][: self.files_per_round]
            for path in targets:
                if self.cancel_event.is_set():
                    break
                current = group_by_file(diagnostics).get(path)
                if not current:
                    continue
                ai_calls += 1
                try:
                    fixed = self._ai_fix(files, path, current)
                except GenerationError as exc:
                    logger.warning("AI fix for %s failed: %s", path, exc)
                    failures.append(f"{path}: {exc}")
                    continue
                if fixed is None:
                    failures.append(f"{path}: rejected fix")
                    continue
                self._write(files, path, fixed)
                recheck(iteration, "ai", [path])
                if not diagnostics:
                    break

        ok = not diagnostics
        if ok:
            logger.info("Compilation clean after %d check(s), %d AI fix call(s)", checks, ai_calls)
        else:
            logger.warning("Giving up with %d diagnostic(s) after %d round(s)", len(diagnostics), iteration)
        return RepairResult(
            files=files,
            ok=ok,
            remaining_diagnostics=diagnostics,
            attempts=attempts,
            check_count=checks,
            ai_fix_calls=ai_calls,
            ai_fix_failures=failures,
        )
