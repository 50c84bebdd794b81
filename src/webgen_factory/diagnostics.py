"""TypeScript diagnostics parsing and the deterministic fix rules applied before AI repair."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Iterable, Sequence

from .models import Diagnostic, normalize_file_path

logger = logging.getLogger(__name__)

_DIAGNOSTIC_RE = re.compile(
    r"^(?P<path>[^\s(][^(]*)\((?P<line>\d+),(?P<column>\d+)\):\s*error\s+(?P<code>TS\d+):\s*(?P<message>.*)$"
)
_MODULE_SPEC_RE = re.compile(r"""Module\s+'"?([^'"]+)"?'""")
_MISSING_MEMBER_RE = re.compile(r"""has no exported member\s+['"](.+?)['"]""")


def parse_tsc_output(output: str) -> list[Diagnostic]:
    """Parse ``tsc --noEmit`` output into diagnostics.

    Indented continuation lines are appended to the preceding diagnostic's message.
    Lines that are neither are ignored.
    """
    diagnostics: list[Diagnostic] = []
    for raw_line in output.splitlines():
        match = _DIAGNOSTIC_RE.match(raw_line.strip())
        if match:
            try:
                path = normalize_file_path(match.group("path"))
            except ValueError:
                logger.debug("Skipping diagnostic with unusable path: %s", raw_line)
                continue
            diagnostics.append(
                Diagnostic(
                    file_path=path,
                    line=int(match.group("line")),
                    column=int(match.group("column")),
                    code=match.group("code"),
                    message=match.group("message").strip(),
                )
            )
        elif diagnostics and raw_line.startswith((" ", "\t")) and raw_line.strip():
            previous = diagnostics[-1]
            diagnostics[-1] = previous.model_copy(update={"message": f"{previous.message}\n{raw_line.strip()}"})
    return diagnostics


def group_by_file(diagnostics: Iterable[Diagnostic]) -> dict[str, list[Diagnostic]]:
    grouped: dict[str, list[Diagnostic]] = defaultdict(list)
    for diagnostic in diagnostics:
        grouped[diagnostic.file_path].append(diagnostic)
    return dict(grouped)


def module_specifier(diagnostic: Diagnostic) -> str | None:
    """The module named in a ``Module '"./x"' ...`` diagnostic message, if any."""
    match = _MODULE_SPEC_RE.search(diagnostic.message)
    return match.group(1) if match else None


def missing_member(diagnostic: Diagnostic) -> str | None:
    match = _MISSING_MEMBER_RE.search(diagnostic.message)
    return match.group(1) if match else None


def _window(line_count: int, line: int, before: int, after: int) -> range:
    """0-indexed line indices from ``before`` lines above to ``after`` lines below a 1-indexed line."""
    return range(max(0, line - 1 - before), min(line_count, line + after))


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class DiagnosticRule(ABC):
    """One deterministic, line-local fix for a family of compiler diagnostics."""

    name: str = ""
    codes: frozenset[str] = frozenset()

    def matches(self, diagnostic: Diagnostic) -> bool:
        return diagnostic.code in self.codes

    @abstractmethod
    def fix_lines(self, lines: list[str], diagnostic: Diagnostic) -> bool:
        """Edit ``lines`` in place for one diagnostic. Return True if anything changed."""

    def apply(self, content: str, diagnostics: Sequence[Diagnostic]) -> str | None:
        """Return the fixed file content, or None if no matching diagnostic led to a change."""
        lines = content.split("\n")
        changed = False
        for diagnostic in diagnostics:
            if self.matches(diagnostic) and self.fix_lines(lines, diagnostic):
                changed = True
        return "\n".join(lines) if changed else None


class UseStateTypeRule(DiagnosticRule):
    """Aligns a ``useState`` generic with the type its value is used as (string <-> number only)."""

    name = "use_state_type"
    codes = frozenset({"TS2322"})

    _VALUE_RE = re.compile(r"""^Type\s+['"](\w+)['"]\s+is not assignable to type\s+['"](\w+)['"]""")
    _SETTER_RE = re.compile(r"""^Type\s+['"]Dispatch<SetStateAction<(\w+)>>['"]\s+is not assignable to type""")
    _SETTER_EXPECTED_RE = re.compile(r"type\s+'?\((\w+):\s+(\w+)\)")
    _QUOTED_NUMBER_RE = re.compile(r"""useState(<number>)?\(['"](\d+(?:\.\d+)?)['"]\)""")
    _BARE_NUMBER_RE = re.compile(r"useState<string>\((\d+(?:\.\d+)?)\)")
    _SEARCH_RADIUS = 10

    def mismatch(self, diagnostic: Diagnostic) -> tuple[str, str] | None:
        """Return ``(actual, expected)`` for a string/number mismatch, else None."""
        actual = expected = None
        setter = self._SETTER_RE.match(diagnostic.message)
        if setter:
            expected_match = self._SETTER_EXPECTED_RE.search(diagnostic.message)
            if expected_match:
                actual, expected = setter.group(1), expected_match.group(2)
        else:
            value = self._VALUE_RE.match(diagnostic.message)
            if value:
                actual, expected = value.group(1), value.group(2)
        if {actual, expected} == {"string", "number"}:
            return actual, expected
        return None

    def matches(self, diagnostic: Diagnostic) -> bool:
        return super().matches(diagnostic) and self.mismatch(diagnostic) is not None

    def fix_lines(self, lines: list[str], diagnostic: Diagnostic) -> bool:
        found = self.mismatch(diagnostic)
        if found is None:
            return False
        actual, expected = found
        changed = False
        for index in _window(len(lines), diagnostic.line, self._SEARCH_RADIUS, self._SEARCH_RADIUS):
            original = lines[index]
            updated = original.replace(f"useState<{actual}>(", f"useState<{expected}>(")
            if expected == "number":
                updated = self._QUOTED_NUMBER_RE.sub(lambda match: f"useState{match.group(1) or ''}({match.group(2)})", updated)
            else:
                updated = self._BARE_NUMBER_RE.sub(r"useState<string>('\1')", updated)
            if updated != original:
                lines[index] = updated
                changed = True
        return changed


class NamedToDefaultImportRule(DiagnosticRule):
    """``import { X }`` of a module whose X is only a default export becomes ``import X``."""

    name = "named_to_default_import"
    codes = frozenset({"TS2614"})

    def fix_lines(self, lines: list[str], diagnostic: Diagnostic) -> bool:
        member = missing_member(diagnostic)
        if member is None:
            return False
        pattern = re.compile(r"import\s+\{\s*" + re.escape(member) + r"\s*\}")
        for index in _window(len(lines), diagnostic.line, 5, 2):
            if pattern.search(lines[index]):
                lines[index] = pattern.sub(f"import {member}", lines[index])
                return True
        return False


class DefaultToNamedImportRule(DiagnosticRule):
    """``import X from`` of a module without a default export becomes ``import { X } from``."""

    name = "default_to_named_import"
    codes = frozenset({"TS1192", "TS2613"})

    _DEFAULT_IMPORT_RE = re.compile(r"""import\s+(\w+)\s+from\s+(['"])([^'"]+)\2""")

    def fix_lines(self, lines: list[str], diagnostic: Diagnostic) -> bool:
        spec = module_specifier(diagnostic)
        window = _window(len(lines), diagnostic.line, 5, 2)
        candidates = [(index, self._DEFAULT_IMPORT_RE.search(lines[index])) for index in window]
        candidates = [(index, match) for index, match in candidates if match is not None]
        preferred = [(index, match) for index, match in candidates if spec is not None and match.group(3) == spec]
        for index, match in preferred or candidates[:1]:
            name = match.group(1)
            lines[index] = re.sub(r"import\s+" + re.escape(name) + r"\s+from", f"import {{ {name} }} from", lines[index])
            return True
        return False


class DuplicateImportRule(DiagnosticRule):
    """Removes import lines that repeat an earlier import line verbatim."""

    name = "duplicate_import"
    codes = frozenset({"TS2300"})

    def fix_lines(self, lines: list[str], diagnostic: Diagnostic) -> bool:
        seen: set[str] = set()
        duplicates: list[int] = []
        for index, line in enumerate(lines):
            stripped = line.strip()
            if not stripped.startswith("import "):
                continue
            key = " ".join(stripped.rstrip(";").split())
            if key in seen:
                duplicates.append(index)
            else:
                seen.add(key)
        for index in reversed(duplicates):
            del lines[index]
        return bool(duplicates)

    def apply(self, content: str, diagnostics: Sequence[Diagnostic]) -> str | None:
        # One pass removes every duplicate regardless of how many diagnostics point at them.
        relevant = [diagnostic for diagnostic in diagnostics if self.matches(diagnostic)]
        return super().apply(content, relevant[:1])


DEFAULT_RULES: tuple[DiagnosticRule, ...] = (
    UseStateTypeRule(),
    NamedToDefaultImportRule(),
    DefaultToNamedImportRule(),
    DuplicateImportRule(),
)


def apply_rules(
    content: str,
    diagnostics: Sequence[Diagnostic],
    rules: Sequence[DiagnosticRule] = DEFAULT_RULES,
) -> tuple[str, list[str]]:
    """Run every rule over one file's diagnostics. Returns the content and the names of rules that fired."""
    fired: list[str] = []
    for rule in rules:
        updated = rule.apply(content, diagnostics)
        if updated is not None and updated != content:
            content = updated
            fired.append(rule.name)
    return content, fired


def add_missing_export(source: str, symbol: str) -> str | None:
    """Prefix the top-level declaration of ``symbol`` with ``export``.

    Returns None when the symbol is not declared at top level or is already exported.
    """
    pattern = re.compile(
        r"^(?P<export>export\s+(?:default\s+)?)?(?:declare\s+)?(?:abstract\s+)?(?:async\s+)?"
        r"(?:interface|type|class|const|let|var|function|enum)\s+" + re.escape(symbol) + r"\b",
        re.MULTILINE,
    )
    matches = list(pattern.finditer(source))
    if not matches or any(match.group("export") for match in matches):
        return None
    start = matches[0].start()
    return source[:start] + "export " + source[start:]
