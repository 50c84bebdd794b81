"""Import-specifier resolution across the staged project tree."""

from __future__ import annotations

import json
import logging
import posixpath
import re
from typing import Mapping

logger = logging.getLogger(__name__)

_IMPORT_FROM_RE = re.compile(r"""import\s+(?:type\s+)?[\s\S]*?\s+from\s+['"]([^'"]+)['"]""")
_SIDE_EFFECT_IMPORT_RE = re.compile(r"""^\s*import\s+['"]([^'"]+)['"]""", re.MULTILINE)
_EXPORT_FROM_RE = re.compile(r"""export\s+(?:\*|\{[^}]*\})\s+from\s+['"]([^'"]+)['"]""")
_SCRIPT_EXTENSIONS = (".tsx", ".ts", ".jsx", ".js")
_SOURCE_ALIAS = "@/"


def import_specifiers(content: str) -> list[str]:
    """Distinct module specifiers imported or re-exported by a script file, in order."""
    found: list[str] = []
    for pattern in (_IMPORT_FROM_RE, _SIDE_EFFECT_IMPORT_RE, _EXPORT_FROM_RE):
        for match in pattern.finditer(content):
            spec = match.group(1)
            if spec not in found:
                found.append(spec)
    return found


def is_local_specifier(spec: str) -> bool:
    return spec.startswith((".", "/", _SOURCE_ALIAS))


def candidate_paths(spec: str, from_file: str) -> list[str]:
    """Project paths a local specifier may refer to, most likely first.

    ``@/x`` maps to ``src/x``; ``./x`` and ``../x`` resolve against the importing
    file's directory. Each base is tried as written, with each script extension and
    as a directory ``index`` file.
    """
    if spec.startswith(_SOURCE_ALIAS):
        base = "src/" + spec[len(_SOURCE_ALIAS):]
    elif spec.startswith("/"):
        base = spec.lstrip("/")
    elif spec.startswith("."):
        base = posixpath.normpath(posixpath.join(posixpath.dirname(from_file), spec))
    else:
        return []
    if base.startswith("../") or base == "..":
        return []

    bases = [base]
    if not base.startswith("src/"):
        bases.append(f"src/{base}")
    candidates: list[str] = []
    for item in bases:
        candidates.append(item)
        candidates.extend(f"{item}{ext}" for ext in _SCRIPT_EXTENSIONS)
        candidates.extend(f"{item}/index{ext}" for ext in _SCRIPT_EXTENSIONS)
    return list(dict.fromkeys(candidates))


def resolve_import(spec: str, from_file: str, files: Mapping[str, str]) -> str | None:
    """Return the project path ``spec`` resolves to from ``from_file``, or None."""
    for candidate in candidate_paths(spec, from_file):
        if candidate in files:
            return candidate
    return None


def imported_files(file_path: str, files: Mapping[str, str]) -> dict[str, str]:
    """Contents of the project files directly imported by ``file_path``."""
    content = files.get(file_path, "")
    related: dict[str, str] = {}
    for spec in import_specifiers(content):
        resolved = resolve_import(spec, file_path, files)
        if resolved is not None and resolved != file_path:
            related[resolved] = files[resolved]
    return related


def package_name(spec: str) -> str:
    parts = spec.split("/")
    if spec.startswith("@") and len(parts) > 1:
        return "/".join(parts[:2])
    return parts[0]


def undeclared_packages(files: Mapping[str, str]) -> list[str]:
    """Bare package imports that ``package.json`` does not declare.

    Raises:
        ValueError: If ``package.json`` is present but not valid JSON.
    """
    manifest = files.get("package.json")
    if manifest is None:
        return []
    try:
        payload = json.loads(manifest)
    except json.JSONDecodeError as exc:
        raise ValueError(f"package.json is not valid JSON: {exc}") from exc
    declared: set[str] = set()
    for section in ("dependencies", "devDependencies", "peerDependencies"):
        declared.update((payload.get(section) or {}).keys())

    missing: set[str] = set()
    for path, content in files.items():
        if not path.endswith(_SCRIPT_EXTENSIONS):
            continue
        for spec in import_specifiers(content):
            if is_local_specifier(spec) or spec.startswith("node:"):
                continue
            name = package_name(spec)
            if name not in declared:
                missing.add(name)
    if missing:
        logger.warning("Imports of undeclared packages: %s", ", ".join(sorted(missing)))
    return sorted(missing)
