"""Code-aware splitting of project files into bounded embedding chunks."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath

DEFAULT_MAX_CHARS = 1_600
DEFAULT_OVERLAP = 160
_FALLBACK_MAX_CHARS = 1_500
_FALLBACK_OVERLAP = 150

_EXCLUDED_PREFIXES = ("node_modules/", "dist/", ".git/", ".vite/", "src/components/ui/")
_EXCLUDED_NAMES = {"package-lock.json", "yarn.lock", "pnpm-lock.yaml", "bun.lockb"}

_SCRIPT_SUFFIXES = {".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"}
_STYLE_SUFFIXES = {".css", ".scss", ".sass"}
_MARKDOWN_SUFFIXES = {".md", ".mdx"}
_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico"}

_DECLARATION_BOUNDARY_RE = re.compile(
    r"^(export\s+(default\s+)?(async\s+)?(function|class|const|interface|type)\b"
    r"|export\s+\{"
    r"|const\s+\w+\s*=\s*(async\s*)?\("
    r"|(async\s+)?function\s+\w+\s*\("
    r"|class\s+\w+\s*"
    r"|interface\s+\w+"
    r"|type\s+\w+\s*=)"
)
_IMPORT_RE = re.compile(r"^import\s+")
_JSON_SPLIT_RE = re.compile(r"\n(?=\s*[,}\]])")
_CSS_SPLIT_RE = re.compile(r"(?<=\})\s*\n")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n{2,}")


@dataclass(frozen=True)
class Chunk:
    file_path: str
    chunk_index: int
    content: str


def is_indexable(path: str) -> bool:
    """Return False for dependency trees, build output, lockfiles and scaffolded UI-library files."""
    normalized = path[2:] if path.startswith("./") else path.lstrip("/")
    if any(normalized.startswith(prefix) for prefix in _EXCLUDED_PREFIXES):
        return False
    return PurePosixPath(normalized).name not in _EXCLUDED_NAMES


def slice_text(content: str, max_chars: int = _FALLBACK_MAX_CHARS, overlap: int = _FALLBACK_OVERLAP) -> list[str]:
    """Fixed-width slices of at most ``max_chars`` with ``overlap`` characters repeated between slices."""
    if max_chars <= 0:
        raise ValueError("max_chars must be > 0")
    if overlap >= max_chars:
        raise ValueError("overlap must be smaller than max_chars")
    pieces: list[str] = []
    start = 0
    while start < len(content):
        end = min(start + max_chars, len(content))
        pieces.append(content[start:end])
        if end >= len(content):
            break
        start = max(0, end - overlap)
    return pieces


def _stitch(units: list[str], max_chars: int, overlap: int) -> list[str]:
    """Pack syntactic units into chunks no larger than ``max_chars``, carrying an overlap tail."""
    bounded: list[str] = []
    for unit in units:
        text = unit if unit.endswith("\n") else unit + "\n"
        if len(text) > max_chars:
            bounded.extend(slice_text(text, max_chars, overlap))
        else:
            bounded.append(text)

    out: list[str] = []
    current = ""
    for text in bounded:
        if current and len(current) + len(text) > max_chars:
            out.append(current)
            tail = current[-overlap:] if overlap else ""
            current = tail + text if len(tail) + len(text) <= max_chars else text
        else:
            current += text
    if current.strip():
        out.append(current)
    return out


def _script_segments(content: str) -> list[str]:
    segments: list[str] = []
    buffer: list[str] = []
    in_imports = False
    for line in content.split("\n"):
        is_import = bool(_IMPORT_RE.match(line))
        starts_segment = (is_import and not in_imports) or (
            not is_import and bool(_DECLARATION_BOUNDARY_RE.match(line))
        )
        if starts_segment and buffer:
            segments.append("\n".join(buffer))
            buffer = []
        if is_import:
            in_imports = True
        elif line.strip():
            in_imports = False
        buffer.append(line)
    if buffer:
        segments.append("\n".join(buffer))
    return segments


def split_units(file_path: str, content: str) -> list[str]:
    suffix = PurePosixPath(file_path).suffix.lower()
    if suffix in _SCRIPT_SUFFIXES:
        return _script_segments(content)
    if suffix in _MARKDOWN_SUFFIXES:
        return _PARAGRAPH_SPLIT_RE.split(content)
    if suffix == ".json":
        return _JSON_SPLIT_RE.split(content)
    if suffix in _STYLE_SUFFIXES:
        return _CSS_SPLIT_RE.split(content)
    return []


def code_aware_chunks(
    file_path: str,
    content: str,
    *,
    max_chars: int = DEFAULT_MAX_CHARS,
    overlap: int = DEFAULT_OVERLAP,
) -> list[Chunk]:
    """Split one file into chunks along syntactic boundaries, each at most ``max_chars`` long.

    Script files split at import runs and top-level declarations, Markdown at blank
    lines, JSON at structural closers, CSS per rule. Images produce one descriptive
    metadata chunk. Anything else falls back to fixed-width slicing.
    """
    suffix = PurePosixPath(file_path).suffix.lower()
    if suffix in _IMAGE_SUFFIXES:
        name = PurePosixPath(file_path).name
        texts = [
            f"[IMAGE FILE] {suffix.lstrip('.').upper()} image file: {name}\n"
            f"Located at: {file_path}\n"
            "Image asset used in the project (logo, background, icon or illustration)."
        ]
    elif not content.strip():
        texts = []
    else:
        units = split_units(file_path, content)
        if units:
            texts = _stitch(units, max_chars, overlap)
        else:
            texts = slice_text(content, min(max_chars, _FALLBACK_MAX_CHARS), min(overlap, _FALLBACK_OVERLAP))
    return [Chunk(file_path=file_path, chunk_index=index, content=text) for index, text in enumerate(texts)]
