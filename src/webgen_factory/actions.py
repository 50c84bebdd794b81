"""File actions requested by the conversational loop, applied to an in-memory file map."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, MutableMapping

from .canonical import content_digest
from .models import DeleteAction, FileAction, RenameAction, ReplaceRegionAction, WriteAction, normalize_file_path
from .settings import DEFAULT_PROTECTED_FILES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionResult:
    action: FileAction
    success: bool
    message: str

    def render(self) -> str:
        status = "ok" if self.success else "error"
        return f"[{self.action.type} {self.action.path}] {status}: {self.message}"


def is_protected(path: str, protected_files: Iterable[str] = DEFAULT_PROTECTED_FILES) -> bool:
    return any(path == item or path.endswith(f"/{item}") for item in protected_files)


def dedupe_actions(actions: Iterable[FileAction]) -> list[FileAction]:
    """Drop repeated identical actions, keeping first occurrence order."""
    seen: set[str] = set()
    unique: list[FileAction] = []
    for action in actions:
        key = content_digest(action)
        if key in seen:
            logger.debug("Dropping duplicate %s action for %s", action.type, action.path)
            continue
        seen.add(key)
        unique.append(action)
    return unique


def replace_region(content: str, search: str, replace: str, first_line: int, last_line: int) -> str:
    """Replace the first occurrence of ``search`` inside lines ``first_line..last_line`` (1-indexed).

    Raises:
        ValueError: If the range is outside the file or ``search`` is not in the region.
    """
    lines = content.split("\n")
    if first_line < 1 or last_line > len(lines) or first_line > last_line:
        raise ValueError(f"Invalid line range: {first_line}-{last_line} (file has {len(lines)} lines)")
    section = "\n".join(lines[first_line - 1 : last_line])
    if search not in section:
        raise ValueError(f"Search pattern does not match content at lines {first_line}-{last_line}")
    replaced = section.replace(search, replace, 1)
    return "\n".join([*lines[: first_line - 1], *replaced.split("\n"), *lines[last_line:]])


def apply_action(
    files: MutableMapping[str, str],
    action: FileAction,
    *,
    protected_files: Iterable[str] = DEFAULT_PROTECTED_FILES,
) -> ActionResult:
    """Apply one action to ``files`` in place. Failures are reported, never raised."""
    protected = tuple(protected_files)
    try:
        path = normalize_file_path(action.path)
    except ValueError as exc:
        return ActionResult(action, False, str(exc))
    if is_protected(path, protected):
        logger.warning("Blocked %s on protected file %s", action.type, path)
        return ActionResult(action, False, f"Cannot modify protected template file: {path}")

    if isinstance(action, WriteAction):
        existed = path in files
        files[path] = action.content
        return ActionResult(action, True, f"{'Updated' if existed else 'Created'} {path}")

    if isinstance(action, ReplaceRegionAction):
        if path not in files:
            return ActionResult(action, False, f"File not found: {path}")
        try:
            files[path] = replace_region(files[path], action.search, action.replace, action.first_line, action.last_line)
        except ValueError as exc:
            return ActionResult(action, False, str(exc))
        return ActionResult(action, True, f"Replaced lines {action.first_line}-{action.last_line} in {path}")

    if isinstance(action, DeleteAction):
        if files.pop(path, None) is None:
            return ActionResult(action, False, f"File not found: {path}")
        return ActionResult(action, True, f"Deleted file: {path}")

    if isinstance(action, RenameAction):
        try:
            new_path = normalize_file_path(action.new_path)
        except ValueError as exc:
            return ActionResult(action, False, str(exc))
        if is_protected(new_path, protected):
            return ActionResult(action, False, f"Cannot overwrite protected template file: {new_path}")
        if path not in files:
            return ActionResult(action, False, f"File not found: {path}")
        if new_path in files and new_path != path:
            return ActionResult(action, False, f"Target already exists: {new_path}")
        files[new_path] = files.pop(path)
        return ActionResult(action, True, f"Renamed {path} to {new_path}")

    return ActionResult(action, False, f"Unsupported action type: {action.type}")
