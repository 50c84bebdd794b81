"""Isolated workspace in which staged files are compiled and built.

The repair loop and the build gate only talk to the ``Sandbox`` protocol.
``LocalSandbox`` implements it on a local directory with ``subprocess``.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol

from .errors import SandboxCommandTimeout, SandboxError
from .models import normalize_file_path

logger = logging.getLogger(__name__)

# Paths uploaded by the last sync, relative to the sandbox root.
SYNC_MANIFEST = ".webgen-sync.json"


@dataclass(frozen=True)
class CommandResult:
    output: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Sandbox(Protocol):
    def upload_file(self, path: str, data: bytes) -> None:
        ...

    def download_file(self, path: str) -> bytes:
        ...

    def create_folder(self, path: str) -> None:
        ...

    def exists(self, path: str) -> bool:
        ...

    def list_files(self, directory: str) -> list[str]:
        ...

    def remove(self, path: str) -> None:
        ...

    def run_command(self, command: str, timeout_seconds: float) -> CommandResult:
        ...


def upload_files(sandbox: Sandbox, files: Mapping[str, str]) -> None:
    """Create each parent folder once, then upload every file. Existing folders are fine."""
    folders = sorted({path.rsplit("/", 1)[0] for path in files if "/" in path})
    for folder in folders:
        sandbox.create_folder(folder)
    for path, content in sorted(files.items()):
        sandbox.upload_file(path, content.encode("utf-8"))


def sync_files(sandbox: Sandbox, files: Mapping[str, str]) -> list[str]:
    """Upload ``files`` and delete what the previous sync uploaded that ``files`` no longer has.

    Only paths recorded in the sandbox's sync manifest are ever removed, so files
    the sandbox was provisioned with (``package.json``, ``node_modules``, build
    output) stay untouched. Returns the removed paths.

    Raises:
        SandboxError: If the manifest left by the previous sync is unreadable.
    """
    wanted = sorted({normalize_file_path(path) for path in files})
    previous: list[str] = []
    if sandbox.exists(SYNC_MANIFEST):
        try:
            previous = json.loads(sandbox.download_file(SYNC_MANIFEST).decode("utf-8"))
        except ValueError as exc:
            raise SandboxError(f"Unreadable sync manifest {SYNC_MANIFEST}: {exc}") from exc
    stale = sorted(set(previous) - set(wanted))
    for path in stale:
        if sandbox.exists(path):
            sandbox.remove(path)
    if stale:
        logger.info("Removed %d stale file(s) from the sandbox", len(stale))
    upload_files(sandbox, files)
    sandbox.upload_file(SYNC_MANIFEST, json.dumps(wanted, indent=2).encode("utf-8"))
    return stale


class LocalSandbox:
    """Sandbox rooted at a local directory. Paths are project-relative and may not escape the root."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        try:
            relative = normalize_file_path(path)
        except ValueError as exc:
            raise SandboxError(str(exc)) from exc
        resolved = (self.root / relative).resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise SandboxError(f"Path escapes the sandbox root: {path}")
        return resolved

    def upload_file(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise SandboxError(f"Failed to upload {path}: {exc}") from exc

    def download_file(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise SandboxError(f"Failed to download {path}: {exc}") from exc

    def create_folder(self, path: str) -> None:
        self._resolve(path).mkdir(parents=True, exist_ok=True)

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def list_files(self, directory: str) -> list[str]:
        """Every regular file below ``directory``, as sorted root-relative POSIX paths."""
        base = self._resolve(directory)
        if not base.is_dir():
            return []
        found: list[str] = []
        for current, dirnames, filenames in os.walk(base):
            for name in filenames:
                found.append((Path(current) / name).relative_to(self.root).as_posix())
        return sorted(found)

    def remove(self, path: str) -> None:
        target = self._resolve(path)
        if target.is_dir():
            shutil.rmtree(target)
        elif target.exists():
            target.unlink()

    def run_command(self, command: str, timeout_seconds: float) -> CommandResult:
        """Run ``command`` in the sandbox root and return its combined stdout and stderr.

        Raises:
            SandboxCommandTimeout: If the command exceeds ``timeout_seconds``.
            SandboxError: If the executable cannot be started.
        """
        logger.info("Running in sandbox: %s", command)
        try:
            result = subprocess.run(
                shlex.split(command),
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise SandboxCommandTimeout(command, timeout_seconds) from exc
        except OSError as exc:
            raise SandboxError(f"Could not start {command!r}: {exc}") from exc
        output = (result.stdout or "") + (result.stderr or "")
        logger.debug("Command %r exited with %d", command, result.returncode)
        return CommandResult(output=output, exit_code=result.returncode)
