from __future__ import annotations

import fcntl
import json
import logging
import mimetypes
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any, Iterator, Mapping

from pydantic import ValidationError

from .errors import StorageError
from .models import Amendment, BuildRecord, BuildStatus, ConversationMessage, normalize_file_path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the data file can be atomically
    replaced via ``os.replace`` without disturbing the lock handle. ``flock``
    locks belong to the open file description, so two threads of the same
    process contend for the lock just like two processes do.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Write *content* to *path* atomically (temp file in the same directory, then ``os.replace``)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        # Clean up the temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: Path, content: str) -> None:
    atomic_write_bytes(path, content.encode("utf-8"))


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Args:
        path: Filesystem path to read.
        model_name: Human-readable label used in error messages.

    Returns:
        The raw file text.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def append_jsonl(path: Path, event: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(dict(event), sort_keys=True, default=str) + "\n")


# ---------------------------------------------------------------------------
# ProjectStore
# ---------------------------------------------------------------------------

class ProjectStore:
    """Filesystem-backed durable store for one project.

    Layout under ``<root>/projects/<project_id>/``::

        builds/<build_id>.json        BuildRecord rows
        versions/v<N>/files.json      promoted file set, tagged with its build id
        current.json                  pointer to the authoritative version
        conversation/messages.jsonl   conversation log, keyed by sequence
        amendments/<id>.json          amendment history
        events.jsonl                  promotion / rollback audit log

    Promotion is the only multi-row commit: version files are written first, the
    current pointer is replaced last, so a crash before the pointer swap leaves
    the previously promoted state authoritative.
    """

    def __init__(self, root: Path, *, project_id: str, user_id: str = "local") -> None:
        self.base_root = root
        self.project_id = project_id
        self.user_id = user_id
        self.root = project_scoped_root(root, project_id)
        self.builds_dir = self.root / "builds"
        self.versions_dir = self.root / "versions"
        self.conversation_dir = self.root / "conversation"
        self.amendments_dir = self.root / "amendments"
        self.events_path = self.root / "events.jsonl"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        """Create all required directories if they do not exist."""
        for directory in (
            self.root,
            self.builds_dir,
            self.versions_dir,
            self.conversation_dir,
            self.amendments_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        metadata_path = self.root / "project_id.txt"
        if not metadata_path.is_file():
            metadata_path.write_text(f"{self.project_id}\n", encoding="utf-8")

    # ------------------------------------------------------------------
    # Path properties
    # ------------------------------------------------------------------

    @property
    def current_pointer_path(self) -> Path:
        return self.root / "current.json"

    @property
    def conversation_log_path(self) -> Path:
        return self.conversation_dir / "messages.jsonl"

    def _build_path(self, build_id: str) -> Path:
        return self.builds_dir / f"{build_id}.json"

    def _version_files_path(self, version: int) -> Path:
        return self.versions_dir / f"v{version}" / "files.json"

    @contextmanager
    def project_lock(self) -> Iterator[None]:
        """Serialize promotion and reindex for this project across threads and processes."""
        with locked_file(self.root / "project"):
            yield

    # ------------------------------------------------------------------
    # Build records
    # ------------------------------------------------------------------

    def create_build_record(self) -> BuildRecord:
        """Allocate the next monotonic version and persist a ``pending`` BuildRecord."""
        with locked_file(self.builds_dir / "index"):
            version = max((record.version for record in self.list_builds()), default=0) + 1
            record = BuildRecord(project_id=self.project_id, user_id=self.user_id, version=version)
            atomic_write_text(self._build_path(record.build_id), record.model_dump_json(indent=2))
        logger.info("Created pending build %s (v%d) for %s", record.build_id, version, self.project_id)
        return record

    def read_build(self, build_id: str) -> BuildRecord:
        """Read a build record by id.

        Raises:
            FileNotFoundError: If the record does not exist.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self._build_path(build_id)
        text = _safe_read_json(path, "build record")
        try:
            return BuildRecord.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"build record at {path} failed validation: {exc}") from exc

    def list_builds(self) -> list[BuildRecord]:
        records = [self.read_build(path.stem) for path in self.builds_dir.glob("*.json")]
        records.sort(key=lambda record: record.version)
        return records

    def finalize_build(self, build_id: str, status: BuildStatus, **updates: Any) -> BuildRecord:
        """Move a pending record to ``success`` or ``failed``. Finalized records are immutable.

        Raises:
            ValueError: If the record is already finalized or ``status`` is ``pending``.
            StorageError: If the record cannot be written.
        """
        if status == BuildStatus.PENDING:
            raise ValueError("finalize_build requires a terminal status")
        path = self._build_path(build_id)
        with locked_file(path):
            record = self.read_build(build_id)
            if record.status != BuildStatus.PENDING:
                raise ValueError(f"Build {build_id} is already finalized as {record.status.value}")
            finalized = record.model_copy(
                update={**updates, "status": status, "finalized_at": datetime.now(UTC)}
            )
            try:
                atomic_write_text(path, finalized.model_dump_json(indent=2))
            except OSError as exc:
                raise StorageError(f"Failed to finalize build {build_id}: {exc}") from exc
        append_jsonl(
            self.events_path,
            {"event": "build_finalized", "build_id": build_id, "version": record.version, "status": status.value},
        )
        return finalized

    # ------------------------------------------------------------------
    # Versioned file sets
    # ------------------------------------------------------------------

    def write_version_files(self, record: BuildRecord, files: Mapping[str, str]) -> Path:
        """Persist the promoted file set for ``record``. Earlier versions are never touched.

        Raises:
            StorageError: If the version directory already holds a file set.
        """
        path = self._version_files_path(record.version)
        if path.exists():
            raise StorageError(f"Version v{record.version} already has a persisted file set")
        payload = {
            "build_id": record.build_id,
            "version": record.version,
            "files": {normalize_file_path(key): value for key, value in sorted(files.items())},
        }
        try:
            atomic_write_text(path, json.dumps(payload, indent=2, ensure_ascii=False))
        except OSError as exc:
            raise StorageError(f"Failed to persist file set for v{record.version}: {exc}") from exc
        return path

    def discard_version_files(self, record: BuildRecord) -> None:
        """Remove the file set of a build that never became current."""
        current = self.current_build()
        if current is not None and current.version == record.version:
            raise StorageError(f"Refusing to discard the current version v{record.version}")
        path = self._version_files_path(record.version)
        if path.exists():
            path.unlink()
            path.parent.rmdir()

    def files_for_version(self, version: int) -> dict[str, str]:
        path = self._version_files_path(version)
        payload = json.loads(_safe_read_json(path, f"file set v{version}"))
        return dict(payload["files"])

    def files_for_build(self, build_id: str) -> dict[str, str]:
        return self.files_for_version(self.read_build(build_id).version)

    def set_current(self, record: BuildRecord) -> None:
        """Point the project at ``record``.

        Raises:
            StorageError: If the pointer cannot be written.
        """
        try:
            atomic_write_text(
                self.current_pointer_path,
                json.dumps({"build_id": record.build_id, "version": record.version}, indent=2),
            )
        except OSError as exc:
            raise StorageError(f"Failed to point {self.project_id} at v{record.version}: {exc}") from exc

    def restore_current(self, previous: BuildRecord | None) -> None:
        """Put back the pointer captured before a failed promotion (none before the first one)."""
        if previous is not None:
            self.set_current(previous)
        elif self.current_pointer_path.exists():
            self.current_pointer_path.unlink()

    def current_build(self) -> BuildRecord | None:
        if not self.current_pointer_path.is_file():
            return None
        pointer = json.loads(_safe_read_json(self.current_pointer_path, "current pointer"))
        return self.read_build(str(pointer["build_id"]))

    def current_files(self) -> dict[str, str]:
        """Return the authoritative promoted file set, or an empty mapping before the first promotion."""
        record = self.current_build()
        if record is None:
            return {}
        return self.files_for_version(record.version)

    def rollback(self, version: int) -> BuildRecord:
        """Point the project back at an earlier successful version. Later versions are kept.

        Raises:
            ValueError: If no successful build exists for ``version``.
        """
        with self.project_lock():
            candidates = [
                record
                for record in self.list_builds()
                if record.version == version and record.status == BuildStatus.SUCCESS
            ]
            if not candidates:
                raise ValueError(f"No successful build v{version} for project {self.project_id}")
            target = candidates[0]
            previous = self.current_build()
            self.set_current(target)
        append_jsonl(
            self.events_path,
            {
                "event": "rollback",
                "from_version": previous.version if previous else None,
                "to_version": target.version,
                "build_id": target.build_id,
            },
        )
        logger.info("Rolled back %s to v%d", self.project_id, version)
        return target

    # ------------------------------------------------------------------
    # Conversation log and amendments
    # ------------------------------------------------------------------

    def read_conversation(self, limit: int | None = None) -> list[ConversationMessage]:
        if not self.conversation_log_path.is_file():
            return []
        messages: list[ConversationMessage] = []
        with self.conversation_log_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    messages.append(ConversationMessage.model_validate_json(line))
        messages.sort(key=lambda message: message.sequence)
        if limit is not None:
            return messages[-limit:]
        return messages

    def append_messages(self, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        """Append messages not yet logged (sequence greater than the last stored one)."""
        with locked_file(self.conversation_log_path):
            existing = self.read_conversation()
            last_sequence = existing[-1].sequence if existing else 0
            fresh = [message for message in messages if message.sequence > last_sequence]
            with self.conversation_log_path.open("a", encoding="utf-8") as handle:
                for message in fresh:
                    handle.write(message.model_dump_json() + "\n")
        return fresh

    def write_amendment(self, amendment: Amendment) -> Path:
        path = self.amendments_dir / f"{amendment.amendment_id}.json"
        atomic_write_text(path, amendment.model_dump_json(indent=2))
        return path

    def list_amendments(self) -> list[Amendment]:
        amendments = [
            Amendment.model_validate_json(_safe_read_json(path, "amendment"))
            for path in self.amendments_dir.glob("*.json")
        ]
        amendments.sort(key=lambda amendment: amendment.created_at)
        return amendments


# ---------------------------------------------------------------------------
# Artifact store
# ---------------------------------------------------------------------------

_CONTENT_TYPES = {
    ".html": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".eot": "application/vnd.ms-fontobject",
}


def content_type_for(path: str) -> str:
    suffix = PurePosixPath(path).suffix.lower()
    if suffix in _CONTENT_TYPES:
        return _CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "application/octet-stream"


class ArtifactStore:
    """Stores built output files under ``<user>/<project>/v<version>/<relative path>``."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @staticmethod
    def storage_prefix(user_id: str, project_id: str, version: int) -> str:
        return f"{sanitize_project_id(user_id)}/{sanitize_project_id(project_id)}/v{version}"

    def put(self, prefix: str, relative_path: str, data: bytes) -> str:
        """Store one artifact and record its content type in the version manifest.

        Raises:
            StorageError: If the artifact cannot be written.
        """
        key = f"{prefix}/{normalize_file_path(relative_path)}"
        try:
            atomic_write_bytes(self.root / key, data)
            with self._lock:
                manifest_path = self.root / prefix / "manifest.json"
                manifest = json.loads(manifest_path.read_text(encoding="utf-8")) if manifest_path.is_file() else {}
                manifest[normalize_file_path(relative_path)] = {
                    "content_type": content_type_for(relative_path),
                    "size": len(data),
                }
                atomic_write_text(manifest_path, json.dumps(manifest, indent=2, sort_keys=True))
        except OSError as exc:
            raise StorageError(f"Failed to store artifact {key}: {exc}") from exc
        return key

    def read_manifest(self, prefix: str) -> dict[str, dict[str, Any]]:
        manifest_path = self.root / prefix / "manifest.json"
        if not manifest_path.is_file():
            return {}
        return json.loads(manifest_path.read_text(encoding="utf-8"))


def sanitize_project_id(project_id: str) -> str:
    """Sanitize an identifier for use as a filesystem path component.

    Raises:
        ValueError: If the id is empty or contains no safe characters.
    """
    value = project_id.strip()
    if not value:
        raise ValueError("project_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-")
    if not value:
        raise ValueError("project_id contains no filesystem-safe characters")
    return value[:128]


def project_scoped_root(root: Path, project_id: str) -> Path:
    """Return ``root / "projects" / <sanitized id>`` unless *root* is already that path."""
    slug = sanitize_project_id(project_id)
    if root.name == slug and root.parent.name == "projects":
        return root
    return root / "projects" / slug
