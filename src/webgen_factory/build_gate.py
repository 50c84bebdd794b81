from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

from .canonical import content_digest
from .context_index import ContextIndex
from .errors import BuildError, RunCancelledError, SandboxCommandTimeout, StorageError
from .models import BuildArtifact, BuildRecord, BuildStatus, StagedFileSet
from .sandbox import Sandbox, sync_files
from .state_store import ArtifactStore, ProjectStore

logger = logging.getLogger(__name__)

_LOG_TAIL_CHARS = 2_000


def build_log_failed(output: str) -> bool:
    """The build is treated as failed when ``error`` or ``Error`` appears anywhere in its log."""
    return "error" in output or "Error" in output


class BuildGate:
    """Builds staged files and promotes them only when the build is green.

    Promotion order: pending record -> build -> root artifact check -> artifact
    transfer -> version files -> current pointer -> record ``success`` -> reindex.
    The record only turns ``success`` after the pointer swap. Any failure up to
    and including that step restores the previous pointer, marks the record
    ``failed`` and leaves the previously promoted version, its files and its index
    untouched. Promotion and
    reindex run under the project lock, so promotions of one project never overlap.
    """

    def __init__(
        self,
        sandbox: Sandbox,
        *,
        state_root: Path,
        artifacts: ArtifactStore,
        user_id: str = "local",
        context_index: ContextIndex | None = None,
        build_command: str = "npm run build",
        output_dir: str = "dist",
        root_artifact: str = "dist/index.html",
        build_timeout_seconds: float = 600,
        transfer_timeout_seconds: float = 60,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.sandbox = sandbox
        self.state_root = state_root
        self.artifacts = artifacts
        self.user_id = user_id
        self.context_index = context_index
        self.build_command = build_command
        self.output_dir = output_dir.strip("/")
        self.root_artifact = root_artifact
        self.build_timeout_seconds = build_timeout_seconds
        self.transfer_timeout_seconds = transfer_timeout_seconds
        self.cancel_event = cancel_event or threading.Event()

    def store_for(self, project_id: str) -> ProjectStore:
        return ProjectStore(self.state_root, project_id=project_id, user_id=self.user_id)

    def _ensure_not_cancelled(self, stage: str) -> None:
        if self.cancel_event.is_set():
            raise RunCancelledError(f"Run cancelled before {stage}")

    def _run_build(self) -> str:
        self.sandbox.remove(self.output_dir)
        try:
            result = self.sandbox.run_command(self.build_command, self.build_timeout_seconds)
        except SandboxCommandTimeout as exc:
            raise BuildError(f"Build timed out after {exc.timeout_seconds}s") from exc
        tail = result.output[-_LOG_TAIL_CHARS:]
        if not result.ok or build_log_failed(result.output):
            raise BuildError(f"Build failed (exit {result.exit_code})", log_tail=tail)
        if not self.sandbox.exists(self.root_artifact):
            raise BuildError(f"Build produced no {self.root_artifact}", log_tail=tail)
        return result.output

    def _transfer_artifacts(self, record: BuildRecord) -> tuple[str, list[str]]:
        outputs = self.sandbox.list_files(self.output_dir)
        if not outputs:
            raise BuildError(f"No files found under {self.output_dir}/")
        prefix = ArtifactStore.storage_prefix(self.user_id, record.project_id, record.version)
        deadline = time.monotonic() + self.transfer_timeout_seconds
        keys: list[str] = []
        for path in outputs:
            if time.monotonic() > deadline:
                raise StorageError(f"Artifact transfer exceeded {self.transfer_timeout_seconds}s")
            relative = path[len(self.output_dir) + 1 :]
            keys.append(self.artifacts.put(prefix, relative, self.sandbox.download_file(path)))
        logger.info("Stored %d artifact(s) under %s", len(keys), prefix)
        return prefix, keys

    def promote_if_green(self, staged: StagedFileSet, project_id: str) -> BuildArtifact:
        """Build ``staged`` and, if green, make it the project's current version.

        Raises:
            BuildError: If the build fails, logs an error or lacks the root artifact.
            StorageError: If artifacts or version files cannot be persisted.
            RunCancelledError: If the run was cancelled before the commit point.
        """
        store = self.store_for(project_id)
        with store.project_lock():
            previous = store.current_build()
            record = store.create_build_record()
            try:
                self._ensure_not_cancelled("build")
                sync_files(self.sandbox, staged.files)
                self._run_build()
                prefix, keys = self._transfer_artifacts(record)
                self._ensure_not_cancelled("promotion")
                store.write_version_files(record, staged.files)
                store.set_current(record)
                record = store.finalize_build(
                    record.build_id,
                    BuildStatus.SUCCESS,
                    storage_prefix=prefix,
                    build_hash=content_digest(staged.files),
                    file_count=len(keys),
                )
            except Exception as exc:
                logger.error("Build %s for %s failed: %s", record.build_id, project_id, exc)
                if store.read_build(record.build_id).status == BuildStatus.PENDING:
                    current = store.current_build()
                    if current is not None and current.build_id == record.build_id:
                        store.restore_current(previous)
                    store.discard_version_files(record)
                    store.finalize_build(record.build_id, BuildStatus.FAILED, error=str(exc))
                raise

            logger.info("Promoted %s as v%d of %s", record.build_id, record.version, project_id)
            indexed, index_error = 0, None
            if self.context_index is not None:
                try:
                    indexed = self.context_index.reindex(project_id, record.build_id, staged.files)
                except Exception as exc:
                    # The promotion stands; the next reindex of this build replaces partial chunks.
                    logger.error("Reindex of %s failed: %s", record.build_id, exc)
                    index_error = str(exc)
        return BuildArtifact(
            record=record,
            artifact_paths=keys,
            storage_prefix=prefix,
            indexed_chunks=indexed,
            index_error=index_error,
        )
