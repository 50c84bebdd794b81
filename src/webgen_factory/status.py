from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MAX_UPDATES_PER_RUN = 50
STALE_AFTER_SECONDS = 60 * 60


@dataclass(frozen=True)
class StatusUpdate:
    step: str
    message: str
    progress: int | None = None
    timestamp: float = field(default_factory=time.time)


class StatusTracker:
    """In-memory progress log keyed by run id. Keeps the latest updates per run only."""

    def __init__(self, max_updates: int = MAX_UPDATES_PER_RUN) -> None:
        if max_updates < 1:
            raise ValueError("max_updates must be >= 1")
        self.max_updates = max_updates
        self._updates: dict[str, deque[StatusUpdate]] = {}
        self._lock = threading.Lock()

    def add(self, run_id: str, step: str, message: str, progress: int | None = None) -> StatusUpdate:
        if progress is not None and not 0 <= progress <= 100:
            raise ValueError(f"progress must be within 0..100, got: {progress}")
        update = StatusUpdate(step=step, message=message, progress=progress)
        with self._lock:
            self._updates.setdefault(run_id, deque(maxlen=self.max_updates)).append(update)
        logger.info("[status:%s] %s: %s", run_id, step, message)
        return update

    def latest(self, run_id: str) -> StatusUpdate | None:
        with self._lock:
            updates = self._updates.get(run_id)
            return updates[-1] if updates else None

    def history(self, run_id: str) -> list[StatusUpdate]:
        with self._lock:
            return list(self._updates.get(run_id, ()))

    def clear(self, run_id: str) -> None:
        with self._lock:
            self._updates.pop(run_id, None)

    def prune(self, *, older_than_seconds: float = STALE_AFTER_SECONDS, now: float | None = None) -> int:
        """Drop runs whose latest update is older than the cutoff. Returns how many were dropped."""
        cutoff = (now if now is not None else time.time()) - older_than_seconds
        with self._lock:
            stale = [run_id for run_id, updates in self._updates.items() if updates and updates[-1].timestamp < cutoff]
            for run_id in stale:
                del self._updates[run_id]
        return len(stale)
