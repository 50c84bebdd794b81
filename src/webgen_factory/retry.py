"""Bounded retry helper used by every component that calls an external capability."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from .errors import AbnormalStopError, GenerationTimeoutError, GenerationTransportError, MalformedResponseError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MARKERS = ("503", "429", "overloaded", "unavailable", "rate limit", "timed out", "timeout")


def linear_backoff(base_seconds: float, cap_seconds: float) -> Callable[[int], float]:
    """Delay of ``min(base * attempt, cap)`` seconds after the given (1-indexed) attempt."""

    def _delay(attempt: int) -> float:
        return min(base_seconds * attempt, cap_seconds)

    return _delay


def no_backoff(_attempt: int) -> float:
    return 0.0


def is_transient_provider_error(exc: BaseException) -> bool:
    """Return True for provider failures that are worth retrying with the same inputs."""
    if isinstance(exc, (GenerationTimeoutError, MalformedResponseError)):
        return True
    if isinstance(exc, AbnormalStopError):
        return False
    if isinstance(exc, GenerationTransportError):
        return True
    lowered = str(exc).lower()
    return any(marker in lowered for marker in _TRANSIENT_MARKERS)


def always_retry(_exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default=no_backoff)
    is_retryable: Callable[[BaseException], bool] = field(default=is_transient_provider_error)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got: {self.max_attempts}")


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] | None = None,
) -> T:
    """Invoke ``fn`` until it succeeds or the policy's attempt budget is spent.

    Args:
        fn: Zero-argument callable performing one attempt.
        policy: Attempt budget, backoff schedule and retryability predicate.
        description: Label used in log messages.
        sleep: Sleep function (injectable for tests).
        should_stop: Optional predicate checked before each retry; when it returns
            True the last error is raised instead of trying again.

    Returns:
        The first successful result of ``fn``.

    Raises:
        Exception: The last error raised by ``fn`` once attempts are exhausted, or
            immediately if the error is not retryable.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            retryable = policy.is_retryable(exc)
            if not retryable or attempt >= policy.max_attempts:
                if retryable:
                    logger.warning("%s failed after %d attempt(s): %s", description, attempt, exc)
                raise
            if should_stop is not None and should_stop():
                logger.info("%s not retried: run is stopping", description)
                raise
            delay = policy.backoff(attempt)
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %.2fs",
                description,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            if delay > 0:
                sleep(delay)
