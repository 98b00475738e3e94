from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import EngineConnectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def linear_backoff(step_sec: float) -> Callable[[int], float]:
    return lambda attempt: attempt * step_sec


def constant_backoff(wait_sec: float) -> Callable[[int], float]:
    return lambda attempt: wait_sec


def is_transient(exc: BaseException) -> bool:
    """Connection failures and errors flagged ``retryable`` are worth another attempt."""
    return isinstance(exc, EngineConnectionError) or bool(getattr(exc, "retryable", False))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry around a single call.

    ``max_attempts`` counts the first call. ``backoff(n)`` is the wait after the
    n-th failed attempt (1-based).
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default=linear_backoff(2.0))
    retry_on: Callable[[BaseException], bool] = is_transient
    sleep: Callable[[float], None] = time.sleep
    name: str = "operation"

    def call(self, func: Callable[[], T]) -> T:
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return func()
            except Exception as exc:
                if not self.retry_on(exc):
                    raise
                if attempt >= attempts:
                    logger.error(f"{self.name} failed after {attempts} attempts: {exc}")
                    raise
                delay = max(0.0, float(self.backoff(attempt)))
                logger.warning(
                    f"{self.name} attempt {attempt}/{attempts} failed: {exc}. Retrying in {delay:.1f}s"
                )
                if delay > 0:
                    self.sleep(delay)
        raise AssertionError("unreachable")


def engine_call_policy(name: str, *, sleep: Callable[[float], None] = time.sleep) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff=linear_backoff(2.0), retry_on=is_transient, sleep=sleep, name=name)


def job_policy(*, sleep: Callable[[float], None] = time.sleep) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        backoff=constant_backoff(30.0),
        retry_on=lambda exc: isinstance(exc, EngineConnectionError),
        sleep=sleep,
        name="transcription job",
    )
