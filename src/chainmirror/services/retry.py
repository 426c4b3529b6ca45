from __future__ import annotations

import logging
import random
import sqlite3
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from chainmirror.persistence.uow import UnitOfWork

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Lowercased fragments of sqlite3.OperationalError messages worth another attempt.
_RETRYABLE_SQLITE_MARKERS = (
    "database is locked",
    "database table is locked",
    "database is busy",
    "disk i/o error",
    "unable to open database",
)


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay_ms: int
    error_type: str
    used_retry_after: bool = False


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff with +/-50% jitter and an optional total sleep budget."""

    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int
    max_total_sleep_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delay values must be >= 0")

    def delay_ms(self, attempt: int, prng: random.Random, retry_after_s: float | None = None) -> int:
        if retry_after_s is not None:
            return min(self.max_delay_ms, int(retry_after_s * 1000))
        exponential = min(self.max_delay_ms, self.base_delay_ms * 2 ** max(0, attempt - 1))
        return min(self.max_delay_ms, int(exponential * (0.5 + prng.random())))

    def fits_budget(self, slept_s: float, next_delay_s: float) -> bool:
        return self.max_total_sleep_seconds is None or slept_s + next_delay_s <= self.max_total_sleep_seconds


def parse_retry_after_seconds(value: str | None) -> float | None:
    """Seconds from a Retry-After header, given as a number or an HTTP date; None when unusable."""
    candidate = (value or "").strip()
    if not candidate:
        return None
    try:
        seconds = float(candidate)
    except ValueError:
        try:
            when = parsedate_to_datetime(candidate)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        return max(0.0, (when - datetime.now(UTC)).total_seconds())
    return seconds if seconds >= 0 else None


def retry_with_backoff(  # noqa: UP047
    fn: Callable[[], T],
    *,
    max_attempts: int,
    base_delay_ms: int,
    max_delay_ms: int,
    jitter_seed: int | None = None,
    retry_on_exceptions: Sequence[type[Exception]] = (),
    should_retry: Callable[[Exception], bool] | None = None,
    sleep_fn: Callable[[float], None] | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
    retry_after_getter: Callable[[Exception], str | None] | None = None,
    max_total_sleep_seconds: float | None = None,
) -> T:
    policy = BackoffPolicy(
        max_attempts=max_attempts,
        base_delay_ms=base_delay_ms,
        max_delay_ms=max_delay_ms,
        max_total_sleep_seconds=max_total_sleep_seconds,
    )
    sleep = sleep_fn or time.sleep
    retryable = tuple(retry_on_exceptions)
    prng = random.Random(jitter_seed)
    slept_s = 0.0

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            eligible = bool(retryable) and isinstance(exc, retryable)
            if not eligible and should_retry is not None:
                eligible = should_retry(exc)
            if not eligible or attempt >= policy.max_attempts:
                raise

            retry_after_s = parse_retry_after_seconds(retry_after_getter(exc)) if retry_after_getter else None
            delay_ms = policy.delay_ms(attempt, prng, retry_after_s)
            if not policy.fits_budget(slept_s, delay_ms / 1000.0):
                raise
            slept_s += delay_ms / 1000.0
            if on_retry is not None:
                on_retry(
                    RetryAttempt(
                        attempt=attempt,
                        delay_ms=delay_ms,
                        error_type=type(exc).__name__,
                        used_retry_after=retry_after_s is not None,
                    )
                )
            sleep(delay_ms / 1000.0)


def is_retryable_db_error(exc: BaseException) -> bool:
    """Lock contention and I/O hiccups are retryable; constraint and schema errors are not."""
    if isinstance(exc, sqlite3.IntegrityError) or not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_SQLITE_MARKERS)


def transaction_with_retry(  # noqa: UP047
    uow_factory: Callable[[], UnitOfWork],
    work: Callable[[UnitOfWork], T],
    *,
    max_attempts: int = 3,
    base_delay_ms: int = 500,
    max_delay_ms: int = 5000,
    sleep_fn: Callable[[float], None] | None = None,
    operation: str = "transaction",
) -> T:
    """Run ``work`` in a fresh unit of work, re-running the whole transaction on retryable errors."""

    def _attempt() -> T:
        with uow_factory() as uow:
            return work(uow)

    def _on_retry(attempt: RetryAttempt) -> None:
        logger.warning(
            "db_transaction_retry",
            extra={
                "extra": {
                    "operation": operation,
                    "attempt": attempt.attempt,
                    "max_attempts": max_attempts,
                    "delay_ms": attempt.delay_ms,
                    "error_type": attempt.error_type,
                }
            },
        )

    return retry_with_backoff(
        _attempt,
        max_attempts=max_attempts,
        base_delay_ms=base_delay_ms,
        max_delay_ms=max_delay_ms,
        should_retry=is_retryable_db_error,
        sleep_fn=sleep_fn,
        on_retry=_on_retry,
    )
