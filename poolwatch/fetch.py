"""Retry and backoff policy shared by every upstream call."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, TypeVar

from .numeric import backoff_delay

log = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES = frozenset({408, 429})
THROTTLED = 429


class FetchError(Exception):
    """Base class for upstream fetch failures."""


class UpstreamError(FetchError):
    """An upstream call failed.

    ``status`` is the HTTP status, or ``None`` for a network-level failure
    (DNS, connection reset, timeout before a response).
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retry_after: float | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after
        self.url = url


class CircuitOpen(FetchError):
    """Raised when a host circuit breaker is open."""


class RetriesExhausted(FetchError):
    """Raised when the retry budget for a call is spent."""

    def __init__(self, message: str, *, last_error: BaseException, attempts: int) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


def status_of(exc: BaseException) -> int | None:
    status = getattr(exc, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return status
    return None


def is_retryable(exc: BaseException) -> bool:
    """429, 408, any 5xx, or a network failure without status."""

    if isinstance(exc, (CircuitOpen, RetriesExhausted)):
        return False
    if isinstance(exc, asyncio.CancelledError):
        return False
    status = status_of(exc)
    if status is None:
        return isinstance(exc, (UpstreamError, OSError, asyncio.TimeoutError))
    return status in RETRYABLE_STATUSES or 500 <= status <= 599


def parse_retry_after(value: Any, *, now: float | None = None) -> float | None:
    """Parse a ``Retry-After`` value (seconds or HTTP-date) into seconds.

    Returns ``None`` when absent or unparseable; never negative.
    """

    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return max(0.0, float(value))
    text = str(value).strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if moment is None:
        return None
    current = time.time() if now is None else now
    return max(0.0, moment.timestamp() - current)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff parameters, all durations in seconds.

    ``max_attempts`` is the total number of calls allowed for non-throttled
    failures, the first one included; throttled (429) responses are bounded
    separately by ``max_throttled`` retries.
    """

    base: float = 0.3
    cap: float = 5.0
    max_attempts: int = 5
    max_throttled: int = 20

    def __post_init__(self) -> None:
        if self.base < 0 or self.cap < 0:
            raise ValueError("backoff base and cap must be non-negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_throttled < 0:
            raise ValueError("max_throttled must be non-negative")


def compute_delay(
    exc: BaseException,
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Full-jitter delay: uniform in ``[0, hint]``.

    The hint is the server's ``Retry-After`` when present, else the capped
    exponential backoff for ``attempt``.
    """

    hint = getattr(exc, "retry_after", None)
    if isinstance(hint, (int, float)) and not isinstance(hint, bool):
        ceiling = max(0.0, float(hint))
    else:
        ceiling = backoff_delay(attempt, policy.base, policy.cap)
    if ceiling <= 0:
        return 0.0
    return rng(0.0, ceiling)


async def with_backoff(
    task: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[float, float], float] = random.uniform,
    label: str = "upstream",
) -> T:
    """Await ``task()`` retrying retryable failures per ``policy``."""

    policy = policy or RetryPolicy()
    failures = 0
    throttled = 0
    while True:
        try:
            return await task()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            attempt = failures + throttled
            if status_of(exc) == THROTTLED:
                if throttled >= policy.max_throttled:
                    raise RetriesExhausted(
                        f"{label}: still throttled after {throttled} retries",
                        last_error=exc,
                        attempts=attempt + 1,
                    ) from exc
                throttled += 1
            else:
                if failures + 1 >= policy.max_attempts:
                    raise RetriesExhausted(
                        f"{label}: giving up after {failures + 1} attempts: {exc}",
                        last_error=exc,
                        attempts=attempt + 1,
                    ) from exc
                failures += 1
            delay = compute_delay(exc, attempt, policy, rng)
            log.info(
                "%s failed (status=%s); retrying in %.0fms (attempt %d)",
                label,
                status_of(exc),
                delay * 1000.0,
                attempt + 1,
            )
            await sleep(delay)


__all__ = [
    "CircuitOpen",
    "FetchError",
    "RetriesExhausted",
    "RetryPolicy",
    "UpstreamError",
    "compute_delay",
    "is_retryable",
    "parse_retry_after",
    "status_of",
    "with_backoff",
]
