"""
Retry and backoff helpers.

Backoff math (exponential, capped, jittered), ``Retry-After`` parsing and
the tenacity controllers used by the HTTP client and the generation
dispatcher.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple, Type

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
)

logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]

RETRY_AFTER_HEADERS = ("retry-after", "x-retry-after")


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: str = "full"

    @classmethod
    def from_settings(cls, settings: Any) -> "BackoffPolicy":
        return cls(
            base_delay=settings.retry_base_delay,
            factor=settings.retry_backoff_factor,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )


def apply_jitter(delay: float, jitter_mode: str = "full") -> float:
    """
    Apply jitter to a delay value to prevent thundering herd.

    Args:
        delay: Base delay in seconds
        jitter_mode: "full", "equal" or "none"
    """
    if jitter_mode == "full":
        return random.uniform(0, delay)
    if jitter_mode == "equal":
        return delay / 2 + random.uniform(0, delay / 2)
    return delay


def parse_retry_after(retry_after: Optional[str]) -> Optional[float]:
    """Parse a Retry-After value (delta seconds or HTTP date) into seconds."""
    if not retry_after:
        return None

    value = str(retry_after).strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def retry_after_from_headers(headers: Mapping[str, Any]) -> Optional[float]:
    lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
    for key in RETRY_AFTER_HEADERS:
        if key in lowered:
            parsed = parse_retry_after(str(lowered[key]))
            if parsed is not None:
                return parsed
    return None


def calculate_exponential_backoff(attempt: int, policy: BackoffPolicy) -> float:
    """``base * factor**(attempt-1)``, capped at ``max_delay``, then jittered."""
    delay = policy.base_delay * (policy.factor ** max(0, attempt - 1))
    delay = min(delay, policy.max_delay)
    return apply_jitter(delay, policy.jitter)


def resolve_delay(
    attempt: int,
    policy: BackoffPolicy,
    retry_after: Optional[float] = None,
) -> float:
    """Backoff for ``attempt``; a server Retry-After overrides the computed value."""
    if retry_after is not None:
        return max(0.0, retry_after)
    return calculate_exponential_backoff(attempt, policy)


class RetryAfterWait:
    """tenacity wait strategy honouring ``exc.retry_after`` when present."""

    def __init__(self, policy: BackoffPolicy) -> None:
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        return resolve_delay(retry_state.attempt_number, self.policy, retry_after)


def build_fetch_retrying(
    *,
    max_retries: int,
    policy: BackoffPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    sleep: Optional[SleepFn] = None,
    before_sleep: Optional[Callable[[RetryCallState], None]] = None,
) -> AsyncRetrying:
    """Controller allowing ``max_retries + 1`` attempts on ``retry_on`` errors."""
    return AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=RetryAfterWait(policy),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep,
        sleep=sleep or _sleep,
        reraise=True,
    )


def build_phase_retrying(
    *,
    attempts: int = 2,
    no_retry_on: Tuple[Type[BaseException], ...] = (),
    sleep: Optional[SleepFn] = None,
    delay: float = 1.0,
) -> AsyncRetrying:
    """Short fixed-delay retry for a single generation phase on one backend."""

    def _should_retry(exc: BaseException) -> bool:
        return not isinstance(exc, no_retry_on)

    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "Retrying generation phase",
            attempt=retry_state.attempt_number,
            max_attempts=attempts,
            error=str(exc),
        )

    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=lambda _state: delay,
        retry=retry_if_exception(_should_retry),
        before_sleep=_log_retry,
        sleep=sleep or _sleep,
        reraise=True,
    )


async def _sleep(delay: float) -> None:
    await asyncio.sleep(delay)
