"""Retry/backoff decisions for outbound calls.

The decision functions are pure: they say whether to retry and how long to
wait, and never sleep themselves. ``build_call_retrying`` adapts them into a
tenacity ``AsyncRetrying`` so callers can supply the sleep (and re-check
connectivity after it).
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt
from tenacity.retry import retry_base
from tenacity.wait import wait_base

from fintrack_resilience.errors import (
    OfflineError,
    RateLimited,
    ServerError,
    TransportError,
)

Rng = Callable[[], float]


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry count and backoff arithmetic.

    Attributes:
        max_retries: Retries allowed after the first attempt.
        base_delay: Delay in seconds before the first retry, before jitter.
        max_jitter: Upper bound (exclusive) of the uniform jitter in seconds.
        max_delay: Cap on the computed (non ``Retry-After``) delay.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_jitter: float = 1.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_jitter < 0:
            raise ValueError("max_jitter must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    delay: float = 0.0


def is_retryable(error: BaseException) -> bool:
    """Return true for no-response failures, HTTP 5xx and HTTP 429."""
    if isinstance(error, OfflineError):
        return False
    return isinstance(error, (TransportError, ServerError, RateLimited))


def compute_delay(
    attempt_number: int,
    error: BaseException,
    policy: RetryPolicy,
    *,
    rng: Rng = random.random,
) -> float:
    """Return the wait before retrying after failed attempt ``attempt_number``."""
    if isinstance(error, RateLimited) and error.retry_after is not None:
        return max(error.retry_after, 0.0)
    exponential = policy.base_delay * 2 ** (attempt_number - 1)
    jitter = rng() * policy.max_jitter
    return min(exponential + jitter, policy.max_delay)


def decide_retry(
    attempt_number: int,
    error: BaseException,
    policy: RetryPolicy,
    *,
    rng: Rng = random.random,
) -> RetryDecision:
    """Decide whether failed attempt ``attempt_number`` (1-based) is retried."""
    if attempt_number < 1:
        raise ValueError("attempt_number must be >= 1")
    if attempt_number > policy.max_retries or not is_retryable(error):
        return RetryDecision(should_retry=False)
    return RetryDecision(
        should_retry=True,
        delay=compute_delay(attempt_number, error, policy, rng=rng),
    )


def parse_retry_after(
    value: str | None,
    *,
    now: datetime | None = None,
) -> float | None:
    """Parse a ``Retry-After`` header given as delta-seconds or an HTTP-date."""
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.isdigit():
        return float(normalized)
    try:
        target = parsedate_to_datetime(normalized)
    except (TypeError, ValueError):
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=UTC)
    reference = datetime.now(UTC) if now is None else now
    return max((target - reference).total_seconds(), 0.0)


def _failed_exception(retry_state: RetryCallState) -> BaseException | None:
    outcome = retry_state.outcome
    if outcome is None or not outcome.failed:
        return None
    return outcome.exception()


class retry_if_decided(retry_base):
    """Tenacity retry strategy backed by :func:`decide_retry`."""

    def __init__(self, policy: RetryPolicy) -> None:
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> bool:
        error = _failed_exception(retry_state)
        if error is None:
            return False
        decision = decide_retry(
            retry_state.attempt_number,
            error,
            self._policy,
            rng=lambda: 0.0,
        )
        return decision.should_retry


class wait_decided(wait_base):
    """Tenacity wait strategy backed by :func:`compute_delay`."""

    def __init__(self, policy: RetryPolicy, *, rng: Rng = random.random) -> None:
        self._policy = policy
        self._rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        error = _failed_exception(retry_state)
        if error is None:
            return 0.0
        return compute_delay(
            retry_state.attempt_number,
            error,
            self._policy,
            rng=self._rng,
        )


def build_call_retrying(
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    rng: Rng = random.random,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` that follows the retry/backoff decisions.

    The last exception is always re-raised once retries stop.
    """
    options: dict[str, Any] = {}
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(
        retry=retry_if_decided(policy),
        wait=wait_decided(policy, rng=rng),
        stop=stop_after_attempt(policy.max_retries + 1),
        reraise=True,
        **options,
    )
