"""Core circuit breaker implementation."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import ParamSpec, TypeVar

import structlog

from fintrack_resilience.circuit_breaker.exceptions import CircuitOpenError
from fintrack_resilience.circuit_breaker.state import BreakerSnapshot, CircuitState
from fintrack_resilience.clock import AsyncioClock, Clock, TimerHandle
from fintrack_resilience.errors import (
    ErrorKind,
    HTTPStatusError,
    ResilienceError,
    ServerError,
    TransportError,
)
from fintrack_resilience.events import BreakerStateChanged, EventBus
from fintrack_resilience.logging import StructuredLogger, log_info, log_warning

T = TypeVar("T")
P = ParamSpec("P")

_DEFAULT_EXPECTED_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT})


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Counted failures required while ``CLOSED`` before
            opening.
        recovery_timeout: Seconds to stay ``OPEN`` before allowing a probe.
        monitoring_period: Seconds after which an earlier failure is stale
            and no longer accumulates toward the threshold.
        expected_kinds: Error kinds that always count as failures, even when
            they carry a 4xx status.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    monitoring_period: float = 300.0
    expected_kinds: frozenset[ErrorKind] = field(
        default_factory=lambda: _DEFAULT_EXPECTED_KINDS
    )

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be >= 0")
        if self.monitoring_period < 0:
            raise ValueError("monitoring_period must be >= 0")
        self.expected_kinds = frozenset(self.expected_kinds)


def counts_as_failure(error: BaseException, config: CircuitBreakerConfig) -> bool:
    """Return true when ``error`` should count toward opening the breaker."""
    if isinstance(error, (TransportError, ServerError)):
        return True
    if getattr(error, "kind", None) in config.expected_kinds:
        return True
    if isinstance(error, (HTTPStatusError, ResilienceError)):
        return False
    return True


class CircuitBreaker:
    """Closed/open/half-open gate for one monitored dependency.

    State transitions happen in synchronous methods so they are atomic with
    respect to the event loop. ``can_execute`` doubles as admission control:
    in ``HALF_OPEN`` it hands out the single probe slot, which the caller must
    settle with ``record_success``, ``record_failure`` or ``release``.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
        events: EventBus | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Dependency name used in events and logs.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            clock: Time source and timer facility.
            events: Bus receiving ``BreakerStateChanged`` events.
            logger: Structured logger.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._clock: Clock = AsyncioClock() if clock is None else clock
        self._events = events
        self._logger = structlog.get_logger(__name__) if logger is None else logger
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: datetime | None = None
        self._next_attempt_at: datetime | None = None
        self._timer: TimerHandle | None = None
        self._probe_in_flight = False
        self._generation = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            last_failure_at=self._last_failure_at,
            next_attempt_at=self._next_attempt_at,
        )

    def retry_after(self) -> float:
        """Seconds until a probe may be attempted; 0 unless ``OPEN``."""
        if self._state != CircuitState.OPEN or self._next_attempt_at is None:
            return 0.0
        remaining = (self._next_attempt_at - self._clock.now()).total_seconds()
        return max(remaining, 0.0)

    def can_execute(self) -> bool:
        """Return whether a call may be issued now."""
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            next_attempt_at = self._next_attempt_at
            if next_attempt_at is None or self._clock.now() < next_attempt_at:
                return False
            self._enter_half_open()

        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def ensure_can_execute(self) -> None:
        """Raise ``CircuitOpenError`` unless a call is admitted."""
        if not self.can_execute():
            raise CircuitOpenError(self.name, retry_after=self.retry_after())

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self.reset()
            return
        if self._state == CircuitState.CLOSED and (
            self._failure_count or self._last_failure_at is not None
        ):
            self._failure_count = 0
            self._last_failure_at = None

    def record_failure(self, error: BaseException) -> bool:
        """Record a failed call. Returns whether the failure was counted."""
        if not counts_as_failure(error, self.config):
            self.release()
            return False

        now = self._clock.now()
        if self._state == CircuitState.CLOSED and self._last_failure_at is not None:
            age = (now - self._last_failure_at).total_seconds()
            if age > self.config.monitoring_period:
                self._failure_count = 0

        self._failure_count += 1
        self._last_failure_at = now

        if self._state == CircuitState.HALF_OPEN:
            self._trip(previous=CircuitState.HALF_OPEN)
        elif (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self.config.failure_threshold
        ):
            self._trip(previous=CircuitState.CLOSED)
        return True

    def release(self) -> None:
        """Give back a half-open probe slot without recording an outcome."""
        if self._state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False

    def reset(self) -> None:
        """Return to ``CLOSED`` with zeroed counters."""
        self._cancel_timer()
        self._generation += 1
        previous = self._state
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at = None
        self._next_attempt_at = None
        self._probe_in_flight = False
        if previous != CircuitState.CLOSED:
            self._emit_state_change(previous, CircuitState.CLOSED)

    def close(self) -> None:
        """Cancel the pending recovery timer."""
        self._cancel_timer()

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        An outcome is recorded only when the breaker is still in the state
        the call was admitted in; calls that outlive a transition are ignored.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            Exception: The original exception from ``func``.
        """
        self.ensure_can_execute()
        generation = self._generation
        settled = False
        start = time.monotonic()
        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            settled = True
            current = generation == self._generation
            counted = self.record_failure(exc) if current else False
            log_info(
                self._logger,
                "circuit_breaker_call_failed",
                breaker=self.name,
                error_type=type(exc).__name__,
                counted=counted,
                stale=not current,
                elapsed=max(time.monotonic() - start, 0.0),
            )
            raise
        else:
            settled = True
            if generation == self._generation:
                self.record_success()
            return result
        finally:
            if not settled and generation == self._generation:
                self.release()

    def _trip(self, *, previous: CircuitState) -> None:
        self._cancel_timer()
        self._generation += 1
        timeout = self.config.recovery_timeout
        self._state = CircuitState.OPEN
        self._next_attempt_at = self._clock.now() + timedelta(seconds=timeout)
        self._probe_in_flight = False
        self._timer = self._clock.call_later(timeout, self._on_recovery_timer)
        self._emit_state_change(previous, CircuitState.OPEN)

    def _on_recovery_timer(self) -> None:
        self._timer = None
        if self._state == CircuitState.OPEN:
            self._enter_half_open()

    def _enter_half_open(self) -> None:
        self._cancel_timer()
        self._generation += 1
        self._state = CircuitState.HALF_OPEN
        self._next_attempt_at = None
        self._probe_in_flight = False
        self._emit_state_change(CircuitState.OPEN, CircuitState.HALF_OPEN)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _emit_state_change(self, old: CircuitState, new: CircuitState) -> None:
        retry_after = self.retry_after() if new == CircuitState.OPEN else None
        if new == CircuitState.OPEN:
            log_warning(
                self._logger,
                "circuit_breaker_opened",
                breaker=self.name,
                previous=str(old),
                failure_count=self._failure_count,
                retry_after=retry_after,
            )
        else:
            log_info(
                self._logger,
                "circuit_breaker_state_changed",
                breaker=self.name,
                previous=str(old),
                state=str(new),
            )
        if self._events is not None:
            self._events.publish(
                BreakerStateChanged(
                    name=self.name,
                    old=old,
                    new=new,
                    retry_after=retry_after,
                )
            )


class BreakerRegistry:
    """Own one circuit breaker per dependency name."""

    def __init__(
        self,
        *,
        config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
        events: EventBus | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._config = CircuitBreakerConfig() if config is None else config
        self._clock = clock
        self._events = events
        self._logger = logger
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                config=self._config,
                clock=self._clock,
                events=self._events,
                logger=self._logger,
            )
            self._breakers[name] = breaker
        return breaker

    def snapshots(self) -> list[BreakerSnapshot]:
        return [breaker.snapshot() for breaker in self._breakers.values()]

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def close(self) -> None:
        for breaker in self._breakers.values():
            breaker.close()
