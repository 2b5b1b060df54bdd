"""Per-dependency circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - State is process-local and never persisted; a restart begins ``CLOSED``.
  - Entering ``OPEN`` schedules a timer that moves the breaker to
    ``HALF_OPEN`` once the recovery timeout elapses. ``can_execute`` performs
    the same transition lazily if it is consulted first.
  - Half-open probing is conservative: at most one in-flight probe call is
    admitted per breaker.
  - Only transport failures, 5xx responses and configured error kinds count
    toward the threshold. Other 4xx responses never trip the breaker.
"""

from fintrack_resilience.circuit_breaker.breaker import (
    BreakerRegistry,
    CircuitBreaker,
    CircuitBreakerConfig,
    counts_as_failure,
)
from fintrack_resilience.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from fintrack_resilience.circuit_breaker.state import BreakerSnapshot, CircuitState

__all__ = [
    "BreakerRegistry",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "counts_as_failure",
]
