"""One-line user notices for resilience events."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from fintrack_resilience.circuit_breaker.state import CircuitState
from fintrack_resilience.events import (
    BreakerStateChanged,
    ConnectivityChanged,
    ForcedLogout,
    QueuedRequestFailed,
    QueueSyncSummary,
    RequestEvicted,
    RequestQueued,
    ResilienceEvent,
    SessionExpiryWarning,
    SessionRefreshRetryScheduled,
)


class NoticeLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Notice:
    level: NoticeLevel
    message: str
    action: str | None = None


def _breaker_notice(event: BreakerStateChanged) -> Notice | None:
    if event.new == CircuitState.OPEN:
        return Notice(
            NoticeLevel.ERROR,
            "Service temporarily unavailable due to repeated failures. "
            "Trying to recover...",
        )
    if event.new == CircuitState.HALF_OPEN:
        return Notice(NoticeLevel.INFO, "Testing service recovery...")
    if event.old == CircuitState.HALF_OPEN:
        return Notice(NoticeLevel.SUCCESS, "Service recovered successfully!")
    return None


def _sync_notice(event: QueueSyncSummary) -> Notice | None:
    if event.succeeded and not event.failed:
        noun = "request" if event.succeeded == 1 else "requests"
        return Notice(
            NoticeLevel.SUCCESS,
            f"Successfully synced {event.succeeded} queued {noun}",
        )
    if event.failed:
        return Notice(
            NoticeLevel.WARNING,
            f"Synced {event.succeeded} requests, {event.failed} failed",
        )
    return None


def _connectivity_notice(event: ConnectivityChanged) -> Notice:
    if not event.online:
        return Notice(NoticeLevel.ERROR, "Connection lost - You are now offline")
    if event.slow:
        return Notice(
            NoticeLevel.WARNING,
            "Slow connection detected. Some features may be limited.",
        )
    return Notice(NoticeLevel.SUCCESS, "Connection restored")


def render_notice(event: ResilienceEvent) -> Notice | None:
    """Return the user-facing notice for ``event``, or None when silent."""
    if isinstance(event, BreakerStateChanged):
        return _breaker_notice(event)
    if isinstance(event, ConnectivityChanged):
        return _connectivity_notice(event)
    if isinstance(event, QueueSyncSummary):
        return _sync_notice(event)
    if isinstance(event, RequestQueued):
        return Notice(
            NoticeLevel.INFO,
            "Request queued for when you're back online",
        )
    if isinstance(event, RequestEvicted):
        return Notice(
            NoticeLevel.WARNING,
            "Offline queue is full. The oldest queued request was dropped.",
        )
    if isinstance(event, QueuedRequestFailed):
        return Notice(
            NoticeLevel.ERROR,
            f"Failed to sync {event.method} request after multiple attempts",
        )
    if isinstance(event, SessionExpiryWarning):
        return Notice(
            NoticeLevel.WARNING,
            "Your session will expire soon. Do you want to extend it?",
            action="Extend Session",
        )
    if isinstance(event, SessionRefreshRetryScheduled):
        return Notice(
            NoticeLevel.WARNING,
            f"Session refresh failed. Retrying in {event.delay:g}s... "
            f"({event.attempt}/{event.max_attempts})",
        )
    if isinstance(event, ForcedLogout):
        return Notice(
            NoticeLevel.ERROR,
            "Your session has expired. Please log in again.",
        )
    return None
