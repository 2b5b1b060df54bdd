from __future__ import annotations

from datetime import UTC, datetime

import pytest

from fintrack_resilience.circuit_breaker import CircuitState
from fintrack_resilience.events import (
    BreakerStateChanged,
    ConnectivityChanged,
    ForcedLogout,
    QueuedRequestFailed,
    QueuedRequestReplayed,
    QueueSyncSummary,
    RequestEvicted,
    RequestQueued,
    ResilienceEvent,
    SessionExpiryWarning,
    SessionRefreshed,
    SessionRefreshRetryScheduled,
)
from fintrack_resilience.notices import Notice, NoticeLevel, render_notice

_NOW = datetime(2024, 1, 1, tzinfo=UTC)


async def _extend() -> None:
    return None


@pytest.mark.parametrize(
    ("event", "expected"),
    [
        (
            BreakerStateChanged("api", CircuitState.CLOSED, CircuitState.OPEN, 60.0),
            Notice(
                NoticeLevel.ERROR,
                "Service temporarily unavailable due to repeated failures. "
                "Trying to recover...",
            ),
        ),
        (
            BreakerStateChanged("api", CircuitState.OPEN, CircuitState.HALF_OPEN),
            Notice(NoticeLevel.INFO, "Testing service recovery..."),
        ),
        (
            BreakerStateChanged("api", CircuitState.HALF_OPEN, CircuitState.CLOSED),
            Notice(NoticeLevel.SUCCESS, "Service recovered successfully!"),
        ),
        (
            ConnectivityChanged(online=False),
            Notice(NoticeLevel.ERROR, "Connection lost - You are now offline"),
        ),
        (
            ConnectivityChanged(online=True),
            Notice(NoticeLevel.SUCCESS, "Connection restored"),
        ),
        (
            ConnectivityChanged(online=True, slow=True),
            Notice(
                NoticeLevel.WARNING,
                "Slow connection detected. Some features may be limited.",
            ),
        ),
        (
            RequestQueued("r1", "POST", "/transactions", "normal", 1),
            Notice(NoticeLevel.INFO, "Request queued for when you're back online"),
        ),
        (
            QueueSyncSummary(succeeded=1, failed=0, retried=0, remaining=0),
            Notice(NoticeLevel.SUCCESS, "Successfully synced 1 queued request"),
        ),
        (
            QueueSyncSummary(succeeded=3, failed=0, retried=1, remaining=1),
            Notice(NoticeLevel.SUCCESS, "Successfully synced 3 queued requests"),
        ),
        (
            QueueSyncSummary(succeeded=2, failed=1, retried=0, remaining=0),
            Notice(NoticeLevel.WARNING, "Synced 2 requests, 1 failed"),
        ),
        (
            SessionRefreshRetryScheduled(attempt=1, max_attempts=3, delay=2.0),
            Notice(
                NoticeLevel.WARNING,
                "Session refresh failed. Retrying in 2s... (1/3)",
            ),
        ),
        (
            ForcedLogout(reason="refresh_failed"),
            Notice(NoticeLevel.ERROR, "Your session has expired. Please log in again."),
        ),
    ],
)
def test_render_notice_wording(event: ResilienceEvent, expected: Notice) -> None:
    assert render_notice(event) == expected


def test_expiry_warning_offers_extend_action() -> None:
    notice = render_notice(
        SessionExpiryWarning(expires_at=_NOW, seconds_remaining=600, extend=_extend)
    )

    assert notice is not None
    assert notice.level == NoticeLevel.WARNING
    assert notice.action == "Extend Session"


def test_failure_and_eviction_notices() -> None:
    failed = render_notice(
        QueuedRequestFailed("r1", "POST", "/transactions", "HTTP 500")
    )
    evicted = render_notice(RequestEvicted("r2", "low"))

    assert failed is not None and failed.level == NoticeLevel.ERROR
    assert "POST" in failed.message
    assert evicted is not None and evicted.level == NoticeLevel.WARNING


@pytest.mark.parametrize(
    "event",
    [
        QueuedRequestReplayed("r1", 200),
        SessionRefreshed(expires_at=_NOW),
        QueueSyncSummary(succeeded=0, failed=0, retried=2, remaining=2),
        BreakerStateChanged("api", CircuitState.OPEN, CircuitState.CLOSED),
    ],
)
def test_silent_events(event: ResilienceEvent) -> None:
    assert render_notice(event) is None
