from __future__ import annotations

from fintrack_resilience.connectivity import ConnectivityMonitor
from fintrack_resilience.events import ConnectivityChanged, EventBus
from tests.fintrack_resilience.support.fakes import FakeLogger


def test_update_publishes_changes_only() -> None:
    bus = EventBus()
    subscription = bus.subscribe()
    monitor = ConnectivityMonitor(events=bus, logger=FakeLogger())

    monitor.update(True)
    monitor.update(False)
    monitor.update(False)
    monitor.update(True)

    assert subscription.pending() == [
        ConnectivityChanged(online=False),
        ConnectivityChanged(online=True),
    ]


def test_restored_callbacks_fire_on_offline_to_online_only() -> None:
    monitor = ConnectivityMonitor(online=False, logger=FakeLogger())
    calls: list[str] = []
    monitor.on_restored(lambda: calls.append("restored"))

    monitor.update(True)
    monitor.update(True, effective_type="2g")
    monitor.update(False)
    monitor.update(True)

    assert calls == ["restored", "restored"]


def test_slow_link_hint() -> None:
    bus = EventBus()
    subscription = bus.subscribe()
    monitor = ConnectivityMonitor(events=bus, logger=FakeLogger())

    monitor.update(True, effective_type="slow-2g")
    assert monitor.is_slow
    assert monitor.effective_type == "slow-2g"

    monitor.update(True, effective_type="4g")
    assert not monitor.is_slow

    assert subscription.pending() == [
        ConnectivityChanged(online=True, slow=True),
        ConnectivityChanged(online=True, slow=False),
    ]


def test_failing_restored_callback_does_not_block_others() -> None:
    logger = FakeLogger()
    monitor = ConnectivityMonitor(online=False, logger=logger)
    calls: list[str] = []

    def _explode() -> None:
        raise RuntimeError("boom")

    monitor.on_restored(_explode)
    monitor.on_restored(lambda: calls.append("ok"))

    monitor.update(True)

    assert calls == ["ok"]
    assert "connectivity_restored_callback_failed" in logger.names("exception")
