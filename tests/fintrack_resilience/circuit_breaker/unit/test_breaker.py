import asyncio
from datetime import timedelta

import pytest

from fintrack_resilience.circuit_breaker import (
    BreakerRegistry,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    counts_as_failure,
)
from fintrack_resilience.errors import (
    ClientError,
    ErrorKind,
    RateLimited,
    ServerError,
    TransportError,
    Unauthorized,
)
from fintrack_resilience.events import BreakerStateChanged, EventBus
from tests.fintrack_resilience.support.fakes import FakeClock, FakeLogger

pytestmark = pytest.mark.asyncio


def _server_error() -> ServerError:
    return ServerError("HTTP 503", status_code=503)


def _build(
    clock: FakeClock,
    *,
    failure_threshold: int = 5,
    recovery_timeout: float = 60.0,
    monitoring_period: float = 300.0,
    events: EventBus | None = None,
    logger: FakeLogger | None = None,
) -> CircuitBreaker:
    return CircuitBreaker(
        "api",
        config=CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            monitoring_period=monitoring_period,
        ),
        clock=clock,
        events=events,
        logger=FakeLogger() if logger is None else logger,
    )


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"failure_threshold": 0}, "failure_threshold must be >= 1"),
        ({"recovery_timeout": -1.0}, "recovery_timeout must be >= 0"),
        ({"monitoring_period": -1.0}, "monitoring_period must be >= 0"),
    ],
)
async def test_config_validation(kwargs: dict[str, float], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        CircuitBreakerConfig(**kwargs)  # type: ignore[arg-type]


async def test_failure_classification() -> None:
    config = CircuitBreakerConfig()

    assert counts_as_failure(TransportError("down"), config)
    assert counts_as_failure(
        TransportError("slow", kind=ErrorKind.TIMEOUT),
        config,
    )
    assert counts_as_failure(_server_error(), config)
    assert counts_as_failure(RuntimeError("bug"), config)
    assert not counts_as_failure(ClientError("bad", status_code=422), config)
    assert not counts_as_failure(Unauthorized("no", status_code=401), config)
    assert not counts_as_failure(RateLimited("slow down"), config)

    rate_limited_counts = CircuitBreakerConfig(
        expected_kinds=frozenset({ErrorKind.RATE_LIMITED})
    )
    assert counts_as_failure(RateLimited("slow down"), rate_limited_counts)


async def test_opens_at_threshold_and_rejects_without_calling(
    fake_clock: FakeClock,
) -> None:
    bus = EventBus()
    subscription = bus.subscribe()
    breaker = _build(fake_clock, events=bus)

    for _ in range(4):
        breaker.record_failure(_server_error())
        assert breaker.state == CircuitState.CLOSED
    breaker.record_failure(_server_error())

    assert breaker.state == CircuitState.OPEN
    expected_next_attempt = fake_clock.now() + timedelta(seconds=60)
    assert breaker.snapshot().next_attempt_at == expected_next_attempt
    assert breaker.retry_after() == pytest.approx(60.0)

    calls = 0

    async def _transport() -> str:
        nonlocal calls
        calls += 1
        return "ok"

    fake_clock.advance(59.0)
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(_transport)

    assert calls == 0
    assert excinfo.value.retry_after == pytest.approx(1.0)
    assert excinfo.value.kind == ErrorKind.BREAKER_OPEN
    assert subscription.pending() == [
        BreakerStateChanged(
            name="api",
            old=CircuitState.CLOSED,
            new=CircuitState.OPEN,
            retry_after=60.0,
        )
    ]


async def test_next_attempt_set_only_while_open(fake_clock: FakeClock) -> None:
    breaker = _build(fake_clock, failure_threshold=1, recovery_timeout=10.0)

    assert breaker.snapshot().next_attempt_at is None
    breaker.record_failure(_server_error())
    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.next_attempt_at is not None

    fake_clock.advance(10.0)
    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.HALF_OPEN
    assert snapshot.next_attempt_at is None


async def test_recovery_timer_moves_to_half_open(fake_clock: FakeClock) -> None:
    logger = FakeLogger()
    breaker = _build(fake_clock, failure_threshold=1, logger=logger)
    breaker.record_failure(_server_error())

    fake_clock.advance(59.9)
    assert breaker.state == CircuitState.OPEN
    fake_clock.advance(0.1)

    assert breaker.state == CircuitState.HALF_OPEN
    assert "circuit_breaker_opened" in logger.names("warning")
    assert "circuit_breaker_state_changed" in logger.names("info")


async def test_can_execute_transitions_lazily_when_timer_missed(
    fake_clock: FakeClock,
) -> None:
    breaker = _build(fake_clock, failure_threshold=1, recovery_timeout=5.0)
    breaker.record_failure(_server_error())
    for timer in fake_clock.pending():
        timer.cancel()

    fake_clock.advance(5.0)
    assert breaker.state == CircuitState.OPEN
    assert breaker.can_execute()
    assert breaker.state == CircuitState.HALF_OPEN


async def test_half_open_probe_success_closes(fake_clock: FakeClock) -> None:
    bus = EventBus()
    subscription = bus.subscribe()
    breaker = _build(fake_clock, failure_threshold=1, events=bus)
    breaker.record_failure(_server_error())
    fake_clock.advance(60.0)

    started = asyncio.Event()
    release = asyncio.Event()

    async def _probe() -> str:
        started.set()
        await release.wait()
        return "ok"

    probe = asyncio.create_task(breaker.call(_probe))
    await started.wait()

    async def _ok() -> str:
        return "ok"

    with pytest.raises(CircuitOpenError):
        await breaker.call(_ok)

    release.set()
    assert await probe == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0
    assert [event.new for event in subscription.pending()] == [
        CircuitState.OPEN,
        CircuitState.HALF_OPEN,
        CircuitState.CLOSED,
    ]


async def test_half_open_probe_failure_reopens_with_fresh_timeout(
    fake_clock: FakeClock,
) -> None:
    breaker = _build(fake_clock, failure_threshold=1, recovery_timeout=60.0)
    breaker.record_failure(_server_error())
    fake_clock.advance(60.0)
    assert breaker.can_execute()

    breaker.record_failure(_server_error())

    assert breaker.state == CircuitState.OPEN
    assert breaker.retry_after() == pytest.approx(60.0)
    fake_clock.advance(60.0)
    assert breaker.state == CircuitState.HALF_OPEN


async def test_uncounted_probe_error_releases_slot(fake_clock: FakeClock) -> None:
    breaker = _build(fake_clock, failure_threshold=1)
    breaker.record_failure(_server_error())
    fake_clock.advance(60.0)

    assert breaker.can_execute()
    assert not breaker.can_execute()
    assert not breaker.record_failure(ClientError("bad", status_code=400))

    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.can_execute()


async def test_cancelled_probe_releases_slot(fake_clock: FakeClock) -> None:
    breaker = _build(fake_clock, failure_threshold=1)
    breaker.record_failure(_server_error())
    fake_clock.advance(60.0)

    started = asyncio.Event()

    async def _hang() -> None:
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(breaker.call(_hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.can_execute()


async def test_call_outliving_transitions_does_not_settle_probe(
    fake_clock: FakeClock,
) -> None:
    breaker = _build(fake_clock, failure_threshold=1, recovery_timeout=10.0)
    started = asyncio.Event()
    release = asyncio.Event()

    async def _slow() -> str:
        started.set()
        await release.wait()
        return "late"

    slow = asyncio.create_task(breaker.call(_slow))
    await started.wait()

    async def _fail() -> None:
        raise _server_error()

    with pytest.raises(ServerError):
        await breaker.call(_fail)
    assert breaker.state == CircuitState.OPEN
    fake_clock.advance(10.0)
    assert breaker.state == CircuitState.HALF_OPEN

    release.set()
    assert await slow == "late"

    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.can_execute()


async def test_late_failure_does_not_reopen_closed_breaker(
    fake_clock: FakeClock,
) -> None:
    breaker = _build(fake_clock, failure_threshold=1, recovery_timeout=10.0)
    started = asyncio.Event()
    release = asyncio.Event()

    async def _slow_fail() -> None:
        started.set()
        await release.wait()
        raise _server_error()

    slow = asyncio.create_task(breaker.call(_slow_fail))
    await started.wait()
    breaker.record_failure(_server_error())
    fake_clock.advance(10.0)

    async def _ok() -> str:
        return "ok"

    assert await breaker.call(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED

    release.set()
    with pytest.raises(ServerError):
        await slow

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


async def test_success_in_closed_resets_count(fake_clock: FakeClock) -> None:
    breaker = _build(fake_clock)
    for _ in range(3):
        breaker.record_failure(_server_error())
    assert breaker.failure_count == 3

    breaker.record_success()

    assert breaker.failure_count == 0
    assert breaker.snapshot().last_failure_at is None


async def test_stale_failures_restart_counting(fake_clock: FakeClock) -> None:
    breaker = _build(fake_clock, failure_threshold=3, monitoring_period=300.0)
    breaker.record_failure(_server_error())
    breaker.record_failure(_server_error())

    fake_clock.advance(301.0)
    breaker.record_failure(_server_error())

    assert breaker.failure_count == 1
    assert breaker.state == CircuitState.CLOSED


async def test_reset_cancels_timer_and_closes(fake_clock: FakeClock) -> None:
    breaker = _build(fake_clock, failure_threshold=1)
    breaker.record_failure(_server_error())
    assert fake_clock.pending()

    breaker.reset()

    assert breaker.state == CircuitState.CLOSED
    assert fake_clock.pending() == []
    assert breaker.snapshot().next_attempt_at is None


async def test_registry_reuses_breakers_per_dependency(fake_clock: FakeClock) -> None:
    registry = BreakerRegistry(
        config=CircuitBreakerConfig(failure_threshold=1),
        clock=fake_clock,
        logger=FakeLogger(),
    )
    api = registry.get("api")
    assert registry.get("api") is api
    reports = registry.get("reports")

    api.record_failure(_server_error())
    assert [snapshot.state for snapshot in registry.snapshots()] == [
        CircuitState.OPEN,
        CircuitState.CLOSED,
    ]
    assert reports.state == CircuitState.CLOSED

    registry.close()
    assert fake_clock.pending() == []
    registry.reset_all()
    assert api.state == CircuitState.CLOSED
