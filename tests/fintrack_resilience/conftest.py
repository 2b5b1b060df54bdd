from __future__ import annotations

import pytest

from fintrack_resilience.events import EventBus
from fintrack_resilience.storage import InMemoryStore
from tests.fintrack_resilience.support.fakes import FakeClock, FakeLogger, FakeTransport


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a manually advanced clock per test."""
    return FakeClock()


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Provide a scripted send primitive per test."""
    return FakeTransport()


@pytest.fixture
def event_bus(fake_logger: FakeLogger) -> EventBus:
    return EventBus(logger=fake_logger)


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()
