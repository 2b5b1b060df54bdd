"""Out-of-band notifications published by the resilience layer.

Components publish immutable event records on an :class:`EventBus`. UI or
log collaborators either register a synchronous listener or consume a
subscription channel as an async iterator.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from fintrack_resilience.logging import StructuredLogger, log_exception

if TYPE_CHECKING:
    from fintrack_resilience.circuit_breaker.state import CircuitState

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BreakerStateChanged:
    name: str
    old: CircuitState
    new: CircuitState
    retry_after: float | None = None


@dataclass(frozen=True)
class ConnectivityChanged:
    online: bool
    slow: bool = False


@dataclass(frozen=True)
class RequestQueued:
    request_id: str
    method: str
    url: str
    priority: str
    queue_length: int


@dataclass(frozen=True)
class RequestEvicted:
    request_id: str
    priority: str


@dataclass(frozen=True)
class QueuedRequestReplayed:
    request_id: str
    status_code: int


@dataclass(frozen=True)
class QueuedRequestRetryScheduled:
    request_id: str
    retry_count: int
    max_retries: int


@dataclass(frozen=True)
class QueuedRequestFailed:
    request_id: str
    method: str
    url: str
    error: str


@dataclass(frozen=True)
class QueueSyncSummary:
    """Totals for one drain pass."""

    succeeded: int
    failed: int
    retried: int
    remaining: int


@dataclass(frozen=True)
class SessionRefreshed:
    expires_at: datetime


@dataclass(frozen=True)
class SessionRefreshRetryScheduled:
    attempt: int
    max_attempts: int
    delay: float


@dataclass(frozen=True)
class SessionExpiryWarning:
    """Session expires soon; ``extend`` refreshes it on demand."""

    expires_at: datetime
    seconds_remaining: float
    extend: Callable[[], Awaitable[object]] = field(compare=False, repr=False)


@dataclass(frozen=True)
class ForcedLogout:
    reason: str


ResilienceEvent = (
    BreakerStateChanged
    | ConnectivityChanged
    | RequestQueued
    | RequestEvicted
    | QueuedRequestReplayed
    | QueuedRequestRetryScheduled
    | QueuedRequestFailed
    | QueueSyncSummary
    | SessionRefreshed
    | SessionRefreshRetryScheduled
    | SessionExpiryWarning
    | ForcedLogout
)

EventListener = Callable[[ResilienceEvent], None]


class _EndOfStream:
    """Queued by ``EventSubscription.close`` to wake a blocked consumer."""


_END_OF_STREAM = _EndOfStream()


class EventSubscription:
    """One subscriber channel; iterate it to receive events in order.

    Iteration ends once the subscription (or its bus) is closed and every
    event delivered before that has been consumed.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[ResilienceEvent | _EndOfStream] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: ResilienceEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def pending(self) -> list[ResilienceEvent]:
        """Drain and return events already delivered, without waiting."""
        events: list[ResilienceEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if isinstance(item, _EndOfStream):
                self._queue.put_nowait(item)
                break
            events.append(item)
        return events

    async def get(self) -> ResilienceEvent:
        """Wait for the next event.

        Raises:
            RuntimeError: When the subscription is closed and drained.
        """
        item = await self._queue.get()
        if isinstance(item, _EndOfStream):
            self._queue.put_nowait(item)
            raise RuntimeError("event subscription is closed")
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_END_OF_STREAM)
        self._bus._unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[ResilienceEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ResilienceEvent]:
        while True:
            item = await self._queue.get()
            if isinstance(item, _EndOfStream):
                self._queue.put_nowait(item)
                return
            yield item


class EventBus:
    """Fan-out publisher for resilience events."""

    def __init__(self, *, logger: StructuredLogger | None = None) -> None:
        self._logger = _logger if logger is None else logger
        self._subscriptions: list[EventSubscription] = []
        self._listeners: list[EventListener] = []

    def subscribe(self) -> EventSubscription:
        subscription = EventSubscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def close(self) -> None:
        """Close every open subscription, ending their iteration."""
        for subscription in tuple(self._subscriptions):
            subscription.close()

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: ResilienceEvent) -> None:
        """Deliver ``event`` to every subscriber and listener.

        Listener failures are logged and never propagate to the publisher.
        """
        for subscription in tuple(self._subscriptions):
            subscription._deliver(event)
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception:
                log_exception(
                    self._logger,
                    "event_listener_failed",
                    event_type=type(event).__name__,
                )
