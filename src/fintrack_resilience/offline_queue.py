"""Durable queue of requests captured while the backend was unreachable.

Entries are replayed sequentially, highest priority first, once
connectivity returns. The queue never schedules work on its own; drains are
triggered by the owner (for example on a connectivity-restored signal).
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from fintrack_resilience.circuit_breaker import CircuitOpenError
from fintrack_resilience.clock import AsyncioClock, Clock
from fintrack_resilience.connectivity import ConnectivityMonitor
from fintrack_resilience.errors import (
    OfflineError,
    QueueDiscardedError,
    QueueEvictedError,
    ResilienceError,
)
from fintrack_resilience.events import (
    EventBus,
    QueuedRequestFailed,
    QueuedRequestReplayed,
    QueuedRequestRetryScheduled,
    QueueSyncSummary,
    RequestEvicted,
    RequestQueued,
)
from fintrack_resilience.logging import (
    StructuredLogger,
    log_error,
    log_info,
    log_warning,
)
from fintrack_resilience.storage import AbstractDurableStore

QUEUE_STORE_KEY = "offline_request_queue"
DEFAULT_CAPACITY = 100
DEFAULT_INTER_REQUEST_DELAY = 2.0
DEFAULT_MAX_RETRIES = 3

_STRIPPED_HEADERS = frozenset({"authorization"})


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.NORMAL: 1, Priority.HIGH: 2}


class QueuedRequest(BaseModel):
    """One captured request awaiting replay."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    id: str
    method: str
    url: str
    body: bytes | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    enqueued_at: datetime
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    priority: Priority = Priority.NORMAL

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


_ENTRIES_ADAPTER = TypeAdapter(list[QueuedRequest])

ReplayFunc = Callable[[QueuedRequest], Awaitable[httpx.Response]]


@dataclass(frozen=True, slots=True)
class DrainSummary:
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    remaining: int = 0
    interrupted: bool = False


@dataclass(frozen=True, slots=True)
class QueueStatus:
    pending: int
    failed: int
    total: int
    is_draining: bool
    last_sync_at: datetime | None


class OfflineRequestQueue:
    """Capacity-bounded, persisted request queue with ordered replay."""

    def __init__(
        self,
        *,
        store: AbstractDurableStore,
        connectivity: ConnectivityMonitor,
        replay: ReplayFunc | None = None,
        clock: Clock | None = None,
        events: EventBus | None = None,
        logger: StructuredLogger | None = None,
        capacity: int = DEFAULT_CAPACITY,
        inter_request_delay: float = DEFAULT_INTER_REQUEST_DELAY,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        store_key: str = QUEUE_STORE_KEY,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if inter_request_delay < 0:
            raise ValueError("inter_request_delay must be >= 0")
        if default_max_retries < 0:
            raise ValueError("default_max_retries must be >= 0")
        self._store = store
        self._connectivity = connectivity
        self._replay = replay
        self._clock: Clock = AsyncioClock() if clock is None else clock
        self._events = events
        self._logger = structlog.get_logger(__name__) if logger is None else logger
        self._capacity = capacity
        self._inter_request_delay = inter_request_delay
        self._default_max_retries = default_max_retries
        self._store_key = store_key

        self._entries: dict[str, QueuedRequest] = {}
        self._outcomes: dict[str, asyncio.Future[httpx.Response]] = {}
        self._drain_lock = asyncio.Lock()
        self._last_sync_at: datetime | None = None

    def bind_replay(self, replay: ReplayFunc) -> None:
        """Set the coroutine used to resend entries during a drain."""
        self._replay = replay

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[QueuedRequest]:
        """Return entries in replay order."""
        return sorted(
            self._entries.values(),
            key=lambda entry: (-entry.priority.rank, entry.enqueued_at),
        )

    def status(self) -> QueueStatus:
        failed = sum(1 for entry in self._entries.values() if entry.exhausted)
        total = len(self._entries)
        return QueueStatus(
            pending=total - failed,
            failed=failed,
            total=total,
            is_draining=self.is_draining,
            last_sync_at=self._last_sync_at,
        )

    async def load(self) -> int:
        """Restore persisted entries. Returns how many were loaded."""
        raw = await self._store.get(self._store_key)
        if raw is None:
            return 0
        try:
            entries = _ENTRIES_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            log_error(
                self._logger,
                "offline_queue_load_failed",
                key=self._store_key,
                error_count=exc.error_count(),
            )
            await self._store.delete(self._store_key)
            return 0
        self._entries = {entry.id: entry for entry in entries}
        log_info(self._logger, "offline_queue_loaded", count=len(self._entries))
        return len(self._entries)

    async def enqueue(
        self,
        method: str,
        url: str,
        *,
        body: bytes | None = None,
        headers: Mapping[str, str] | None = None,
        priority: Priority | str = Priority.NORMAL,
        max_retries: int | None = None,
    ) -> str:
        """Capture a request for later replay and return its id."""
        if len(self._entries) >= self._capacity:
            self._evict_one()

        entry = QueuedRequest(
            id=str(uuid.uuid4()),
            method=method.upper(),
            url=url,
            body=body,
            headers={
                name: value
                for name, value in (headers or {}).items()
                if name.lower() not in _STRIPPED_HEADERS
            },
            enqueued_at=self._clock.now(),
            max_retries=(
                self._default_max_retries if max_retries is None else max_retries
            ),
            priority=Priority(priority),
        )
        self._entries[entry.id] = entry
        await self._persist()

        log_info(
            self._logger,
            "request_queued",
            request_id=entry.id,
            method=entry.method,
            url=entry.url,
            priority=entry.priority,
            queue_length=len(self._entries),
        )
        if self._events is not None:
            self._events.publish(
                RequestQueued(
                    request_id=entry.id,
                    method=entry.method,
                    url=entry.url,
                    priority=entry.priority,
                    queue_length=len(self._entries),
                )
            )
        return entry.id

    async def remove_by_id(self, request_id: str) -> bool:
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return False
        await self._persist()
        future = self._outcomes.pop(request_id, None)
        if future is not None and not future.done():
            future.set_exception(QueueDiscardedError(request_id, "removed"))
        return True

    async def clear(self) -> None:
        """Drop every entry and the persisted record."""
        self._entries.clear()
        await self._store.delete(self._store_key)
        outcomes, self._outcomes = self._outcomes, {}
        for request_id, future in outcomes.items():
            if not future.done():
                future.set_exception(QueueDiscardedError(request_id, "cleared"))
        log_info(self._logger, "offline_queue_cleared")

    def outcome(self, request_id: str) -> asyncio.Future[httpx.Response]:
        """Return the future resolved with the entry's replay result.

        Raises:
            KeyError: When no entry with ``request_id`` is queued.
        """
        future = self._outcomes.get(request_id)
        if future is not None:
            return future
        if request_id not in self._entries:
            raise KeyError(request_id)
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve_outcome)
        self._outcomes[request_id] = future
        return future

    async def drain(self) -> DrainSummary | None:
        """Replay queued entries in order.

        Returns None without doing anything when offline or when another
        drain is already running.
        """
        if not self._connectivity.is_online or self._drain_lock.locked():
            return None
        if self._replay is None:
            raise RuntimeError("offline queue has no replay function bound")
        async with self._drain_lock:
            return await self._drain(self._replay)

    async def retry_failed(self) -> DrainSummary | None:
        """Give exhausted entries a fresh retry budget and drain.

        Does nothing and returns None when offline or while a drain is running.
        """
        if not self._connectivity.is_online or self.is_draining:
            return None
        reset = 0
        for entry in self._entries.values():
            if entry.exhausted:
                entry.retry_count = 0
                reset += 1
        if reset:
            await self._persist()
            log_info(self._logger, "offline_queue_retry_failed", count=reset)
        return await self.drain()

    async def _drain(self, replay: ReplayFunc) -> DrainSummary:
        succeeded = failed = retried = 0
        interrupted = False
        log_info(self._logger, "offline_queue_drain_started", count=len(self._entries))

        for entry in self.entries():
            if not self._connectivity.is_online:
                interrupted = True
                break
            if entry.id not in self._entries:
                continue

            try:
                response = await replay(entry)
            except (CircuitOpenError, OfflineError) as exc:
                log_warning(
                    self._logger,
                    "offline_queue_drain_interrupted",
                    request_id=entry.id,
                    error_type=type(exc).__name__,
                )
                interrupted = True
                break
            except ResilienceError as exc:
                if entry.retry_count < entry.max_retries:
                    entry.retry_count += 1
                    await self._persist()
                    retried += 1
                    log_warning(
                        self._logger,
                        "queued_request_retry_scheduled",
                        request_id=entry.id,
                        retry_count=entry.retry_count,
                        max_retries=entry.max_retries,
                        error_type=type(exc).__name__,
                    )
                    if self._events is not None:
                        self._events.publish(
                            QueuedRequestRetryScheduled(
                                request_id=entry.id,
                                retry_count=entry.retry_count,
                                max_retries=entry.max_retries,
                            )
                        )
                    await self._clock.sleep(self._inter_request_delay)
                else:
                    await self._settle_failure(entry, exc)
                    failed += 1
            else:
                self._entries.pop(entry.id, None)
                await self._persist()
                succeeded += 1
                log_info(
                    self._logger,
                    "queued_request_replayed",
                    request_id=entry.id,
                    status_code=response.status_code,
                )
                if self._events is not None:
                    self._events.publish(
                        QueuedRequestReplayed(
                            request_id=entry.id,
                            status_code=response.status_code,
                        )
                    )
                future = self._outcomes.pop(entry.id, None)
                if future is not None and not future.done():
                    future.set_result(response)

        summary = DrainSummary(
            succeeded=succeeded,
            failed=failed,
            retried=retried,
            remaining=len(self._entries),
            interrupted=interrupted,
        )
        if succeeded or failed:
            self._last_sync_at = self._clock.now()
            if self._events is not None:
                self._events.publish(
                    QueueSyncSummary(
                        succeeded=succeeded,
                        failed=failed,
                        retried=retried,
                        remaining=summary.remaining,
                    )
                )
        log_info(
            self._logger,
            "offline_queue_drain_finished",
            succeeded=succeeded,
            failed=failed,
            retried=retried,
            remaining=summary.remaining,
            interrupted=interrupted,
        )
        return summary

    async def _settle_failure(self, entry: QueuedRequest, error: Exception) -> None:
        self._entries.pop(entry.id, None)
        await self._persist()
        log_error(
            self._logger,
            "queued_request_failed",
            request_id=entry.id,
            method=entry.method,
            url=entry.url,
            retry_count=entry.retry_count,
            error_type=type(error).__name__,
        )
        if self._events is not None:
            self._events.publish(
                QueuedRequestFailed(
                    request_id=entry.id,
                    method=entry.method,
                    url=entry.url,
                    error=str(error),
                )
            )
        future = self._outcomes.pop(entry.id, None)
        if future is not None and not future.done():
            future.set_exception(error)

    def _evict_one(self) -> None:
        candidates = [
            entry for entry in self._entries.values() if entry.priority == Priority.LOW
        ] or list(self._entries.values())
        # min() keeps the first of equal timestamps, i.e. insertion order.
        victim = min(candidates, key=lambda entry: entry.enqueued_at)
        del self._entries[victim.id]

        log_warning(
            self._logger,
            "queued_request_evicted",
            request_id=victim.id,
            priority=victim.priority,
            capacity=self._capacity,
        )
        if self._events is not None:
            self._events.publish(
                RequestEvicted(request_id=victim.id, priority=victim.priority)
            )
        future = self._outcomes.pop(victim.id, None)
        if future is not None and not future.done():
            future.set_exception(QueueEvictedError(victim.id))

    async def _persist(self) -> None:
        if not self._entries:
            await self._store.delete(self._store_key)
            return
        payload = _ENTRIES_ADAPTER.dump_json(list(self._entries.values()))
        await self._store.set(self._store_key, payload)


def _retrieve_outcome(future: asyncio.Future[httpx.Response]) -> None:
    if not future.cancelled():
        future.exception()
