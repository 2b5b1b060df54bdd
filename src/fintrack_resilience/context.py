"""Session-scoped owner of every resilience component."""

from __future__ import annotations

import asyncio
import random
from contextlib import suppress
from types import TracebackType
from typing import Any

import httpx
import structlog

from fintrack_resilience.auth import TokenRefreshManager
from fintrack_resilience.circuit_breaker import BreakerRegistry
from fintrack_resilience.client import ResilientClient
from fintrack_resilience.clock import AsyncioClock, Clock
from fintrack_resilience.connectivity import ConnectivityMonitor
from fintrack_resilience.events import EventBus
from fintrack_resilience.logging import (
    StructuredLogger,
    configure_structlog,
    log_error,
    log_info,
)
from fintrack_resilience.offline_queue import DrainSummary, OfflineRequestQueue
from fintrack_resilience.retry import Rng
from fintrack_resilience.settings import ResilienceSettings
from fintrack_resilience.storage import AbstractDurableStore, FileStore, InMemoryStore
from fintrack_resilience.transport import HttpxTransport, Transport


class ResilienceContext:
    """Build, start and tear down the resilience layer for one session.

    Use as ``async with ResilienceContext(settings) as ctx:``; the context
    loads persisted tokens and queue entries on entry and drains the queue
    whenever connectivity comes back.
    """

    def __init__(
        self,
        settings: ResilienceSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        transport: Transport | None = None,
        store: AbstractDurableStore | None = None,
        clock: Clock | None = None,
        connectivity: ConnectivityMonitor | None = None,
        events: EventBus | None = None,
        logger: StructuredLogger | None = None,
        rng: Rng = random.random,
        configure_logging: bool = False,
    ) -> None:
        self.settings = ResilienceSettings() if settings is None else settings
        if configure_logging:
            configure_structlog(log_level=self.settings.log_level)
        self._logger = structlog.get_logger(__name__) if logger is None else logger
        self.clock: Clock = AsyncioClock() if clock is None else clock
        self.events = EventBus(logger=self._logger) if events is None else events
        self.store = self._build_store(store)

        self._owned_http_client: httpx.AsyncClient | None = None
        if transport is None:
            if http_client is None:
                http_client = httpx.AsyncClient(
                    base_url=self.settings.api_base_url,
                    timeout=self.settings.request_timeout,
                )
                self._owned_http_client = http_client
            transport = HttpxTransport(http_client)
        self.transport = transport

        self.connectivity = (
            ConnectivityMonitor(events=self.events, logger=self._logger)
            if connectivity is None
            else connectivity
        )
        self.breakers = BreakerRegistry(
            config=self.settings.breaker_config(),
            clock=self.clock,
            events=self.events,
            logger=self._logger,
        )
        self.queue = OfflineRequestQueue(
            store=self.store,
            connectivity=self.connectivity,
            clock=self.clock,
            events=self.events,
            logger=self._logger,
            capacity=self.settings.queue_capacity,
            inter_request_delay=self.settings.inter_request_delay,
            default_max_retries=self.settings.queue_max_retries,
        )
        self.tokens = TokenRefreshManager(
            transport=self.transport,
            refresh_url=self.settings.refresh_url,
            store=self.store,
            clock=self.clock,
            events=self.events,
            logger=self._logger,
            refresh_threshold=self.settings.refresh_threshold,
            warning_threshold=self.settings.warning_threshold,
            max_attempts=self.settings.refresh_max_attempts,
            on_session_cleared=self._clear_session_state,
        )
        self.client = ResilientClient(
            transport=self.transport,
            breakers=self.breakers,
            connectivity=self.connectivity,
            tokens=self.tokens,
            queue=self.queue,
            clock=self.clock,
            retry_policy=self.settings.retry_policy(),
            logger=self._logger,
            rng=rng,
        )

        self._background: set[asyncio.Task[Any]] = set()
        self._started = False
        self._closed = False

    def _build_store(self, store: AbstractDurableStore | None) -> AbstractDurableStore:
        if store is not None:
            return store
        if self.settings.store_path:
            return FileStore(self.settings.store_path)
        return InMemoryStore()

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Restore persisted state and begin reacting to connectivity."""
        if self._started:
            return
        if self._closed:
            raise RuntimeError("resilience context is closed")
        await self.tokens.load()
        pending = await self.queue.load()
        self.connectivity.on_restored(self._on_connectivity_restored)
        self._started = True
        log_info(
            self._logger,
            "resilience_context_started",
            authenticated=self.tokens.is_authenticated,
            queued=pending,
        )
        if pending and self.connectivity.is_online:
            self._schedule_drain()

    async def drain(self) -> DrainSummary | None:
        return await self.queue.drain()

    async def logout(self) -> None:
        """Forget the session: tokens, queued requests and breaker state."""
        await self.tokens.logout()
        await self._clear_session_state()

    async def close(self) -> None:
        """Stop timers and background work, end event subscriptions and release
        owned resources."""
        if self._closed:
            return
        self._closed = True
        tasks = tuple(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError, Exception):
                await task
        await self.tokens.close()
        self.breakers.close()
        self.events.close()
        if self._owned_http_client is not None:
            await self._owned_http_client.aclose()
        log_info(self._logger, "resilience_context_closed")

    async def __aenter__(self) -> ResilienceContext:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()

    async def _clear_session_state(self) -> None:
        await self.queue.clear()
        self.breakers.reset_all()

    def _on_connectivity_restored(self) -> None:
        if self._started and not self._closed:
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        task = asyncio.create_task(self.queue.drain(), name="offline-queue-drain")
        self._background.add(task)
        task.add_done_callback(self._on_drain_done)

    def _on_drain_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log_error(
                self._logger,
                "offline_queue_drain_failed",
                error_type=type(error).__name__,
                error=str(error),
            )
