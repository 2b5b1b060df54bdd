"""Resilient call wrapper composing breaker, token refresh, retry and queue."""

from __future__ import annotations

import asyncio
import json as jsonlib
import random
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from tenacity import RetryCallState

from fintrack_resilience.auth import TokenRefreshManager
from fintrack_resilience.circuit_breaker import BreakerRegistry, CircuitBreaker
from fintrack_resilience.clock import AsyncioClock, Clock
from fintrack_resilience.connectivity import ConnectivityMonitor
from fintrack_resilience.errors import (
    OfflineError,
    ResilienceError,
    Unauthorized,
    is_connectivity_related,
)
from fintrack_resilience.logging import StructuredLogger, log_info, log_warning
from fintrack_resilience.offline_queue import (
    OfflineRequestQueue,
    Priority,
    QueuedRequest,
)
from fintrack_resilience.retry import RetryPolicy, Rng, build_call_retrying
from fintrack_resilience.transport import OutboundRequest, Transport, raise_for_status

DEFAULT_DEPENDENCY = "api"
CORRELATION_ID_HEADER = "X-Correlation-ID"


@dataclass(frozen=True)
class QueuedCall:
    """Returned instead of a response when a call was captured for replay."""

    request_id: str
    outcome: asyncio.Future[httpx.Response]

    async def wait(self) -> httpx.Response:
        """Wait for the replay result (or its terminal error)."""
        return await self.outcome


class ResilientClient:
    """Issue API calls through the resilience pipeline.

    Each attempt passes breaker admission, gets a fresh bearer token and is
    classified at the transport boundary. Retryable failures back off on the
    clock; queueable calls that still fail for connectivity reasons are
    captured in the offline queue.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        breakers: BreakerRegistry,
        connectivity: ConnectivityMonitor,
        tokens: TokenRefreshManager | None = None,
        queue: OfflineRequestQueue | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        logger: StructuredLogger | None = None,
        rng: Rng = random.random,
    ) -> None:
        self._transport = transport
        self._breakers = breakers
        self._connectivity = connectivity
        self._tokens = tokens
        self._queue = queue
        self._clock: Clock = AsyncioClock() if clock is None else clock
        self._retry_policy = RetryPolicy() if retry_policy is None else retry_policy
        self._logger = structlog.get_logger(__name__) if logger is None else logger
        self._rng = rng
        if queue is not None:
            queue.bind_replay(self.replay)

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        content: bytes | None = None,
        headers: Mapping[str, str] | None = None,
        queueable: bool = False,
        priority: Priority | str = Priority.NORMAL,
        max_retries: int | None = None,
        dependency: str = DEFAULT_DEPENDENCY,
    ) -> httpx.Response | QueuedCall:
        """Send one API call.

        Args:
            method: HTTP method.
            url: Absolute URL or path relative to the HTTP client's base URL.
            json: JSON-serializable body. Mutually exclusive with ``content``.
            content: Raw body bytes.
            headers: Extra request headers.
            queueable: Capture the call in the offline queue instead of raising
                when it fails for connectivity reasons.
            priority: Queue priority when captured.
            max_retries: Replay retry budget when captured.
            dependency: Circuit breaker name guarding the call.

        Returns:
            The successful response, or a :class:`QueuedCall` when captured.

        Raises:
            CircuitOpenError: The dependency's circuit is open.
            OfflineError: Connectivity is absent and the call is not queueable.
            RefreshExhaustedError: The session expired and could not be renewed.
            HTTPStatusError: Any non-absorbed HTTP failure.
            TransportError: A non-absorbed network failure or timeout.
        """
        if json is not None and content is not None:
            raise ValueError("json and content are mutually exclusive")
        request_headers = dict(headers or {})
        body = content
        if json is not None:
            body = jsonlib.dumps(json).encode()
            request_headers.setdefault("Content-Type", "application/json")
        request = OutboundRequest(
            method=method.upper(),
            url=url,
            headers=request_headers,
            body=body,
        )
        can_queue = queueable and self._queue is not None

        if not self._connectivity.is_online:
            if can_queue:
                return await self._enqueue(request, priority, max_retries, "offline")
            raise OfflineError(method=request.method, url=request.url)

        try:
            return await self._execute(request, dependency=dependency)
        except ResilienceError as exc:
            if can_queue and is_connectivity_related(exc):
                return await self._enqueue(
                    request, priority, max_retries, type(exc).__name__
                )
            raise

    async def get(self, url: str, **kwargs: Any) -> httpx.Response | QueuedCall:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response | QueuedCall:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response | QueuedCall:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response | QueuedCall:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response | QueuedCall:
        return await self.request("DELETE", url, **kwargs)

    async def replay(self, entry: QueuedRequest) -> httpx.Response:
        """Resend a queued entry without ever re-enqueueing it."""
        request = OutboundRequest(
            method=entry.method,
            url=entry.url,
            headers=dict(entry.headers),
            body=entry.body,
        )
        if not self._connectivity.is_online:
            raise OfflineError(method=request.method, url=request.url)
        return await self._execute(request, dependency=DEFAULT_DEPENDENCY)

    async def _execute(
        self,
        request: OutboundRequest,
        *,
        dependency: str,
    ) -> httpx.Response:
        breaker = self._breakers.get(dependency)
        if not _has_header(request.headers, CORRELATION_ID_HEADER):
            request = request.with_headers({CORRELATION_ID_HEADER: str(uuid.uuid4())})

        retrying = build_call_retrying(
            policy=self._retry_policy,
            sleep=self._clock.sleep,
            before_sleep=self._log_retry,
            rng=self._rng,
        )
        start = self._clock.monotonic()
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1 and not self._connectivity.is_online:
                        raise OfflineError(method=request.method, url=request.url)
                    response = await self._send_authorized(request, breaker)
        except ResilienceError as exc:
            log_warning(
                self._logger,
                "http_request_failed",
                method=request.method,
                url=request.url,
                attempts=attempts,
                error_type=type(exc).__name__,
                error_kind=exc.kind,
                elapsed=max(self._clock.monotonic() - start, 0.0),
            )
            raise

        log_info(
            self._logger,
            "http_request_completed",
            method=request.method,
            url=request.url,
            status_code=response.status_code,
            attempts=attempts,
            elapsed=max(self._clock.monotonic() - start, 0.0),
        )
        return response

    async def _send_authorized(
        self,
        request: OutboundRequest,
        breaker: CircuitBreaker,
    ) -> httpx.Response:
        try:
            return await breaker.call(self._send_once, request)
        except Unauthorized:
            tokens = self._tokens
            if tokens is None or not tokens.is_authenticated:
                raise
            log_info(
                self._logger,
                "http_request_unauthorized_refreshing",
                method=request.method,
                url=request.url,
            )
            await tokens.refresh()

        try:
            return await breaker.call(self._send_once, request)
        except Unauthorized:
            await tokens.force_logout("unauthorized")
            raise

    async def _send_once(self, request: OutboundRequest) -> httpx.Response:
        if self._tokens is not None:
            token = await self._tokens.ensure_fresh()
            if token is not None:
                request = request.with_headers({"Authorization": f"Bearer {token}"})
        response = await self._transport.send(request)
        return raise_for_status(response, now=self._clock.now())

    async def _enqueue(
        self,
        request: OutboundRequest,
        priority: Priority | str,
        max_retries: int | None,
        reason: str,
    ) -> QueuedCall:
        queue = self._queue
        if queue is None:
            raise RuntimeError("no offline queue configured")
        request_id = await queue.enqueue(
            request.method,
            request.url,
            body=request.body,
            headers={
                name: value
                for name, value in request.headers.items()
                if name.lower() != CORRELATION_ID_HEADER.lower()
            },
            priority=priority,
            max_retries=max_retries,
        )
        log_info(
            self._logger,
            "http_request_queued",
            request_id=request_id,
            method=request.method,
            url=request.url,
            reason=reason,
        )
        return QueuedCall(request_id=request_id, outcome=queue.outcome(request_id))

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = None
        if retry_state.outcome is not None and retry_state.outcome.failed:
            error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        log_warning(
            self._logger,
            "http_request_retry_scheduled",
            attempt=retry_state.attempt_number,
            max_retries=self._retry_policy.max_retries,
            delay=delay,
            error_type=type(error).__name__ if error is not None else None,
        )


def _has_header(headers: Mapping[str, str], name: str) -> bool:
    wanted = name.lower()
    return any(key.lower() == wanted for key in headers)
