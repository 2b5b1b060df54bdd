"""Token refresh manager with proactive renewal and single-flight refresh."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Coroutine
from contextlib import suppress
from typing import Any

import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fintrack_resilience.auth.tokens import AuthTokens, RefreshResponse
from fintrack_resilience.clock import AsyncioClock, Clock, TimerHandle
from fintrack_resilience.errors import ErrorKind, RefreshExhaustedError, ResilienceError
from fintrack_resilience.events import (
    EventBus,
    ForcedLogout,
    SessionExpiryWarning,
    SessionRefreshed,
    SessionRefreshRetryScheduled,
)
from fintrack_resilience.logging import (
    StructuredLogger,
    log_error,
    log_info,
    log_warning,
)
from fintrack_resilience.storage import AbstractDurableStore
from fintrack_resilience.transport import OutboundRequest, Transport, raise_for_status

TOKENS_STORE_KEY = "auth_tokens"


class InvalidRefreshResponse(ResilienceError):
    """Raised when the refresh endpoint answers with an unusable body."""

    kind = ErrorKind.CLIENT


class TokenRefreshManager:
    """Own the session credential and keep it valid.

    The manager is ``Refreshing`` while a refresh task exists; every caller
    asking for a refresh during that time awaits the same task, so at most one
    request to the refresh endpoint is in flight.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        refresh_url: str,
        store: AbstractDurableStore,
        clock: Clock | None = None,
        events: EventBus | None = None,
        logger: StructuredLogger | None = None,
        refresh_threshold: float = 300.0,
        warning_threshold: float = 600.0,
        max_attempts: int = 3,
        store_key: str = TOKENS_STORE_KEY,
        on_session_cleared: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Create a refresh manager.

        Args:
            transport: Raw send primitive used for the refresh endpoint.
            refresh_url: Absolute or client-relative refresh endpoint URL.
            store: Durable store that keeps the token record across restarts.
            clock: Time source and timer facility.
            events: Bus receiving session events.
            logger: Structured logger.
            refresh_threshold: Seconds before expiry to refresh proactively.
            warning_threshold: Seconds before expiry to warn the user.
            max_attempts: Refresh attempts before forcing logout.
            store_key: Store key of the token record.
            on_session_cleared: Awaited after a forced logout cleared the
                credential, so owners can drop other session state.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._transport = transport
        self._refresh_url = refresh_url
        self._store = store
        self._clock: Clock = AsyncioClock() if clock is None else clock
        self._events = events
        self._logger = structlog.get_logger(__name__) if logger is None else logger
        self._refresh_threshold = refresh_threshold
        self._warning_threshold = warning_threshold
        self._max_attempts = max_attempts
        self._store_key = store_key
        self._on_session_cleared = on_session_cleared

        self._tokens: AuthTokens | None = None
        self._refresh_task: asyncio.Task[AuthTokens] | None = None
        self._retry_attempt = 0
        self._refresh_timer: TimerHandle | None = None
        self._warning_timer: TimerHandle | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def tokens(self) -> AuthTokens | None:
        return self._tokens

    @property
    def access_token(self) -> str | None:
        return None if self._tokens is None else self._tokens.access_token

    @property
    def is_authenticated(self) -> bool:
        return self._tokens is not None

    @property
    def is_refreshing(self) -> bool:
        task = self._refresh_task
        return task is not None and not task.done()

    @property
    def retry_attempt(self) -> int:
        return self._retry_attempt

    def time_until_expiry(self) -> float | None:
        if self._tokens is None:
            return None
        return max(self._tokens.seconds_until_expiry(self._clock.now()), 0.0)

    async def load(self) -> AuthTokens | None:
        """Restore the persisted credential, dropping expired or corrupt ones."""
        raw = await self._store.get(self._store_key)
        if raw is None:
            return None
        try:
            tokens = AuthTokens.model_validate_json(raw)
        except ValidationError:
            log_warning(self._logger, "auth_tokens_unreadable", key=self._store_key)
            await self._store.delete(self._store_key)
            return None
        if tokens.seconds_until_expiry(self._clock.now()) <= 0:
            log_info(self._logger, "auth_tokens_expired_on_load")
            await self._store.delete(self._store_key)
            return None
        self._install(tokens, refreshed=False)
        return tokens

    async def set_tokens(self, tokens: AuthTokens) -> None:
        """Install a credential obtained by logging in."""
        await self._persist(tokens)
        self._retry_attempt = 0
        self._install(tokens, refreshed=False)

    async def ensure_fresh(self) -> str | None:
        """Return a usable access token, refreshing first when it expires soon.

        Returns None when there is no session.
        """
        tokens = self._tokens
        if tokens is None:
            return None
        if self.is_refreshing or tokens.expires_within(
            self._refresh_threshold, self._clock.now()
        ):
            tokens = await self.refresh()
        return tokens.access_token

    async def refresh(self) -> AuthTokens:
        """Refresh the credential, joining an in-flight refresh if any.

        Raises:
            RefreshExhaustedError: When every attempt failed; the session has
                been cleared and ``ForcedLogout`` published.
        """
        task = self._refresh_task
        if task is None or task.done():
            if self._tokens is None:
                raise RefreshExhaustedError("No session to refresh.")
            task = asyncio.create_task(
                self._refresh_with_retry(),
                name="token-refresh",
            )
            task.add_done_callback(self._on_refresh_task_done)
            self._refresh_task = task
        return await asyncio.shield(task)

    async def force_logout(self, reason: str) -> None:
        """Clear the session because it can no longer be authenticated."""
        self._clear_session()
        await self._store.delete(self._store_key)
        log_warning(self._logger, "session_forced_logout", reason=reason)
        if self._events is not None:
            self._events.publish(ForcedLogout(reason=reason))
        if self._on_session_cleared is not None:
            await self._on_session_cleared()

    async def logout(self) -> None:
        """Clear the session on user request."""
        self._cancel_refresh_task()
        self._clear_session()
        await self._store.delete(self._store_key)
        log_info(self._logger, "session_logged_out")

    async def close(self) -> None:
        """Cancel timers and outstanding work without touching the store."""
        self._cancel_timers()
        self._cancel_refresh_task()
        tasks = tuple(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError, Exception):
                await task

    async def _refresh_with_retry(self) -> AuthTokens:
        self._retry_attempt = 0
        retrying = AsyncRetrying(
            retry=(
                retry_if_exception_type(ResilienceError)
                & retry_if_not_exception_type(RefreshExhaustedError)
            ),
            wait=wait_exponential(multiplier=2, exp_base=2),
            stop=stop_after_attempt(self._max_attempts),
            sleep=self._clock.sleep,
            before_sleep=self._before_refresh_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    tokens = self._tokens
                    if tokens is None:
                        raise RefreshExhaustedError("Session cleared during refresh.")
                    refreshed = await self._request_refresh(tokens)
                    break
        except RefreshExhaustedError:
            raise
        except ResilienceError as exc:
            self._retry_attempt = self._max_attempts
            log_error(
                self._logger,
                "token_refresh_exhausted",
                attempts=self._max_attempts,
                error_type=type(exc).__name__,
            )
            await self.force_logout("refresh_failed")
            raise RefreshExhaustedError(
                f"Token refresh failed after {self._max_attempts} attempts."
            ) from exc

        self._retry_attempt = 0
        await self._persist(refreshed)
        self._install(refreshed, refreshed=True)
        log_info(
            self._logger,
            "token_refreshed",
            expires_at=refreshed.expires_at.isoformat(),
        )
        if self._events is not None:
            self._events.publish(SessionRefreshed(expires_at=refreshed.expires_at))
        return refreshed

    def _before_refresh_retry(self, retry_state: RetryCallState) -> None:
        self._retry_attempt = retry_state.attempt_number
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        log_warning(
            self._logger,
            "token_refresh_retry_scheduled",
            attempt=retry_state.attempt_number,
            max_attempts=self._max_attempts,
            delay=delay,
        )
        if self._events is not None:
            self._events.publish(
                SessionRefreshRetryScheduled(
                    attempt=retry_state.attempt_number,
                    max_attempts=self._max_attempts,
                    delay=delay,
                )
            )

    async def _request_refresh(self, tokens: AuthTokens) -> AuthTokens:
        body = json.dumps({"refreshToken": tokens.refresh_token}).encode()
        request = OutboundRequest(
            method="POST",
            url=self._refresh_url,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            body=body,
        )
        response = raise_for_status(await self._transport.send(request))
        try:
            payload = RefreshResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise InvalidRefreshResponse(
                "Refresh response is not a valid token payload."
            ) from exc
        return payload.to_tokens(previous=tokens, now=self._clock.now())

    async def _persist(self, tokens: AuthTokens) -> None:
        await self._store.set(self._store_key, tokens.model_dump_json().encode())

    def _install(self, tokens: AuthTokens, *, refreshed: bool) -> None:
        self._tokens = tokens
        self._schedule_timers(refreshed=refreshed)

    def _clear_session(self) -> None:
        self._cancel_timers()
        self._tokens = None
        self._retry_attempt = 0

    def _schedule_timers(self, *, refreshed: bool) -> None:
        self._cancel_timers()
        tokens = self._tokens
        if tokens is None:
            return

        remaining = tokens.seconds_until_expiry(self._clock.now())
        refresh_in = remaining - self._refresh_threshold
        if refresh_in <= 0 and refreshed:
            # A fresh token inside the window would refresh in a tight loop.
            log_warning(
                self._logger,
                "token_lifetime_below_refresh_threshold",
                lifetime=remaining,
                refresh_threshold=self._refresh_threshold,
            )
            refresh_in = remaining / 2
        self._refresh_timer = self._clock.call_later(
            max(refresh_in, 0.0),
            self._on_refresh_due,
        )

        warning_in = remaining - self._warning_threshold
        if warning_in > 0:
            self._warning_timer = self._clock.call_later(
                warning_in,
                self._on_warning_due,
            )

    def _cancel_timers(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None
        if self._warning_timer is not None:
            self._warning_timer.cancel()
            self._warning_timer = None

    def _cancel_refresh_task(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        if task is not None and not task.done():
            task.cancel()

    def _on_refresh_due(self) -> None:
        self._refresh_timer = None
        if self._tokens is None:
            return
        self._spawn(self.refresh(), name="token-refresh-proactive")

    def _on_warning_due(self) -> None:
        self._warning_timer = None
        tokens = self._tokens
        if tokens is None:
            return
        remaining = max(tokens.seconds_until_expiry(self._clock.now()), 0.0)
        log_info(self._logger, "session_expiry_warning", seconds_remaining=remaining)
        if self._events is not None:
            self._events.publish(
                SessionExpiryWarning(
                    expires_at=tokens.expires_at,
                    seconds_remaining=remaining,
                    extend=self.refresh,
                )
            )

    def _spawn(self, coro: Coroutine[Any, Any, object], *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, RefreshExhaustedError):
            log_error(
                self._logger,
                "token_refresh_background_failed",
                error_type=type(error).__name__,
                error=str(error),
            )

    def _on_refresh_task_done(self, task: asyncio.Task[AuthTokens]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        with suppress(asyncio.CancelledError, Exception):
            task.exception()
