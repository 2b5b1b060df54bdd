"""Online/offline signal with an optional link-quality hint."""

from __future__ import annotations

from collections.abc import Callable

import structlog

from fintrack_resilience.events import ConnectivityChanged, EventBus
from fintrack_resilience.logging import StructuredLogger, log_exception, log_info

SLOW_EFFECTIVE_TYPES = frozenset({"slow-2g", "2g"})


class ConnectivityMonitor:
    """Track connectivity and notify on absent-to-present transitions."""

    def __init__(
        self,
        *,
        online: bool = True,
        events: EventBus | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._online = online
        self._effective_type: str | None = None
        self._events = events
        self._logger = structlog.get_logger(__name__) if logger is None else logger
        self._restored_callbacks: list[Callable[[], None]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def effective_type(self) -> str | None:
        return self._effective_type

    @property
    def is_slow(self) -> bool:
        return self._online and self._effective_type in SLOW_EFFECTIVE_TYPES

    def on_restored(self, callback: Callable[[], None]) -> None:
        """Register ``callback`` for every offline-to-online transition."""
        self._restored_callbacks.append(callback)

    def update(self, online: bool, *, effective_type: str | None = None) -> None:
        """Apply a new connectivity reading."""
        was_online = self._online
        was_slow = self.is_slow
        self._online = online
        if effective_type is not None:
            self._effective_type = effective_type.strip().lower() or None

        if was_online == online and was_slow == self.is_slow:
            return

        log_info(
            self._logger,
            "connectivity_changed",
            online=online,
            slow=self.is_slow,
            effective_type=self._effective_type,
        )
        if self._events is not None:
            self._events.publish(ConnectivityChanged(online=online, slow=self.is_slow))

        if online and not was_online:
            for callback in tuple(self._restored_callbacks):
                try:
                    callback()
                except Exception:
                    log_exception(self._logger, "connectivity_restored_callback_failed")
