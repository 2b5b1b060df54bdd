from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import httpx

from fintrack_resilience.transport import OutboundRequest


class FakeLogger:
    """Capture structured logger events for assertions."""

    def __init__(self) -> None:
        self.events: list[str] = []
        self.calls: list[tuple[str, str, dict[str, object]]] = []

    def _record(self, level: str, event: str, **kwargs: object) -> None:
        self.calls.append((level, event, kwargs))

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append(event)
        self._record("info", event, **kwargs)

    def warning(self, event: str, **kwargs: object) -> None:
        self._record("warning", event, **kwargs)

    def error(self, event: str, **kwargs: object) -> None:
        self._record("error", event, **kwargs)

    def exception(self, event: str, **kwargs: object) -> None:
        self._record("exception", event, **kwargs)

    def names(self, level: str | None = None) -> list[str]:
        return [name for lvl, name, _ in self.calls if level is None or lvl == level]


@dataclass
class FakeTimer:
    due: float
    callback: Callable[[], None]
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock:
    """Manually advanced clock; timers fire synchronously inside ``advance``."""

    def __init__(self, start: datetime | None = None) -> None:
        self._start = datetime(2024, 1, 1, tzinfo=UTC) if start is None else start
        self._elapsed = 0.0
        self.timers: list[FakeTimer] = []
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return self._elapsed

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(due=self._elapsed + max(delay, 0.0), callback=callback)
        self.timers.append(timer)
        return timer

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.advance(delay)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        target = self._elapsed + seconds
        while True:
            due = [
                timer
                for timer in self.timers
                if not timer.cancelled and not timer.fired and timer.due <= target
            ]
            if not due:
                break
            timer = min(due, key=lambda item: item.due)
            self._elapsed = max(self._elapsed, timer.due)
            timer.fired = True
            timer.callback()
        self._elapsed = target

    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]


Outcome = httpx.Response | Exception


@dataclass
class FakeTransport:
    """Scripted send primitive.

    Outcomes are consumed per URL first, then from the default script. When
    both are empty a 200 response with an empty JSON object is returned.
    """

    requests: list[OutboundRequest] = field(default_factory=list)
    gate: asyncio.Event | None = None
    on_send: Callable[[OutboundRequest], None] | None = None
    _routes: dict[str, deque[Outcome]] = field(default_factory=dict)
    _default: deque[Outcome] = field(default_factory=deque)

    def script(self, *outcomes: Outcome, url: str | None = None) -> None:
        if url is None:
            self._default.extend(outcomes)
        else:
            self._routes.setdefault(url, deque()).extend(outcomes)

    def requests_for(self, url: str) -> list[OutboundRequest]:
        return [request for request in self.requests if request.url == url]

    async def send(self, request: OutboundRequest) -> httpx.Response:
        self.requests.append(request)
        if self.on_send is not None:
            self.on_send(request)
        if self.gate is not None:
            await self.gate.wait()
        route = self._routes.get(request.url)
        if route:
            outcome = route.popleft()
        elif self._default:
            outcome = self._default.popleft()
        else:
            outcome = httpx.Response(200, json={})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
