"""Raw send primitive and the error boundary around it.

This is the only place where httpx exceptions and HTTP status codes are
translated into the resilience error taxonomy.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol

import httpx

from fintrack_resilience.errors import (
    ClientError,
    ErrorKind,
    RateLimited,
    ServerError,
    TransportError,
    Unauthorized,
)
from fintrack_resilience.retry import parse_retry_after

MAX_ERROR_BODY_LENGTH = 2048


@dataclass(frozen=True)
class OutboundRequest:
    """One HTTP request as handed to the send primitive."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | None = None

    def with_headers(self, headers: Mapping[str, str]) -> OutboundRequest:
        """Return a copy with ``headers`` merged over the existing ones."""
        merged = dict(self.headers)
        merged.update(headers)
        return replace(self, headers=merged)


class Transport(Protocol):
    """Send primitive consumed by the resilience layer."""

    async def send(self, request: OutboundRequest) -> httpx.Response:
        """Send ``request`` and return the response, whatever its status."""


class HttpxTransport:
    """Send primitive over a shared ``httpx.AsyncClient``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def send(self, request: OutboundRequest) -> httpx.Response:
        try:
            return await self._client.request(
                request.method,
                request.url,
                headers=dict(request.headers),
                content=request.body,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(
                str(exc) or "Request timed out.",
                kind=ErrorKind.TIMEOUT,
                method=request.method,
                url=request.url,
            ) from exc
        except httpx.RequestError as exc:
            raise TransportError(
                str(exc) or "Network error.",
                kind=ErrorKind.NETWORK,
                method=request.method,
                url=request.url,
            ) from exc


def _request_line(response: httpx.Response) -> tuple[str | None, str | None]:
    try:
        request = response.request
    except RuntimeError:
        return None, None
    return request.method, str(request.url)


def raise_for_status(
    response: httpx.Response,
    *,
    now: datetime | None = None,
) -> httpx.Response:
    """Return ``response`` unchanged when successful, else raise its error."""
    status = response.status_code
    if status < 400:
        return response

    method, url = _request_line(response)
    body = response.text[:MAX_ERROR_BODY_LENGTH]
    message = f"HTTP {status} for {method or '?'} {url or '?'}"

    if status == 401:
        raise Unauthorized(
            message, status_code=status, response_body=body, method=method, url=url
        )
    if status == 429:
        raise RateLimited(
            message,
            status_code=status,
            response_body=body,
            method=method,
            url=url,
            retry_after=parse_retry_after(response.headers.get("retry-after"), now=now),
        )
    if status >= 500:
        raise ServerError(
            message, status_code=status, response_body=body, method=method, url=url
        )
    raise ClientError(
        message, status_code=status, response_body=body, method=method, url=url
    )
