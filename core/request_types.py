"""Shared request data types."""

from dataclasses import dataclass


@dataclass(frozen=True)
class InboundRequest:
    """Caller request as received by the gateway."""

    method: str
    path: str
    query: str
    headers: list[tuple[bytes, bytes]]
    body: bytes
    client_host: str | None = None
    host: str | None = None
    scheme: str = "http"


@dataclass(frozen=True)
class ForwardedRequest:
    """Prepared data for one upstream request, alive until the response is sent."""

    backend: str
    method: str
    url: str
    headers: list[tuple[bytes, bytes]]
    body: bytes
    timeout: float
    deadline: float  # event-loop time
    path: str
