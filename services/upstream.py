"""HTTP forwarding to backends with retries, deadlines and health tracking."""

import asyncio
import time
from collections.abc import AsyncIterator

import httpx
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from core.config import Config
from core.exceptions import (
    BackendUnavailable,
    GatewayError,
    InvalidRequest,
    RequestTimeout,
    UpstreamReset,
)
from core.headers import HeaderBuilder
from core.health import HealthTable
from core.protocols import RequestLogger
from core.request_types import ForwardedRequest

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE", "OPTIONS"})


class RelayedResponse(StreamingResponse):
    """Streams a backend response and always hands its connection back to the pool."""

    def __init__(self, upstream: httpx.Response, content: AsyncIterator[bytes]) -> None:
        super().__init__(content, status_code=upstream.status_code)
        self.upstream = upstream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # Covers a send that fails before the body iterator ever starts
            await self.upstream.aclose()


def build_clients(
    config: Config,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, httpx.AsyncClient]:
    """Create one pooled client per backend."""
    clients = {}
    for name, backend in config.backends.items():
        limits = httpx.Limits(
            max_connections=backend.max_connections,
            max_keepalive_connections=backend.max_keepalive_connections,
        )
        clients[name] = httpx.AsyncClient(
            base_url=backend.base_url,
            timeout=backend.timeout,
            limits=limits,
            # Relay bodies undecoded; only ask for compression if the caller did
            headers={"Accept-Encoding": "identity"},
            transport=transport,
        )
    return clients


class UpstreamClient:
    """Proxy requests to backend services with streaming support."""

    def __init__(
        self,
        clients: dict[str, httpx.AsyncClient],
        health: HealthTable,
        logger: RequestLogger,
        header_builder: HeaderBuilder,
        max_retries: int = 1,
    ) -> None:
        self._clients = clients
        self._health = health
        self._logger = logger
        self._headers = header_builder
        self._max_retries = max_retries

    async def forward(self, request: ForwardedRequest) -> RelayedResponse:
        """Send the request, retrying once on connect failure for idempotent methods."""
        retries = self._max_retries if request.method in IDEMPOTENT_METHODS else 0
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._attempt(request)
            except BackendUnavailable as e:
                if not e.connect_failure or attempt > retries:
                    raise
                self._logger.log_error(
                    request.backend,
                    e.status_code,
                    f"Retrying {request.method} {request.path}: {e.message}",
                )

    async def _attempt(self, request: ForwardedRequest) -> RelayedResponse:
        """One admitted send; records the outcome in the health table."""
        backend = request.backend
        client = self._clients[backend]
        try:
            outbound = client.build_request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body,
                timeout=request.timeout,
            )
        except httpx.InvalidURL as e:
            raise InvalidRequest(f"Cannot forward to '{backend}': {e}", backend=backend) from e

        started = time.perf_counter()
        probe = False
        settled = False
        try:
            probe = await self._health.acquire(backend)
            try:
                async with asyncio.timeout_at(request.deadline):
                    response = await client.send(outbound, stream=True)
            except httpx.PoolTimeout as e:
                # Local pool saturation is not the backend's fault
                raise BackendUnavailable(
                    f"Connection pool to '{backend}' exhausted",
                    status_code=504,
                    backend=backend,
                ) from e
            except (TimeoutError, httpx.TransportError) as e:
                error = self._map_transport_error(e, backend)
                await self._health.record_failure(backend, probe=probe)
                settled = True
                raise error from e

            try:
                await self._health.record_success(backend, probe=probe)
            except asyncio.CancelledError:
                await response.aclose()
                raise
            settled = True
        finally:
            if probe and not settled:
                await self._health.release_probe(backend)

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._logger.log_request(
            backend, request.method, request.path, response.status_code, elapsed_ms=elapsed_ms
        )

        relayed = RelayedResponse(response, self._relay(response, request))
        # Raw list keeps duplicates such as Set-Cookie
        relayed.raw_headers = self._headers.build_downstream_headers(response.headers.raw)
        return relayed

    def _map_transport_error(self, error: Exception, backend: str) -> GatewayError:
        if isinstance(error, httpx.ConnectTimeout):
            return BackendUnavailable(
                f"Timed out connecting to '{backend}'",
                status_code=504,
                backend=backend,
                connect_failure=True,
            )
        if isinstance(error, httpx.ConnectError):
            return BackendUnavailable(
                f"Cannot connect to '{backend}'",
                status_code=502,
                backend=backend,
                connect_failure=True,
            )
        if isinstance(error, (TimeoutError, httpx.TimeoutException)):
            return RequestTimeout(f"Backend '{backend}' did not respond in time", backend=backend)
        return UpstreamReset(f"Connection to '{backend}' was reset", backend=backend)

    async def _relay(
        self,
        response: httpx.Response,
        request: ForwardedRequest,
    ) -> AsyncIterator[bytes]:
        """Stream the undecoded body; a mid-body drop aborts the caller's connection."""
        try:
            async for chunk in response.aiter_raw():
                yield chunk
        except httpx.TransportError as e:
            await self._health.record_failure(request.backend)
            self._logger.log_error(request.backend, 502, f"Reset mid-response: {e!r}")
            raise UpstreamReset(
                f"Connection to '{request.backend}' dropped mid-response",
                backend=request.backend,
            ) from e
        finally:
            await response.aclose()
