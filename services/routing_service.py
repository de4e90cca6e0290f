"""Routing orchestration for gateway requests."""

import asyncio

from core.config import Config
from core.headers import HeaderBuilder
from core.request_types import ForwardedRequest, InboundRequest
from core.router import Router
from services.upstream import RelayedResponse, UpstreamClient


class RoutingService:
    """Resolve inbound requests to a backend and hand them to the upstream client."""

    def __init__(
        self,
        config: Config,
        router: Router,
        upstream: UpstreamClient,
        header_builder: HeaderBuilder,
    ) -> None:
        self._config = config
        self._router = router
        self._upstream = upstream
        self._headers = header_builder

    async def handle(self, inbound: InboundRequest) -> RelayedResponse:
        """Route, forward and relay one request."""
        return await self._upstream.forward(self.prepare(inbound))

    def prepare(self, inbound: InboundRequest) -> ForwardedRequest:
        """Build the forwarded request context; raises NoRouteFound."""
        match = self._router.resolve(inbound.path)
        backend = self._config.backends[match.route.backend]

        url = f"{backend.base_url}{match.upstream_path}"
        if inbound.query:
            url = f"{url}?{inbound.query}"

        headers = self._headers.build_upstream_headers(
            inbound.headers,
            client_host=inbound.client_host,
            host=inbound.host,
            scheme=inbound.scheme,
        )
        deadline = asyncio.get_running_loop().time() + backend.timeout
        return ForwardedRequest(
            backend=match.route.backend,
            method=inbound.method,
            url=url,
            headers=headers,
            body=inbound.body,
            timeout=backend.timeout,
            deadline=deadline,
            path=inbound.path,
        )
