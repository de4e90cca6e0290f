"""FastAPI application factory."""

from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.handlers import handle_health, handle_proxy, handle_reload, handle_routes
from core.config import Config
from core.exceptions import GatewayError
from core.headers import HeaderBuilder
from core.health import HealthTable
from core.protocols import RequestLogger
from core.router import Route, Router
from services.routing_service import RoutingService
from services.upstream import UpstreamClient, build_clients

ADMIN_PREFIX = "/_gateway"


def create_app(
    config: Config,
    logger: RequestLogger,
    *,
    config_path: Path | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    health: HealthTable | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        clients = build_clients(config, transport)
        header_builder = HeaderBuilder()
        app.state.health = health or HealthTable(
            {name: backend.base_url for name, backend in config.backends.items()},
            failure_threshold=config.resilience.failure_threshold,
            cooldown_seconds=config.resilience.cooldown_seconds,
            logger=logger,
        )
        app.state.router = Router(
            Route(prefix=route.prefix, backend=route.backend, rewrite=route.rewrite)
            for route in config.routes
        )
        app.state.upstream_client = UpstreamClient(
            clients,
            app.state.health,
            logger,
            header_builder,
            max_retries=config.resilience.max_retries,
        )
        app.state.routing_service = RoutingService(
            config=config,
            router=app.state.router,
            upstream=app.state.upstream_client,
            header_builder=header_builder,
        )
        try:
            yield
        finally:
            for client in clients.values():
                await client.aclose()

    # Docs routes would shadow forwarded paths
    app = FastAPI(
        title="CRUD Gateway",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.config = config
    app.state.config_path = config_path
    app.state.logger = logger

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        logger.log_error(exc.backend or "gateway", exc.status_code, exc.message)
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    app.add_route(f"{ADMIN_PREFIX}/health", handle_health, methods=["GET"], include_in_schema=False)
    app.add_route(f"{ADMIN_PREFIX}/routes", handle_routes, methods=["GET"], include_in_schema=False)
    app.add_route(f"{ADMIN_PREFIX}/reload", handle_reload, methods=["POST"], include_in_schema=False)
    # No methods list: every HTTP method is forwarded
    app.add_route("/{path:path}", handle_proxy, include_in_schema=False)

    return app
