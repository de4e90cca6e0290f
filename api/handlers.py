"""FastAPI route handlers."""

import asyncio
from collections.abc import Awaitable
from pathlib import Path
from typing import TypeVar

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from core.config import Config, load_config
from core.exceptions import ClientDisconnected, ConfigurationError, RequestTooLarge
from core.protocols import RequestLogger
from core.request_types import InboundRequest
from core.router import Route
from ui.log_utils import write_cli_log, write_incoming_log

T = TypeVar("T")


async def _read_inbound(request: Request, config: Config) -> InboundRequest:
    """Collect the caller request, enforcing the body size limit."""
    max_size = config.limits.max_body_size
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_size:
        raise RequestTooLarge("Request body too large")
    body = await request.body()
    if len(body) > max_size:
        raise RequestTooLarge("Request body too large")

    raw_path = request.scope.get("raw_path")
    path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else request.url.path
    headers = list(request.headers.raw)
    if config.server.debug:
        write_incoming_log(
            request.method,
            path,
            dict(request.headers),
            body.decode("utf-8", errors="replace"),
        )
    return InboundRequest(
        method=request.method,
        path=path,
        query=request.scope.get("query_string", b"").decode("latin-1"),
        headers=headers,
        body=body,
        client_host=request.client.host if request.client else None,
        host=request.headers.get("host"),
        scheme=request.url.scheme,
    )


async def wait_for_disconnect(request: Request) -> None:
    """Return once the caller closes its connection (body already consumed)."""
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def cancel_on_disconnect(work: Awaitable[T], disconnected: Awaitable[None]) -> T:
    """Run ``work`` unless ``disconnected`` finishes first, then cancel it."""
    work_task = asyncio.ensure_future(work)
    watch_task = asyncio.ensure_future(disconnected)
    try:
        done, _ = await asyncio.wait(
            {work_task, watch_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if work_task in done:
            return work_task.result()
        work_task.cancel()
        await asyncio.gather(work_task, return_exceptions=True)
        raise ClientDisconnected("Client closed the connection before the backend responded")
    finally:
        for task in (work_task, watch_task):
            if not task.done():
                task.cancel()


async def handle_proxy(request: Request) -> Response:
    """Forward any method/path through the routing table."""
    config: Config = request.app.state.config
    logger: RequestLogger = request.app.state.logger
    inbound = await _read_inbound(request, config)
    routing_service = request.app.state.routing_service
    try:
        return await cancel_on_disconnect(
            routing_service.handle(inbound),
            wait_for_disconnect(request),
        )
    except ClientDisconnected as e:
        logger.log_error("client", e.status_code, f"{inbound.method} {inbound.path}: {e.message}")
        return Response(status_code=e.status_code)


async def handle_health(request: Request) -> JSONResponse:
    """Report the backend health table."""
    backends = request.app.state.health.snapshot()
    degraded = any(backend["status"] == "unhealthy" for backend in backends)
    return JSONResponse({"status": "degraded" if degraded else "ok", "backends": backends})


async def handle_routes(request: Request) -> JSONResponse:
    """List the active route table, longest prefix first."""
    table = request.app.state.router.table
    return JSONResponse(
        {
            "routes": [
                {"prefix": route.prefix, "backend": route.backend, "rewrite": route.rewrite}
                for route in table.routes
            ]
        }
    )


async def handle_reload(request: Request) -> JSONResponse:
    """Re-read the config file and swap in its routes."""
    config_path: Path | None = request.app.state.config_path
    if config_path is None:
        raise ConfigurationError("Gateway was started without a config file")

    fresh = await asyncio.to_thread(load_config, config_path)
    known = request.app.state.config.backends
    unknown = sorted({route.backend for route in fresh.routes if route.backend not in known})
    if unknown:
        raise ConfigurationError(f"Reload refers to backends unknown at startup: {', '.join(unknown)}")

    table = request.app.state.router.replace(
        Route(prefix=route.prefix, backend=route.backend, rewrite=route.rewrite)
        for route in fresh.routes
    )
    write_cli_log("RELOAD", "Routes reloaded", routes=len(table.routes))
    return JSONResponse({"status": "reloaded", "routes": len(table.routes)})
