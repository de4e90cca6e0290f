"""
End-to-end tests through the FastAPI application
"""

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from app import create_app
from conftest import connect_refused, make_config
from core.config import LimitsSettings
from core.health import HealthTable


@pytest.fixture
def client(backends, logger):
    app = create_app(make_config(), logger, transport=backends.transport)
    with TestClient(app) as test_client:
        yield test_client


class TestRouting:
    """Test dispatch through the routing table"""

    def test_unknown_path_returns_no_route_found(self, client, backends):
        response = client.get("/api/orders/1")

        assert response.status_code == 404
        assert response.json() == {"error": "No route for path '/api/orders/1'", "code": "NO_ROUTE_FOUND"}
        assert backends.calls == []

    def test_routes_by_prefix(self, client, backends):
        tasks = client.get("/api/tasks", params={"userId": "42"})
        user = client.get("/api/users/username/alice")

        assert tasks.json() == {"host": "tasks.test"}
        assert user.json() == {"host": "users.test"}
        assert str(backends.calls[0].url) == "http://tasks.test/api/tasks?userId=42"
        assert backends.calls[1].url.path == "/api/users/username/alice"

    def test_any_method_is_forwarded(self, client, backends):
        response = client.request("PATCH", "/api/tasks/1", content=b"{}")

        assert response.status_code == 200
        assert backends.calls[0].method == "PATCH"

    def test_relays_backend_response_unchanged(self, client, backends):
        backends.on("tasks.test", lambda request: httpx.Response(
            418,
            headers=[
                ("content-type", "application/json"),
                ("x-custom", "yes"),
                ("set-cookie", "a=1"),
                ("set-cookie", "b=2"),
                ("keep-alive", "timeout=5"),
                ("proxy-authenticate", "Basic"),
            ],
            content=b'{"id": 5, "title": "teapot"}',
        ))

        response = client.get("/api/tasks/5")

        assert response.status_code == 418
        assert response.content == b'{"id": 5, "title": "teapot"}'
        assert response.headers["x-custom"] == "yes"
        assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]
        assert "keep-alive" not in response.headers
        assert "proxy-authenticate" not in response.headers

    def test_post_body_and_headers_forwarded(self, client, backends):
        def created(request):
            return httpx.Response(201, json={"id": 7, **json.loads(request.content)})

        backends.on("users.test", created)

        response = client.post(
            "/api/users",
            json={"username": "alice"},
            headers={
                "Authorization": "Bearer token",
                "Connection": "keep-alive, X-Hop",
                "X-Hop": "drop-me",
                "Proxy-Authorization": "Basic abc",
            },
        )

        assert response.status_code == 201
        assert response.json() == {"id": 7, "username": "alice"}
        sent = backends.calls[0]
        assert sent.headers["authorization"] == "Bearer token"
        assert "x-hop" not in sent.headers
        assert "proxy-authorization" not in sent.headers
        assert sent.headers["x-forwarded-host"] == "testserver"
        assert sent.headers["x-forwarded-proto"] == "http"

    def test_request_too_large(self, backends, logger):
        config = make_config()
        config.limits = LimitsSettings(max_body_size=8)
        app = create_app(config, logger, transport=backends.transport)

        with TestClient(app) as client:
            response = client.post("/api/tasks", content=b"0123456789")

        assert response.status_code == 413
        assert response.json()["code"] == "REQUEST_TOO_LARGE"
        assert backends.calls == []


class TestFailures:
    """Test retry policy and health short-circuiting"""

    def test_get_retries_exactly_once_on_connect_failure(self, client, backends):
        backends.on("tasks.test", connect_refused)

        response = client.get("/api/tasks/1")

        assert response.status_code == 502
        assert response.json()["code"] == "BACKEND_UNAVAILABLE"
        assert backends.calls_to("tasks.test") == 2

    def test_post_is_never_retried(self, client, backends):
        backends.on("tasks.test", connect_refused)

        response = client.post("/api/tasks", json={"title": "x"})

        assert response.status_code == 502
        assert backends.calls_to("tasks.test") == 1

    def test_read_timeout_is_not_retried(self, client, backends):
        def read_timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        backends.on("tasks.test", read_timeout)

        response = client.get("/api/tasks/1")

        assert response.status_code == 504
        assert response.json()["code"] == "REQUEST_TIMEOUT"
        assert backends.calls_to("tasks.test") == 1

    def test_connection_reset_before_response(self, client, backends):
        def reset(request):
            raise httpx.RemoteProtocolError("Server disconnected", request=request)

        backends.on("tasks.test", reset)

        response = client.delete("/api/tasks/1")

        assert response.status_code == 502
        assert response.json()["code"] == "UPSTREAM_RESET"
        assert backends.calls_to("tasks.test") == 1

    def test_three_failures_short_circuit_without_new_connection(self, client, backends):
        backends.on("tasks.test", connect_refused)

        for _ in range(3):
            assert client.post("/api/tasks", json={}).status_code == 502
        assert backends.calls_to("tasks.test") == 3

        response = client.get("/api/tasks/1")

        assert response.status_code == 502
        assert response.json() == {"error": "Backend 'tasks' is unhealthy", "code": "BACKEND_UNAVAILABLE"}
        assert backends.calls_to("tasks.test") == 3

    def test_unhealthy_backend_does_not_affect_other_routes(self, client, backends):
        backends.on("tasks.test", connect_refused)
        for _ in range(3):
            client.post("/api/tasks", json={})

        response = client.get("/api/users")

        assert response.status_code == 200
        assert backends.calls_to("users.test") == 1

    def test_backend_error_statuses_are_not_failures(self, client, backends):
        backends.on("tasks.test", lambda request: httpx.Response(500, text="boom"))

        for _ in range(4):
            response = client.post("/api/tasks", json={})
            assert response.status_code == 500
            assert response.text == "boom"

        assert backends.calls_to("tasks.test") == 4

    def test_recovers_after_cooldown(self, backends, logger, clock):
        config = make_config()
        health = HealthTable(
            {name: backend.base_url for name, backend in config.backends.items()},
            logger=logger,
            clock=clock,
        )
        app = create_app(config, logger, transport=backends.transport, health=health)
        backends.on("tasks.test", connect_refused)

        with TestClient(app) as client:
            for _ in range(3):
                client.post("/api/tasks", json={})
            clock.advance(30.0)
            backends.on("tasks.test", lambda request: httpx.Response(200, json=[]))

            response = client.get("/api/tasks")
            health_report = client.get("/_gateway/health").json()

        assert response.status_code == 200
        assert health_report["status"] == "ok"
        assert health_report["backends"][0]["status"] == "healthy"


class TestAdmin:
    """Test the /_gateway admin surface"""

    def test_health_report(self, client, backends):
        backends.on("tasks.test", connect_refused)
        for _ in range(3):
            client.post("/api/tasks", json={})

        report = client.get("/_gateway/health").json()

        assert report["status"] == "degraded"
        assert report["backends"] == [
            {"name": "tasks", "base_url": "http://tasks.test", "status": "unhealthy", "consecutive_failures": 3},
            {"name": "users", "base_url": "http://users.test", "status": "unknown", "consecutive_failures": 0},
        ]

    def test_routes_listing(self, client):
        routes = client.get("/_gateway/routes").json()["routes"]

        assert {route["prefix"] for route in routes} == {"/api/tasks", "/api/users"}

    def test_reload_without_config_file(self, client):
        response = client.post("/_gateway/reload")

        assert response.status_code == 500
        assert response.json()["code"] == "CONFIGURATION_ERROR"

    def test_reload_swaps_routes(self, tmp_path, backends, logger):
        config = make_config()
        path = tmp_path / "config.json"
        path.write_text(config.model_dump_json())
        app = create_app(config, logger, config_path=path, transport=backends.transport)

        with TestClient(app) as client:
            data = json.loads(path.read_text())
            data["routes"].append({"prefix": "/v1/todo", "backend": "tasks", "rewrite": "/api/tasks"})
            path.write_text(json.dumps(data))

            reload_response = client.post("/_gateway/reload")
            response = client.get("/v1/todo/3")

        assert reload_response.json() == {"status": "reloaded", "routes": 3}
        assert response.status_code == 200
        assert backends.calls[0].url.path == "/api/tasks/3"

    def test_reload_rejects_unknown_backend(self, tmp_path, backends, logger):
        config = make_config()
        path = tmp_path / "config.json"
        data = json.loads(config.model_dump_json())
        data["backends"]["billing"] = {"base_url": "http://billing.test"}
        data["routes"].append({"prefix": "/api/billing", "backend": "billing"})
        path.write_text(json.dumps(data))
        app = create_app(config, logger, config_path=path, transport=backends.transport)

        with TestClient(app) as client:
            response = client.post("/_gateway/reload")
            routes = client.get("/_gateway/routes").json()["routes"]

        assert response.status_code == 500
        assert response.json()["code"] == "CONFIGURATION_ERROR"
        assert len(routes) == 2


class TestDisconnect:
    """Test caller disconnect through the ASGI app"""

    @pytest.mark.asyncio
    async def test_disconnect_message_cancels_backend_call(self, backends, logger):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def slow(request):
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return httpx.Response(200)

        backends.on("tasks.test", slow)
        app = create_app(make_config(), logger, transport=backends.transport)

        inbox = [{"type": "http.request", "body": b"", "more_body": False}]

        async def receive():
            if inbox:
                return inbox.pop(0)
            await started.wait()
            return {"type": "http.disconnect"}

        sent = []

        async def send(message):
            sent.append(message)

        scope = {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.4"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/api/tasks/5",
            "raw_path": b"/api/tasks/5",
            "query_string": b"",
            "root_path": "",
            "headers": [(b"host", b"gateway.test")],
            "client": ("10.0.0.9", 51000),
            "server": ("gateway.test", 80),
        }

        async with app.router.lifespan_context(app):
            await asyncio.wait_for(app(scope, receive, send), timeout=5)
            health = app.state.health.get("tasks")

        assert cancelled.is_set()
        assert sent[0]["type"] == "http.response.start"
        assert sent[0]["status"] == 499
        assert logger.requests == []
        assert logger.errors[0][:2] == ("client", 499)
        assert health.consecutive_failures == 0
