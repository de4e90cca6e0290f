"""
Pytest fixtures for gateway tests
"""

import inspect
import os
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from core.config import BackendSettings, Config, ResilienceSettings, RouteSettings


class RecordingLogger:
    """RequestLogger that keeps every event in memory"""

    def __init__(self):
        self.requests: list[tuple[str, str, str, int]] = []
        self.errors: list[tuple[str, int, str]] = []
        self.health: list[tuple[str, str, int]] = []

    def log_request(self, backend, method, path, status, *, elapsed_ms):
        self.requests.append((backend, method, path, status))

    def log_error(self, route, status, message):
        self.errors.append((route, status, message))

    def log_health(self, backend, status, failures):
        self.health.append((backend, status, failures))


class FakeBackends:
    """httpx transport dispatching on host, with call-count instrumentation"""

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self._handlers: dict[str, Callable[[httpx.Request], Any]] = {}

    def on(self, host: str, handler: Callable[[httpx.Request], Any]) -> None:
        self._handlers[host] = handler

    def calls_to(self, host: str) -> int:
        return sum(1 for request in self.calls if request.url.host == host)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self._handlers.get(request.url.host)
        if handler is None:
            return httpx.Response(200, json={"host": request.url.host})
        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**resilience: Any) -> Config:
    """Two backends routed the way the README describes"""
    return Config(
        backends={
            "tasks": BackendSettings(base_url="http://tasks.test"),
            "users": BackendSettings(base_url="http://users.test"),
        },
        routes=[
            RouteSettings(prefix="/api/tasks", backend="tasks", rewrite="/api/tasks"),
            RouteSettings(prefix="/api/users", backend="users", rewrite="/api/users"),
        ],
        resilience=ResilienceSettings(**resilience),
    )


def connect_refused(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Connection refused", request=request)


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path, monkeypatch):
    """Keep CLI log files out of the working tree"""
    monkeypatch.setattr("ui.log_utils.LOG_ROOT", tmp_path / "logs")
    monkeypatch.setattr("ui.log_utils.CLI_LOG_FILE", tmp_path / "logs" / "gateway.log")
    return tmp_path / "logs"


@pytest.fixture(autouse=True)
def clean_gateway_env(monkeypatch):
    """Drop GATEWAY_* variables so settings come only from the test"""
    for name in list(os.environ):
        if name.startswith("GATEWAY_"):
            monkeypatch.delenv(name)


@pytest.fixture
def logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def backends() -> FakeBackends:
    return FakeBackends()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
