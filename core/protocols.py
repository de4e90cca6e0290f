"""Shared protocol definitions."""

from typing import Protocol


class RequestLogger(Protocol):
    """Protocol for request logging (Dashboard, ConsoleLogger)."""

    def log_request(
        self,
        backend: str,
        method: str,
        path: str,
        status: int,
        *,
        elapsed_ms: float,
    ) -> None: ...
    def log_error(self, route: str, status: int, message: str) -> None: ...
    def log_health(self, backend: str, status: str, failures: int) -> None: ...
