"""Custom exception hierarchy for the API gateway."""

from typing import Any


class GatewayError(Exception):
    """Base exception for all gateway-originated errors.

    Attributes:
        message: Error message
        status_code: HTTP status code returned to the caller
        code: Stable machine-readable error code
        backend: Backend name involved (optional)
    """

    status_code = 500
    code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.backend = backend

    def to_body(self) -> dict[str, Any]:
        """Structured error body sent to the caller."""
        return {"error": self.message, "code": self.code}


class ConfigurationError(GatewayError):
    """Raised when configuration is missing or invalid."""

    code = "CONFIGURATION_ERROR"


class NoRouteFound(GatewayError):
    """No configured route prefix matches the request path."""

    status_code = 404
    code = "NO_ROUTE_FOUND"


class BackendUnavailable(GatewayError):
    """Backend could not be reached, timed out, or is short-circuited.

    ``connect_failure`` is set when the connection was never established,
    which is the only case eligible for a retry.
    """

    status_code = 502
    code = "BACKEND_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        backend: str | None = None,
        connect_failure: bool = False,
    ) -> None:
        super().__init__(message, status_code=status_code, backend=backend)
        self.connect_failure = connect_failure


class RequestTimeout(BackendUnavailable):
    """Request deadline expired after the request was sent."""

    status_code = 504
    code = "REQUEST_TIMEOUT"


class UpstreamReset(GatewayError):
    """Backend connection dropped after the request was sent."""

    status_code = 502
    code = "UPSTREAM_RESET"


class RequestTooLarge(GatewayError):
    """Request body exceeds size limit."""

    status_code = 413
    code = "REQUEST_TOO_LARGE"


class ClientDisconnected(GatewayError):
    """Caller went away before the backend answered."""

    status_code = 499
    code = "CLIENT_CLOSED_REQUEST"


class InvalidRequest(GatewayError):
    """Request cannot be expressed as a valid backend URL."""

    status_code = 400
    code = "INVALID_REQUEST"
