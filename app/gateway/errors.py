"""Error taxonomy for the gateway.

``NO_CAPACITY`` is deliberately not an exception: running out of credential
budget is an expected, retryable backpressure condition.
"""

from __future__ import annotations

from app.gateway.types import UpstreamErrorKind


class _NoCapacity:
    """Sentinel returned by the dispatcher when every credential is at budget."""

    _instance: _NoCapacity | None = None

    def __new__(cls) -> _NoCapacity:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_CAPACITY"


NO_CAPACITY = _NoCapacity()

NO_CAPACITY_MESSAGE = "No available credentials: all upstream tokens are at their concurrency limit"


class GatewayError(Exception):
    """Base class for gateway errors."""


class ClientError(GatewayError):
    """Malformed request or unknown model. Never retried."""


class UpstreamError(GatewayError):
    """Raised by the upstream client for any failed generation call."""

    def __init__(self, kind: UpstreamErrorKind, message: str, status_code: int = 0):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"Upstream {self.kind.value} ({self.status_code}): {base}"
        return f"Upstream {self.kind.value}: {base}"


class InternalError(GatewayError):
    """Unexpected fault while handling a request."""


class AdmissionError(GatewayError):
    """Admission accounting violation (release without a matching acquire)."""


class InvalidTransitionError(GatewayError):
    """Task status moved backwards or out of a terminal state."""
