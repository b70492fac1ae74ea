from __future__ import annotations

from enum import Enum
from typing import Optional


class ConfigError(Exception):
    """Fatal configuration problem detected at startup.

    Raised before any request is served; the process must not start with a
    partially configured core.
    """

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class GatewayError(Exception):
    """Base class for request-path errors mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - locked_out / rate_limited (429)
    - upstream_error (502)
    - upstream_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def kind(self) -> str:
        return self.error_code


class ValidationError(GatewayError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthErrorKind(str, Enum):
    EXPIRED = "expired"
    MALFORMED = "malformed"
    WRONG_TYPE = "wrong_type"
    REVOKED = "revoked"
    INVALID_CREDENTIALS = "invalid_credentials"


class AuthError(GatewayError):
    """Authentication failed (401).

    The kind is kept for logging and tests only; the public message never
    says which check failed.
    """

    status_code = 401
    error_code = "unauthorized"

    def __init__(self, kind: AuthErrorKind, message: Optional[str] = None) -> None:
        if message is None:
            message = (
                "invalid credentials"
                if kind == AuthErrorKind.INVALID_CREDENTIALS
                else "authentication required"
            )
        super().__init__(message)
        self.auth_kind = kind

    @property
    def kind(self) -> str:
        return self.auth_kind.value


class _RetryAfterError(GatewayError):
    def __init__(self, message: str, *, retry_after: int) -> None:
        retry_after = max(int(retry_after), 0)
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class RateLimitedError(_RetryAfterError):
    """Request quota for the current window is used up (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int) -> None:
        super().__init__("rate limit exceeded", retry_after=retry_after)


class LockedOutError(_RetryAfterError):
    """Too many failed logins; identity temporarily locked (429)."""
    status_code = 429
    error_code = "locked_out"

    def __init__(self, retry_after: int) -> None:
        super().__init__("too many failed login attempts", retry_after=retry_after)


class CircuitOpenError(_RetryAfterError):
    """Upstream circuit is open; no call was attempted (503)."""
    status_code = 503
    error_code = "upstream_unavailable"

    def __init__(self, retry_after: int) -> None:
        super().__init__("upstream temporarily unavailable", retry_after=retry_after)


class UpstreamErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class UpstreamError(GatewayError):
    """The upstream API failed.

    ``TRANSIENT`` covers timeouts, transport errors, 429 and 5xx and counts
    against the circuit breaker. ``PERMANENT`` covers other 4xx answers and
    payloads that do not parse.
    """

    status_code = 502
    error_code = "upstream_error"

    def __init__(
        self,
        kind: UpstreamErrorKind,
        message: str,
        *,
        upstream_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.upstream_kind = kind
        self.upstream_status = upstream_status
        if kind == UpstreamErrorKind.TRANSIENT:
            self.status_code = 503
            self.error_code = "upstream_unavailable"

    @property
    def kind(self) -> str:
        return self.upstream_kind.value

    @property
    def is_transient(self) -> bool:
        return self.upstream_kind == UpstreamErrorKind.TRANSIENT


__all__ = [
    "ConfigError",
    "GatewayError",
    "ValidationError",
    "AuthErrorKind",
    "AuthError",
    "RateLimitedError",
    "LockedOutError",
    "CircuitOpenError",
    "UpstreamErrorKind",
    "UpstreamError",
]
