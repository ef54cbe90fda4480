from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for broker exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients switch on:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - upstream_unavailable (502)
    - reauth_required (503)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Identity missing or not provable (401).

    ``reason`` is copied into ``detail`` so clients can tell a token that
    merely needs refreshing from a session that must log in again.
    """
    status_code = 401
    error_code = "unauthorized"
    default_reason = "invalid_token"

    def __init__(
        self,
        message: str = "authentication required",
        *,
        reason: Optional[str] = None,
        detail: Optional[dict] = None,
        **kwargs,
    ) -> None:
        merged = dict(detail or {})
        merged.setdefault("reason", reason or self.default_reason)
        super().__init__(message, detail=merged, **kwargs)

    @property
    def reason(self) -> str:
        return self.detail["reason"]


class IdleTimeoutError(AuthenticationError):
    """Session idle for longer than the configured window (401)."""
    default_reason = "idle_timeout"

    def __init__(self, message: str = "session idle timeout", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthorizationError(ServiceError):
    """Identity known but not allowed: missing capability or foreign tenant (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamUnavailableError(ServiceError):
    """Upstream platform unreachable, timed out or failing (502)."""
    status_code = 502
    error_code = "upstream_unavailable"


class ReauthRequiredError(ServiceError):
    """No usable upstream token for this session; the user must log in again (503)."""
    status_code = 503
    error_code = "reauth_required"

    def __init__(
        self,
        message: str = "upstream session expired, please log in again",
        *,
        detail: Optional[dict] = None,
        **kwargs,
    ) -> None:
        merged = dict(detail or {})
        merged.setdefault("reason", "upstream_token_missing")
        super().__init__(message, detail=merged, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "IdleTimeoutError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "UpstreamUnavailableError",
    "ReauthRequiredError",
]
