from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
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
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServerError):
    """A dependency did not answer within its deadline (503)."""
    status_code = 503
    error_code = "service_unavailable"


def _retry_headers(retry_after: Optional[int]) -> Dict[str, str]:
    if retry_after is None:
        return {}
    return {"Retry-After": str(max(1, int(retry_after)))}


def error_for_failure(failure: str, retry_after: Optional[int] = None) -> ServiceError:
    """Map a login failure kind to the client-facing error.

    Messages stay generic so the response never tells which check failed; the
    lockout message is the one exception and names the wait time.
    """
    kind = getattr(failure, "value", failure)
    if kind == "rate_limited":
        return RateLimitedError(
            "too many login attempts", headers=_retry_headers(retry_after)
        )
    if kind == "temporarily_locked":
        minutes = max(1, -(-int(retry_after or 0) // 60))
        return AuthenticationError(
            f"account temporarily locked; try again in {minutes} minute(s)",
            detail={"retry_after_seconds": int(retry_after or 0)},
            headers=_retry_headers(retry_after),
        )
    if kind == "access_disabled":
        return ForbiddenError("portal access disabled")
    return AuthenticationError("invalid credentials")


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
    "error_for_failure",
]
