from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from clientportal.api.schemas import (
    AuthResponse,
    CaseStatusRequest,
    Envelope,
    InvoiceStatusRequest,
    LoginRequest,
    MessageRequest,
    RevokeResponse,
)
from clientportal.logging import get_logger
from clientportal.service.auth import AuthContext
from clientportal.service.errors import SessionExpiredError, error_for_failure
from clientportal.service.rate_limit import RateLimitDecision
from clientportal.service.runtime import get_runtime
from clientportal.service.sessions import SessionFailure

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateLimitDecision) -> "RateLimitInfo":
        return cls(decision.limit, decision.remaining, decision.reset_after)

    def as_headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers per IETF draft-polli-ratelimit-headers."""
        for name, value in self.as_headers().items():
            response.headers[name] = value


def _session_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    runtime = get_runtime()
    token = request.cookies.get(runtime.settings.session_cookie_name)
    if token:
        return token
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return None


def _apply_session_cookie(response: Response, token: str, expires_at: Optional[datetime]) -> None:
    settings = get_runtime().settings
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


async def get_principal(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    token = _session_token(request, authorization)
    ctx, failure = await runtime.auth.authenticate(token)
    if ctx is None:
        if failure == SessionFailure.SESSION_EXPIRED:
            raise SessionExpiredError("session expired")
        raise _http_error("unauthorized", "authentication required", status_code=401)
    if request.cookies.get(runtime.settings.session_cookie_name):
        # keep the cookie in step with the sliding expiry
        _apply_session_cookie(response, token, ctx.expires_at)
    return ctx


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with e-mail, password and optional tenant identity.

    Sets the HTTP-only session cookie on success. Failure responses stay
    generic apart from the lockout message, which names the wait time.

    Raises:
        401: Invalid credentials, tenant mismatch or temporary lockout
        403: Portal access disabled
        429: Too many attempts for this e-mail
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, body.tenant_identity)
    rate_info = RateLimitInfo.from_decision(result.rate_limit) if result.rate_limit else None
    if not result.ok or result.context is None or result.token is None:
        exc = error_for_failure(result.failure, result.retry_after)
        if rate_info is not None:
            exc.headers.update(rate_info.as_headers())
        raise exc
    if rate_info is not None:
        rate_info.apply_headers(response)
    _apply_session_cookie(response, result.token, result.context.expires_at)
    return Envelope(
        status="ok",
        data=AuthResponse(
            subject_id=result.context.subject_id,
            role=result.context.role,
            tenant_scope=result.context.tenant_scope,
            session_expires_at=result.context.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    token = _session_token(request, authorization)
    revoked = await runtime.auth.logout(token)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=AuthResponse(
            subject_id=principal.subject_id,
            role=principal.role,
            tenant_scope=principal.tenant_scope,
            session_expires_at=principal.expires_at,
        ),
    )


@router.get("/portal/tenants/{tenant_id}/dashboard", response_model=Envelope, tags=["portal"])
async def dashboard(tenant_id: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    metrics = await runtime.portal.dashboard(principal, tenant_id)
    return Envelope(status="ok", data=metrics)


@router.post(
    "/portal/tenants/{tenant_id}/cases/{case_id}/status",
    response_model=Envelope,
    tags=["portal"],
)
async def update_case_status(
    tenant_id: str,
    case_id: str,
    body: CaseStatusRequest,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    case = await runtime.portal.update_case_status(
        principal,
        tenant_id,
        case_id,
        body.status,
        progress_percentage=body.progress_percentage,
    )
    return Envelope(status="ok", data=asdict(case))


@router.post(
    "/portal/tenants/{tenant_id}/invoices/{invoice_id}/status",
    response_model=Envelope,
    tags=["portal"],
)
async def update_invoice_status(
    tenant_id: str,
    invoice_id: str,
    body: InvoiceStatusRequest,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    invoice = await runtime.portal.update_invoice_status(
        principal, tenant_id, invoice_id, body.status
    )
    return Envelope(status="ok", data=asdict(invoice))


@router.post(
    "/portal/tenants/{tenant_id}/messages",
    response_model=Envelope,
    status_code=201,
    tags=["portal"],
)
async def send_message(
    tenant_id: str,
    body: MessageRequest,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    message = await runtime.portal.send_message(principal, tenant_id, body.body)
    return Envelope(status="ok", data=asdict(message))


@router.post(
    "/admin/subjects/{subject_id}/sessions/revoke",
    response_model=Envelope,
    tags=["admin"],
)
async def revoke_subject_sessions(
    subject_id: str, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    runtime.permissions.require(principal.role, "manage_users")
    revoked = await runtime.auth.revoke_all(subject_id)
    logger.info(
        "admin_sessions_revoked",
        subject_id=subject_id,
        revoked=revoked,
        admin_subject_id=principal.subject_id,
    )
    return Envelope(status="ok", data=RevokeResponse(subject_id=subject_id, revoked=revoked))
