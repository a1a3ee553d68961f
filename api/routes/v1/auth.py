"""
api/routes/v1/auth.py -- Authentication, session, and API key REST endpoints.

Routes:
  POST   /api/v1/auth/register              -- create an account (public)
  POST   /api/v1/auth/login                 -- password (+ MFA) login; token pair
  POST   /api/v1/auth/refresh               -- rotate refresh token; new pair
  POST   /api/v1/auth/forgot-password       -- start reset; always a generic reply
  POST   /api/v1/auth/reset-password        -- finish reset with the emailed token
  POST   /api/v1/auth/logout                -- revoke refresh token (requires auth)
  GET    /api/v1/auth/me                    -- identity + permissions (requires auth)
  PUT    /api/v1/auth/profile               -- change email and/or password
  POST   /api/v1/auth/mfa/enable            -- enroll TOTP; secret shown once
  POST   /api/v1/auth/mfa/disable           -- requires current password
  POST   /api/v1/auth/validate-session      -- is the presented token still good?
  GET    /api/v1/auth/permissions           -- permission summary
  POST   /api/v1/auth/api-keys              -- issue key; raw key shown once
  GET    /api/v1/auth/api-keys              -- list own keys (no secrets)
  DELETE /api/v1/auth/api-keys/{id}         -- revoke own key
  PATCH  /api/v1/auth/users/{id}/status     -- disable / enable / unlock (user:manage)
  GET    /api/v1/auth/audit                 -- audit trail (audit:read)

Security:
  Login and register are rate-limited per client IP (slowapi).
  Cache-Control: no-store on every response that carries token material.
  forgot-password returns the same body whether or not the email exists, and
      never returns the reset token; delivery is the ResetNotifier's job.
  IDOR guard: DELETE /api-keys/{id} checks the key's owner before revoking.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ApiKeyCreate,
    ApiKeyCreatedResponse,
    ApiKeyResponse,
    AuditEventResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    MfaDisableRequest,
    MfaEnableResponse,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    StatusUpdate,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import client_ip, get_current_context, rejection_to_http, require_permission
from auth.errors import AccountError, PasswordPolicyError, Rejection
from auth.models import AccountStatus, AuthenticationContext
from auth.services import AuthServices
from core.config import get_settings

# Auth policy:
# - register, login, refresh, forgot-password, reset-password: public
# - everything else: requires auth (get_current_context)
# - PATCH /auth/users/{id}/status: requires user:manage
# - GET /auth/audit: requires audit:read
router = APIRouter()

_ACCOUNT_ERROR_STATUS = {"weak_password": 400, "conflict": 409, "not_found": 404}


def _services(request: Request) -> AuthServices:
    return request.app.state.services


def _account_error(exc: AccountError) -> HTTPException:
    detail: dict = {"code": exc.code, "message": exc.message}
    if isinstance(exc, PasswordPolicyError):
        detail["detail"] = "; ".join(exc.errors)
    return HTTPException(status_code=_ACCOUNT_ERROR_STATUS.get(exc.code, 400), detail=detail)


def _no_store(payload: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an ACTIVE account with the default role and organization."""
    try:
        user = _services(request).guard.register(
            body.username, body.email, body.password, source_ip=client_ip(request)
        )
    except AccountError as exc:
        raise _account_error(exc) from exc
    return UserResponse.from_user(user)


@limiter.limit(_login_rate_limit)  # brute-force mitigation per client IP
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password (and TOTP code when MFA is on).

    Unknown usernames and wrong passwords produce the same invalid_credentials
    response. Lockout responses say how many minutes remain.
    """
    result = _services(request).guard.login(
        body.username,
        body.password,
        source_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        mfa_code=body.mfa_code,
    )
    if isinstance(result, Rejection):
        raise rejection_to_http(result)
    return _no_store(
        LoginResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            user=UserResponse.from_user(result.user),
            permissions=sorted(result.permissions),
        ).model_dump()
    )


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented refresh token is retired."""
    result = _services(request).guard.refresh(body.refresh_token, source_ip=client_ip(request))
    if isinstance(result, Rejection):
        raise rejection_to_http(result)
    return _no_store(
        TokenResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
        ).model_dump()
    )


@limiter.limit(_login_rate_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    ticket = _services(request).guard.initiate_reset(body.email, source_ip=client_ip(request))
    return MessageResponse(message=ticket.message)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    try:
        rejection = _services(request).guard.complete_reset(
            body.token, body.new_password, source_ip=client_ip(request)
        )
    except AccountError as exc:
        raise _account_error(exc) from exc
    if rejection is not None:
        raise rejection_to_http(rejection)
    return MessageResponse(message="Password has been reset. Please log in.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, ctx: AuthenticationContext = Depends(get_current_context)) -> MessageResponse:
    _services(request).guard.logout(ctx.user.id, source_ip=client_ip(request))
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(ctx: AuthenticationContext = Depends(get_current_context)) -> MeResponse:
    """Return identity information for the currently authenticated caller."""
    return MeResponse(
        user=UserResponse.from_user(ctx.user),
        permissions=sorted(ctx.permissions),
        auth_method=ctx.method,
    )


@router.put("/auth/profile", response_model=UserResponse)
def update_profile(
    request: Request,
    body: ProfileUpdate,
    ctx: AuthenticationContext = Depends(get_current_context),
) -> UserResponse:
    if body.email is None and body.new_password is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    try:
        result = _services(request).guard.update_profile(
            ctx.user.id,
            email=body.email,
            current_password=body.current_password,
            new_password=body.new_password,
            source_ip=client_ip(request),
        )
    except AccountError as exc:
        raise _account_error(exc) from exc
    if isinstance(result, Rejection):
        raise rejection_to_http(result)
    return UserResponse.from_user(result)


@router.post("/auth/mfa/enable", response_model=MfaEnableResponse)
def enable_mfa(request: Request, ctx: AuthenticationContext = Depends(get_current_context)) -> JSONResponse:
    enrollment = _services(request).guard.enable_mfa(ctx.user.id, source_ip=client_ip(request))
    return _no_store(MfaEnableResponse(secret=enrollment.secret, otpauth_uri=enrollment.otpauth_uri).model_dump())


@router.post("/auth/mfa/disable", response_model=MessageResponse)
def disable_mfa(
    request: Request,
    body: MfaDisableRequest,
    ctx: AuthenticationContext = Depends(get_current_context),
) -> MessageResponse:
    rejection = _services(request).guard.disable_mfa(ctx.user.id, body.password, source_ip=client_ip(request))
    if rejection is not None:
        raise rejection_to_http(rejection)
    return MessageResponse(message="MFA disabled.")


@router.post("/auth/validate-session", response_model=SessionResponse)
def validate_session(request: Request, ctx: AuthenticationContext = Depends(get_current_context)) -> SessionResponse:
    """Report whether the bearer token on this request is still valid. API keys always report False."""
    if ctx.method != "bearer":
        return SessionResponse(valid=False)
    token = request.headers.get("authorization", "").partition(" ")[2].strip()
    return SessionResponse(valid=_services(request).guard.validate_session(ctx.user.id, token))


@router.get("/auth/permissions")
def permissions(request: Request, ctx: AuthenticationContext = Depends(get_current_context)) -> dict:
    return _services(request).resolver.permission_summary(ctx.user.id)


# ---------------------------------------------------------------------------
# API key management (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    body: ApiKeyCreate,
    ctx: AuthenticationContext = Depends(get_current_context),
) -> JSONResponse:
    """Issue a new API key for the caller. The raw key is shown ONCE and never stored."""
    try:
        issued = _services(request).api_keys.issue_key(
            ctx.user.id,
            ctx.user.organization_id,
            body.name,
            scopes=body.scopes,
            expires_in_days=body.expires_in_days,
            rate_limit=body.rate_limit,
            ip_allowlist=body.ip_allowlist,
            source_ip=client_ip(request),
        )
    except AccountError as exc:
        raise _account_error(exc) from exc
    payload = ApiKeyResponse.from_key(issued.record).model_dump()
    return _no_store(ApiKeyCreatedResponse(**payload, key=issued.raw_key).model_dump(), status_code=201)


@router.get("/auth/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(request: Request, ctx: AuthenticationContext = Depends(get_current_context)) -> list[ApiKeyResponse]:
    """List the caller's API keys. Raw key values and hashes are never returned."""
    return [ApiKeyResponse.from_key(k) for k in _services(request).api_keys.list_keys(ctx.user.id)]


@router.delete("/auth/api-keys/{key_id}", status_code=204)
def revoke_api_key(
    request: Request,
    key_id: str,
    ctx: AuthenticationContext = Depends(get_current_context),
) -> Response:
    """Revoke one of the caller's keys. Another user's key id reads as not found [IDOR guard]."""
    authority = _services(request).api_keys
    key = authority.get_key(key_id)
    if key is None or key.user_id != ctx.user.id:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "API key not found."})
    if not authority.revoke_key(key.key_hash, ctx.user.id, source_ip=client_ip(request)):
        raise HTTPException(status_code=409, detail={"code": "conflict", "message": "API key already revoked."})
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.patch("/auth/users/{user_id}/status", response_model=UserResponse)
def set_user_status(
    request: Request,
    user_id: str,
    body: StatusUpdate,
    ctx: AuthenticationContext = Depends(require_permission("user", "manage")),
) -> UserResponse:
    """Disable, re-enable, or unlock an account. Self-disable is refused."""
    if user_id == ctx.user.id and body.status.value == AccountStatus.DISABLED.value:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot disable your own account."},
        )
    try:
        user = _services(request).guard.set_status(
            user_id, AccountStatus(body.status.value), actor=ctx.user.id, source_ip=client_ip(request)
        )
    except AccountError as exc:
        raise _account_error(exc) from exc
    return UserResponse.from_user(user)


@router.get("/auth/audit", response_model=list[AuditEventResponse])
def list_audit_events(
    request: Request,
    actor: str | None = Query(default=None, max_length=255),
    kind: str | None = Query(default=None, max_length=64),
    limit: int = Query(default=100, ge=1, le=1000),
    ctx: AuthenticationContext = Depends(require_permission("audit", "read")),
) -> list[AuditEventResponse]:
    events = _services(request).audit.list_events(actor=actor, kind=kind, limit=limit)
    return [
        AuditEventResponse(
            id=e.id,
            kind=e.kind,
            actor=e.actor,
            source_address=e.source_address,
            context=e.context,
            severity=e.severity,
            created_at=e.created_at.isoformat(),
        )
        for e in events
    ]
