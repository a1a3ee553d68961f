"""
API request and response models for the Sentinel identity REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
Credential material only ever appears in responses that exist to hand it over
once (LoginResponse, TokenResponse, ApiKeyCreatedResponse).
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import ApiKey, User

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AccountStatusEnum(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Only shape is validated here; the password complexity policy lives in
    auth/passwords.py so the CLI and the API enforce the same rules.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    email: str = Field(max_length=255, pattern=_EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=256)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=256)
    mfa_code: Optional[str] = Field(default=None, max_length=10)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(max_length=255, pattern=_EMAIL_PATTERN)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=256)


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/v1/auth/profile. new_password requires current_password."""

    email: Optional[str] = Field(default=None, max_length=255, pattern=_EMAIL_PATTERN)
    current_password: Optional[str] = Field(default=None, max_length=256)
    new_password: Optional[str] = Field(default=None, max_length=256)


class MfaDisableRequest(BaseModel):
    password: str = Field(min_length=1, max_length=256)


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/auth/api-keys."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    scopes: Optional[list[str]] = Field(default=None, max_length=50)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=3650)
    rate_limit: Optional[int] = Field(default=None, ge=1, le=1_000_000)
    ip_allowlist: list[str] = Field(default_factory=list, max_length=50)


class StatusUpdate(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{user_id}/status."""

    status: AccountStatusEnum


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    email: str
    status: str
    role_id: Optional[str]
    organization_id: Optional[str]
    mfa_enabled: bool
    last_login: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            status=user.status.value,
            role_id=user.role_id,
            organization_id=user.organization_id,
            mfa_enabled=user.mfa_enabled,
            last_login=user.last_login.isoformat() if user.last_login else None,
            created_at=user.created_at.isoformat() if user.created_at else None,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse
    permissions: list[str]


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    permissions: list[str]
    auth_method: str


class MfaEnableResponse(BaseModel):
    """The secret is shown once so the user can enroll an authenticator app."""

    model_config = ConfigDict(frozen=True)

    secret: str
    otpauth_uri: str


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool


class ApiKeyResponse(BaseModel):
    """API key metadata. Never carries the raw key or its hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    key_prefix: str
    scopes: list[str]
    status: str
    rate_limit: int
    ip_allowlist: list[str]
    usage_count: int
    expires_at: Optional[str] = None
    last_used_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_key(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id,
            name=key.name,
            key_prefix=key.key_prefix,
            scopes=key.scopes,
            status=key.status.value,
            rate_limit=key.rate_limit,
            ip_allowlist=key.ip_allowlist,
            usage_count=key.usage_count,
            expires_at=key.expires_at.isoformat() if key.expires_at else None,
            last_used_at=key.last_used_at.isoformat() if key.last_used_at else None,
            created_at=key.created_at.isoformat() if key.created_at else None,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once at creation. `key` is the raw secret and cannot be retrieved again."""

    key: str


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    kind: str
    actor: str
    source_address: str
    context: str
    severity: str
    created_at: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
