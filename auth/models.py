"""
auth/models.py -- Domain dataclasses for identity and authorization entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores, the guard, and the gate do the work.

Timestamps are timezone-aware UTC datetimes in memory. The stores serialize
them as ISO 8601 strings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    LOCKED = "LOCKED"
    DISABLED = "DISABLED"


class ApiKeyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


@dataclass
class User:
    """An identity known to the core.

    password_hash is "<salt hex>:<key hex>" (see auth/passwords.py).
    refresh_token_hash and password_reset_token_hash hold SHA-256 digests; the
    raw values are handed to the caller once and never stored.

    failed_login_attempts counts consecutive wrong credentials. It resets on
    successful login, password reset, and lockout-expiry rollover.

    mfa_last_step is the TOTP time step of the last accepted code; a code for
    that step or an earlier one is refused.
    """

    username: str
    email: str
    id: str | None = None
    password_hash: str | None = None
    status: AccountStatus = AccountStatus.ACTIVE
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    refresh_token_hash: str | None = None
    refresh_token_expires: datetime | None = None
    password_reset_token_hash: str | None = None
    password_reset_expires: datetime | None = None
    mfa_enabled: bool = False
    mfa_secret: str | None = None
    mfa_last_step: int | None = None
    role_id: str | None = None
    organization_id: str | None = None
    last_login: datetime | None = None
    last_login_ip: str | None = None
    last_login_user_agent: str | None = None
    created_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass(frozen=True)
class Permission:
    """A (resource, action) pair. Serialized as "resource:action"."""

    resource: str
    action: str
    id: str | None = None
    description: str = ""

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}"


@dataclass
class Role:
    """A named bundle of permissions. parent_role_id links form the hierarchy."""

    id: str
    name: str
    description: str = ""
    parent_role_id: str | None = None
    permissions: list[Permission] = field(default_factory=list)


@dataclass
class Organization:
    """An organization with a materialized path, e.g. "/org-root/org-emea/org-1"."""

    id: str
    name: str
    path: str
    parent_id: str | None = None


@dataclass
class ApiKey:
    """A long-lived credential for non-browser clients (CI/CD, scripts).

    Security design:
    - key_hash is SHA-256 of the raw key and is the persisted lookup key.
      The raw key is returned ONCE at creation and is unrecoverable afterwards.
    - key_prefix (first 16 chars of the raw key) is kept for display only.
    - scopes are "resource:action" strings; "*" grants full access, and
      "resource:*" / "*:action" wildcard one side.
    - ip_allowlist entries are single addresses or CIDR networks. Empty means
      any source address is accepted.
    - rate_limit is the number of requests accepted per rate window (1 hour).
    """

    user_id: str
    organization_id: str | None
    name: str
    key_hash: str
    key_prefix: str
    id: str | None = None
    scopes: list[str] = field(default_factory=lambda: ["*"])
    status: ApiKeyStatus = ApiKeyStatus.ACTIVE
    expires_at: datetime | None = None
    ip_allowlist: list[str] = field(default_factory=list)
    rate_limit: int = 1000
    usage_count: int = 0
    last_used_at: datetime | None = None
    created_at: datetime | None = None
    revoked_at: datetime | None = None
    revoked_by: str | None = None


@dataclass
class AuthenticationContext:
    """Per-request identity attached by the gate. Never persisted."""

    user: User
    permissions: frozenset[str]
    method: str  # "bearer" | "api_key"
    api_key: ApiKey | None = None
    claims: dict | None = None


@dataclass(frozen=True)
class AuditEvent:
    """One append-only audit record."""

    kind: str
    actor: str
    source_address: str
    context: str
    severity: str
    created_at: datetime
    id: int | None = None
