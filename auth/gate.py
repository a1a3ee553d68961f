"""
auth/gate.py -- Per-request authentication and authorization decisions.

The gate is the single entry point the transport calls for every protected
request. It is framework-agnostic: it sees an InboundRequest (headers, source
address, path, method) and returns either an AuthenticationContext or a
Rejection. auth/dependencies.py adapts it to FastAPI.

Credential precedence:
  1. "Authorization: Bearer <token>" -- verified by the TokenMint. An invalid
     bearer token is rejected outright; the gate does not fall back to an API
     key sent alongside it.
  2. "X-API-Key: sk_..." -- delegated to the ApiKeyAuthority.
  3. Neither -> NO_CREDENTIALS.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

from auth.apikeys import ApiKeyAuthority
from auth.audit import AuditSink
from auth.errors import AuthFailure, Rejection
from auth.models import AccountStatus, AuthenticationContext
from auth.rbac import FULL_ACCESS, PermissionResolver
from auth.store import UserStore
from auth.tokens import TokenMint

logger = logging.getLogger("sentinel.gate")

API_KEY_HEADER = "x-api-key"


@dataclass(frozen=True)
class InboundRequest:
    """Transport-neutral view of a request. Header names are matched case-insensitively."""

    headers: Mapping[str, str] = field(default_factory=dict)
    source_ip: str | None = None
    path: str = "/"
    method: str = "GET"

    def header(self, name: str) -> str | None:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None


class AuthenticationGate:
    def __init__(
        self,
        mint: TokenMint,
        user_store: UserStore,
        resolver: PermissionResolver,
        api_keys: ApiKeyAuthority,
        audit: AuditSink,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._mint = mint
        self._users = user_store
        self._resolver = resolver
        self._api_keys = api_keys
        self._audit = audit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def authenticate(self, request: InboundRequest) -> AuthenticationContext | Rejection:
        authorization = request.header("authorization")
        if authorization:
            scheme, _, token = authorization.partition(" ")
            if scheme.lower() == "bearer" and token.strip():
                return self._authenticate_bearer(token.strip())

        api_key = request.header(API_KEY_HEADER)
        if api_key:
            return self._api_keys.authenticate(api_key.strip(), request.source_ip, request.path, request.method)

        return Rejection(AuthFailure.NO_CREDENTIALS)

    def _authenticate_bearer(self, token: str) -> AuthenticationContext | Rejection:
        check = self._mint.verify_access_token(token)
        if not check.valid:
            return Rejection(AuthFailure.TOKEN_INVALID_OR_EXPIRED)
        user = self._users.get_by_id(check.claims["userId"])
        if user is None:
            logger.warning("Valid token for unknown user %s", check.claims["userId"])
            return Rejection(AuthFailure.TOKEN_INVALID_OR_EXPIRED)
        if user.status == AccountStatus.DISABLED:
            return Rejection(AuthFailure.ACCOUNT_DISABLED)
        if user.status == AccountStatus.LOCKED:
            return Rejection(AuthFailure.ACCOUNT_LOCKED)
        return AuthenticationContext(
            user=user,
            permissions=self._resolver.resolve_permissions(user.id),
            method="bearer",
            claims=check.claims,
        )

    def require_permission(
        self,
        context: AuthenticationContext,
        resource: str,
        action: str,
        source_ip: str | None = None,
    ) -> Rejection | None:
        """None if the context holds resource:action or full access; otherwise a rejection."""
        required = f"{resource}:{action}"
        if required in context.permissions or context.permissions & FULL_ACCESS:
            return None
        self._audit.record("PERMISSION_DENIED", context.user.id, source_ip, f"Missing {required} via {context.method}")
        return Rejection(AuthFailure.INSUFFICIENT_PRIVILEGE)

    def require_org_scope(
        self,
        context: AuthenticationContext,
        target_org_id: str,
        source_ip: str | None = None,
    ) -> Rejection | None:
        if self._resolver.validate_org_scope(context.user, target_org_id):
            return None
        self._audit.record(
            "PERMISSION_DENIED",
            context.user.id,
            source_ip,
            f"Organization {target_org_id} outside scope of {context.user.organization_id}",
        )
        return Rejection(AuthFailure.INSUFFICIENT_PRIVILEGE, "Organization outside your scope.")
