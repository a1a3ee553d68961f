"""
auth/services.py -- Wires stores and components into one object graph.

build_services() is used by the API lifespan, the CLI, and the test fixtures,
so all three run the same construction path. Nothing here is a module-level
singleton; each call returns an independent graph.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from auth.apikeys import ApiKeyAuthority
from auth.audit import AuditLog
from auth.gate import AuthenticationGate
from auth.guard import AccountGuard, ResetNotifier
from auth.ratelimit import InMemoryRateLimitStore, RateLimitStore
from auth.rbac import PermissionResolver
from auth.seed import seed_defaults
from auth.store import ApiKeyStore, UserStore
from auth.tokens import TokenMint
from core.config import Settings


@dataclass
class AuthServices:
    settings: Settings
    users: UserStore
    keys: ApiKeyStore
    audit: AuditLog
    mint: TokenMint
    resolver: PermissionResolver
    guard: AccountGuard
    api_keys: ApiKeyAuthority
    gate: AuthenticationGate

    def close(self) -> None:
        self.api_keys.shutdown()
        self.audit.close()
        self.keys.close()
        self.users.close()


def build_services(
    settings: Settings,
    db_url: str | None = None,
    clock: Callable[[], datetime] | None = None,
    notifier: ResetNotifier | None = None,
    rate_limits: RateLimitStore | None = None,
    seed: bool = True,
) -> AuthServices:
    clock = clock or (lambda: datetime.now(timezone.utc))
    url = db_url or settings.database_url

    users = UserStore(url)
    keys = ApiKeyStore(url)
    audit = AuditLog(url, clock=clock)
    if seed:
        seed_defaults(users)

    mint = TokenMint(
        settings.secret_key,
        settings.access_token_expiry,
        settings.refresh_token_expiry,
        clock=clock,
    )
    resolver = PermissionResolver(users, settings.permission_cache_ttl_seconds, clock=clock)
    guard = AccountGuard(
        users,
        mint,
        resolver,
        audit,
        max_login_attempts=settings.max_login_attempts,
        lockout_minutes=settings.lockout_minutes,
        reset_ttl_seconds=settings.password_reset_ttl_seconds,
        mfa_issuer=settings.mfa_issuer,
        notifier=notifier,
        clock=clock,
    )
    api_keys = ApiKeyAuthority(
        keys,
        users,
        resolver,
        audit,
        rate_limits or InMemoryRateLimitStore(settings.api_key_rate_window_seconds, clock=clock),
        environment=settings.api_key_environment,
        default_rate_limit=settings.api_key_default_rate_limit,
        clock=clock,
    )
    gate = AuthenticationGate(mint, users, resolver, api_keys, audit, clock=clock)
    return AuthServices(
        settings=settings,
        users=users,
        keys=keys,
        audit=audit,
        mint=mint,
        resolver=resolver,
        guard=guard,
        api_keys=api_keys,
        gate=gate,
    )
