"""
auth/apikeys.py -- API key issuance, verification, scoping, and throttling.

Security design decisions:
  Keys: "sk_<env>_" + 32 CSPRNG bytes as hex. The prefix makes a leaked key
       recognizable to secret scanners; only SHA-256(raw key) is persisted and
       used as the lookup key. The raw key is returned once by issue_key().

  Verification order (first failure wins, each with its own reason):
       format / lookup    -> API_KEY_NOT_FOUND
       status REVOKED     -> API_KEY_REVOKED
       status EXPIRED or
       past expires_at    -> API_KEY_EXPIRED (a timestamp expiry also flips the
                             stored status to EXPIRED)
       IP allow-list      -> API_KEY_IP_BLOCKED
       rate ceiling       -> API_KEY_RATE_LIMITED
       scope              -> INSUFFICIENT_SCOPE
       owner missing      -> API_KEY_NOT_FOUND
       owner not ACTIVE   -> ACCOUNT_DISABLED / ACCOUNT_LOCKED

  Revoked, expired, IP, rate-limit, and scope rejections are always audited.

  Usage bookkeeping (usage_count, last_used_at) runs on a small thread pool
  so the authorization decision never waits on that write.
"""

from __future__ import annotations

import hashlib
import ipaddress
import logging
import re
import secrets
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.audit import AuditSink
from auth.errors import AccountError, AuthFailure, Rejection
from auth.models import AccountStatus, ApiKey, ApiKeyStatus, AuthenticationContext
from auth.ratelimit import RateLimitStore
from auth.rbac import PermissionResolver
from auth.store import ApiKeyStore, UserStore

logger = logging.getLogger("sentinel.apikeys")

_KEY_BYTES = 32
_PREFIX_LENGTH = 16
_VALID_PREFIXES = ("sk_live_", "sk_test_")
_VERSION_SEGMENT = re.compile(r"^v\d+$")

_METHOD_ACTIONS = {
    "GET": "read",
    "HEAD": "read",
    "OPTIONS": "read",
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}


def generate_key(environment: str = "live") -> str:
    if environment not in ("live", "test"):
        raise ValueError("environment must be 'live' or 'test'.")
    return f"sk_{environment}_{secrets.token_hex(_KEY_BYTES)}"


def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8", "surrogatepass")).hexdigest()


def new_key_id() -> str:
    return "KEY-" + secrets.token_hex(8).upper()


def method_to_action(method: str) -> str:
    """Map an HTTP method to its canonical action. Unknown methods map to "read"."""
    return _METHOD_ACTIONS.get((method or "").upper(), "read")


def resource_from_path(path: str) -> str:
    """Return the collection segment of a request path.

    "/api/v1/threats/42" -> "threats", "/cases" -> "cases". A leading "api"
    segment and a version segment ("v1", "v2", ...) are skipped.
    """
    segments = [s for s in (path or "").split("?", 1)[0].split("/") if s]
    if segments and segments[0] == "api":
        segments = segments[1:]
    if segments and _VERSION_SEGMENT.match(segments[0]):
        segments = segments[1:]
    return segments[0].lower() if segments else ""


def _resource_names(resource: str) -> set[str]:
    names = {resource, resource + "s", resource + "es"}
    if resource.endswith("y"):
        names.add(resource[:-1] + "ies")
    return names


def scope_allows(scopes: list[str], path_resource: str, action: str) -> bool:
    """True if any scope covers (path_resource, action).

    Scope resources are singular ("threat"); path resources are usually the
    plural collection name ("threats"), so both spellings match.
    """
    for scope in scopes:
        if scope in ("*", "*:*"):
            return True
        scope_resource, _, scope_action = scope.partition(":")
        if scope_action not in ("*", action):
            continue
        if scope_resource == "*" or path_resource in _resource_names(scope_resource.lower()):
            return True
    return False


def ip_allowed(allowlist: list[str], source_ip: str | None) -> bool:
    """Empty allow-list admits everyone. Entries may be addresses or CIDR networks."""
    if not allowlist:
        return True
    if not source_ip:
        return False
    try:
        address = ipaddress.ip_address(source_ip)
    except ValueError:
        return False
    candidates = [address]
    # Dual-stack listeners report IPv4 peers as ::ffff:a.b.c.d.
    mapped = getattr(address, "ipv4_mapped", None)
    if mapped is not None:
        candidates.append(mapped)
    for entry in allowlist:
        try:
            network = ipaddress.ip_network(entry, strict=False)
            if any(candidate in network for candidate in candidates):
                return True
        except ValueError:
            logger.warning("Ignoring malformed IP allow-list entry %r", entry)
    return False


@dataclass(frozen=True)
class IssuedKey:
    """raw_key is the only copy of the secret. Show it once."""

    raw_key: str
    record: ApiKey


class ApiKeyAuthority:
    """Issues, verifies, and revokes API keys.

    Usage:
        authority = ApiKeyAuthority(key_store, user_store, resolver, audit, InMemoryRateLimitStore())
        issued = authority.issue_key(user.id, user.organization_id, "ci", scopes=["threat:read"])
        result = authority.authenticate(issued.raw_key, "10.0.0.7", "/api/v1/threats", "GET")
    """

    def __init__(
        self,
        key_store: ApiKeyStore,
        user_store: UserStore,
        resolver: PermissionResolver,
        audit: AuditSink,
        rate_limits: RateLimitStore,
        environment: str = "live",
        default_rate_limit: int = 1000,
        clock: Callable[[], datetime] | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._keys = key_store
        self._users = user_store
        self._resolver = resolver
        self._audit = audit
        self._rate_limits = rate_limits
        self._environment = environment
        self._default_rate_limit = default_rate_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="apikey-usage")

    # ------------------------------------------------------------------
    # Issuance and lifecycle
    # ------------------------------------------------------------------

    def issue_key(
        self,
        user_id: str,
        organization_id: str | None,
        name: str,
        scopes: list[str] | None = None,
        expires_in_days: int | None = None,
        rate_limit: int | None = None,
        ip_allowlist: list[str] | None = None,
        source_ip: str | None = None,
    ) -> IssuedKey:
        if not name or not name.strip():
            raise AccountError("API key name is required.")
        scopes = list(scopes) if scopes else ["*"]
        if any(not isinstance(s, str) or not s.strip() for s in scopes):
            raise AccountError("Scopes must be non-empty strings.")
        if rate_limit is not None and rate_limit < 1:
            raise AccountError("Rate limit must be positive.")
        if expires_in_days is not None and expires_in_days < 1:
            raise AccountError("expires_in_days must be positive.")
        for entry in ip_allowlist or []:
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError as exc:
                raise AccountError(f"Invalid IP allow-list entry: {entry}") from exc

        now = self._clock()
        raw_key = generate_key(self._environment)
        record = ApiKey(
            id=new_key_id(),
            user_id=user_id,
            organization_id=organization_id,
            name=name.strip(),
            key_hash=hash_key(raw_key),
            key_prefix=raw_key[:_PREFIX_LENGTH],
            scopes=scopes,
            status=ApiKeyStatus.ACTIVE,
            expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
            ip_allowlist=list(ip_allowlist or []),
            rate_limit=rate_limit or self._default_rate_limit,
            created_at=now,
        )
        self._keys.create(record)
        self._audit.record("API_KEY_CREATED", user_id, source_ip, f"{record.id} ({record.name}) scopes={','.join(scopes)}")
        return IssuedKey(raw_key=raw_key, record=record)

    def revoke_key(self, key_hash: str, revoked_by: str, source_ip: str | None = None) -> bool:
        """Permanently revoke a key. Returns False if it was unknown or already revoked."""
        revoked = self._keys.mark_revoked(key_hash, revoked_by, self._clock())
        if revoked:
            self._rate_limits.reset(key_hash)
            self._audit.record("API_KEY_REVOKED", revoked_by, source_ip, f"key hash {key_hash[:12]}")
        return revoked

    def get_key(self, key_id: str) -> ApiKey | None:
        return self._keys.get_by_id(key_id)

    def list_keys(self, user_id: str) -> list[ApiKey]:
        return self._keys.list_for_user(user_id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def authenticate(
        self,
        presented_key: str,
        source_ip: str | None,
        request_path: str,
        request_method: str,
    ) -> AuthenticationContext | Rejection:
        if not presented_key or not presented_key.startswith(_VALID_PREFIXES):
            return Rejection(AuthFailure.API_KEY_NOT_FOUND)
        key_hash = hash_key(presented_key)
        record = self._keys.get_by_hash(key_hash)
        if record is None:
            return Rejection(AuthFailure.API_KEY_NOT_FOUND)

        now = self._clock()
        if record.status == ApiKeyStatus.REVOKED:
            self._audit.record("API_KEY_REVOKED_USE", record.user_id, source_ip, f"{record.id} {request_method} {request_path}")
            return Rejection(AuthFailure.API_KEY_REVOKED)

        if record.status == ApiKeyStatus.EXPIRED or (record.expires_at is not None and now >= record.expires_at):
            if record.status == ApiKeyStatus.ACTIVE:
                self._keys.mark_expired(key_hash)
            self._audit.record("API_KEY_EXPIRED_USE", record.user_id, source_ip, f"{record.id} {request_method} {request_path}")
            return Rejection(AuthFailure.API_KEY_EXPIRED)

        if not ip_allowed(record.ip_allowlist, source_ip):
            self._audit.record("API_KEY_IP_BLOCKED", record.user_id, source_ip, f"{record.id} {request_method} {request_path}")
            return Rejection(AuthFailure.API_KEY_IP_BLOCKED)

        decision = self._rate_limits.hit(key_hash, record.rate_limit)
        if not decision.allowed:
            self._audit.record(
                "API_KEY_RATE_LIMITED",
                record.user_id,
                source_ip,
                f"{record.id} {decision.count}/{decision.limit} until {decision.reset_at.isoformat()}",
            )
            return Rejection(AuthFailure.API_KEY_RATE_LIMITED, retry_after=decision.retry_after(now))

        action = method_to_action(request_method)
        resource = resource_from_path(request_path)
        if not scope_allows(record.scopes, resource, action):
            self._audit.record(
                "API_KEY_SCOPE_DENIED",
                record.user_id,
                source_ip,
                f"{record.id} needs {resource or '/'}:{action}, has {','.join(record.scopes)}",
            )
            return Rejection(AuthFailure.INSUFFICIENT_SCOPE)

        owner = self._users.get_by_id(record.user_id)
        if owner is None:
            logger.warning("API key %s belongs to missing user %s", record.id, record.user_id)
            return Rejection(AuthFailure.API_KEY_NOT_FOUND)
        if owner.status == AccountStatus.DISABLED:
            return Rejection(AuthFailure.ACCOUNT_DISABLED)
        if owner.status == AccountStatus.LOCKED:
            return Rejection(AuthFailure.ACCOUNT_LOCKED)

        permissions = self._resolver.resolve_permissions(owner.id)
        self._record_usage(key_hash, now)
        return AuthenticationContext(user=owner, permissions=permissions, method="api_key", api_key=record)

    def _record_usage(self, key_hash: str, used_at: datetime) -> None:
        future = self._executor.submit(self._keys.record_usage, key_hash, used_at)
        future.add_done_callback(_log_usage_failure)

    def shutdown(self) -> None:
        """Wait for pending usage writes, then stop the worker threads."""
        self._executor.shutdown(wait=True)


def _log_usage_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("API key usage update failed: %s", exc)
