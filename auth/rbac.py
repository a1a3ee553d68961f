"""
auth/rbac.py -- Role-based permission resolution and organization scoping.

A user's effective permissions are the union of the permissions attached to
their role and to every ancestor reached through parent_role_id links. The
hierarchy is walked iteratively with a visited set: a cyclic or dangling
parent link ends the walk (with a warning) instead of recursing forever.

Permission strings are "resource:action". Matching honors:
  "*:*" or "*"           full access
  "resource:*"           every action on one resource
  "*:action"             one action on every resource
  "resource:action:id"   one action on one resource instance

Organization scope: a user may act on their own organization or any
descendant of it. Descendancy compares materialized paths segment by segment
so "/org-1" is not treated as an ancestor of "/org-10".

Resolved sets are cached per user for cache_ttl_seconds (0 disables the
cache). The resolver subscribes to the store's role-change hook, so any role or
role-permission write drops every cached set. Changes to a user record are
dropped with invalidate_user().
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("sentinel.rbac")

FULL_ACCESS = frozenset({"*:*", "*"})


def permission_matches(granted: Iterable[str], resource: str, action: str, resource_id: str | None = None) -> str | None:
    """Return the first granted permission covering (resource, action), or None."""
    granted = set(granted)
    candidates = [f"{resource}:{action}", f"{resource}:*", f"*:{action}"]
    if resource_id is not None:
        candidates.insert(0, f"{resource}:{action}:{resource_id}")
    for wildcard in ("*:*", "*"):
        if wildcard in granted:
            return wildcard
    for candidate in candidates:
        if candidate in granted:
            return candidate
    return None


def _path_segments(path: str | None) -> list[str]:
    return [segment for segment in (path or "").split("/") if segment]


def path_contains(ancestor: str | None, descendant: str | None) -> bool:
    """True if `descendant` equals `ancestor` or lies beneath it."""
    parent = _path_segments(ancestor)
    child = _path_segments(descendant)
    if not parent:
        return False
    return child[: len(parent)] == parent


@dataclass(frozen=True)
class PermissionCheck:
    granted: bool
    reason: str
    matched: str | None = None


@dataclass
class _CacheEntry:
    permissions: frozenset[str]
    expires_at: datetime


class PermissionResolver:
    """Resolves effective permissions through the role hierarchy.

    Usage:
        resolver = PermissionResolver(store, cache_ttl_seconds=300)
        perms = resolver.resolve_permissions("USR-...")
        check = resolver.check_permission("USR-...", "case", "read")
    """

    def __init__(
        self,
        store: UserStore,
        cache_ttl_seconds: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._ttl = timedelta(seconds=max(0, cache_ttl_seconds))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._cache: dict[str, _CacheEntry] = {}
        store.on_roles_changed(self.invalidate_all)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def role_chain(self, role_id: str | None) -> list[str]:
        """Return role ids from `role_id` up through its ancestors, cycle-safe."""
        chain: list[str] = []
        visited: set[str] = set()
        current = role_id
        while current:
            if current in visited:
                logger.warning("Role hierarchy cycle detected at %s (chain: %s)", current, " -> ".join(chain))
                break
            visited.add(current)
            role = self._store.get_role(current)
            if role is None:
                logger.warning("Role %s referenced but not found", current)
                break
            chain.append(role.id)
            current = role.parent_role_id
        return chain

    def permissions_for_role(self, role_id: str | None) -> frozenset[str]:
        permissions: set[str] = set()
        for chain_role_id in self.role_chain(role_id):
            role = self._store.get_role(chain_role_id)
            if role is not None:
                permissions.update(str(p) for p in role.permissions)
        return frozenset(permissions)

    def resolve_permissions(self, user_id: str) -> frozenset[str]:
        """Return the deduplicated permission set for a user (empty if unknown)."""
        now = self._clock()
        if self._ttl:
            with self._lock:
                entry = self._cache.get(user_id)
                if entry is not None and now < entry.expires_at:
                    return entry.permissions

        user = self._store.get_by_id(user_id)
        if user is None:
            return frozenset()
        permissions = self.permissions_for_role(user.role_id)

        if self._ttl:
            with self._lock:
                self._cache[user_id] = _CacheEntry(permissions, now + self._ttl)
        return permissions

    def invalidate_user(self, user_id: str) -> None:
        with self._lock:
            self._cache.pop(user_id, None)

    def invalidate_all(self) -> None:
        with self._lock:
            self._cache.clear()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_permission(
        self, user_id: str, resource: str, action: str, resource_id: str | None = None
    ) -> PermissionCheck:
        matched = permission_matches(self.resolve_permissions(user_id), resource, action, resource_id)
        if matched is None:
            return PermissionCheck(False, f"Missing permission {resource}:{action}")
        return PermissionCheck(True, f"Granted by {matched}", matched)

    def check_any(self, user_id: str, required: Iterable[tuple[str, str]]) -> bool:
        granted = self.resolve_permissions(user_id)
        return any(permission_matches(granted, r, a) is not None for r, a in required)

    def check_all(self, user_id: str, required: Iterable[tuple[str, str]]) -> bool:
        granted = self.resolve_permissions(user_id)
        return all(permission_matches(granted, r, a) is not None for r, a in required)

    def role_hierarchy(self, user_id: str) -> list[dict]:
        """Return the user's role chain, nearest first, for display."""
        user = self._store.get_by_id(user_id)
        if user is None:
            return []
        hierarchy = []
        for role_id in self.role_chain(user.role_id):
            role = self._store.get_role(role_id)
            if role is not None:
                hierarchy.append({"id": role.id, "name": role.name, "parent_role_id": role.parent_role_id})
        return hierarchy

    def permission_summary(self, user_id: str) -> dict:
        """Permissions grouped by resource, plus the role chain they came from."""
        permissions = self.resolve_permissions(user_id)
        by_resource: dict[str, list[str]] = {}
        for permission in sorted(permissions):
            resource, _, action = permission.partition(":")
            by_resource.setdefault(resource, []).append(action or "*")
        return {
            "user_id": user_id,
            "is_superuser": bool(permissions & FULL_ACCESS),
            "roles": self.role_hierarchy(user_id),
            "permissions": sorted(permissions),
            "by_resource": by_resource,
        }

    # ------------------------------------------------------------------
    # Organization scope
    # ------------------------------------------------------------------

    def validate_org_scope(self, user: User, target_org_id: str | None) -> bool:
        if not target_org_id or not user.organization_id:
            return False
        if user.organization_id == target_org_id:
            return True
        user_org = self._store.get_organization(user.organization_id)
        target_org = self._store.get_organization(target_org_id)
        if user_org is None or target_org is None:
            return False
        return path_contains(user_org.path, target_org.path)
