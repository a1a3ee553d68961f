"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
UserStore is the repository for users, roles, permissions, and organizations;
ApiKeyStore is the repository for API keys. _row_to_* functions are the
mappers. Service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Counters that concurrent requests can race on are updated with a single
  conditional UPDATE (record_failed_login, record_usage), so two requests
  cannot both read the old value and both pass a check that should have tripped.

  Lockout state (status, failed_login_attempts, locked_until) and the TOTP
  replay marker are never written from a previously read User. save() leaves
  them alone; each transition is its own UPDATE whose WHERE clause restates
  the state it expects, and reports through its rowcount whether it applied.

Timestamps are stored as ISO 8601 UTC strings and mapped to aware datetimes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import AccountStatus, ApiKey, ApiKeyStatus, Organization, Permission, Role, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),
    Column("status", String(16), nullable=False, server_default=AccountStatus.ACTIVE.value),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("refresh_token_hash", String(64), unique=True),
    Column("refresh_token_expires", String(32)),
    Column("password_reset_token_hash", String(64), unique=True),
    Column("password_reset_expires", String(32)),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", String(64)),
    Column("mfa_last_step", Integer),
    Column("role_id", String(64)),
    Column("organization_id", String(64)),
    Column("last_login", String(32)),
    Column("last_login_ip", String(64)),
    Column("last_login_user_agent", Text),
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("parent_role_id", String(64)),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("resource", String(64), nullable=False),
    Column("action", String(64), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    UniqueConstraint("resource", "action", name="uq_permission_resource_action"),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(64), nullable=False),
    Column("permission_id", String(64), nullable=False),
    PrimaryKeyConstraint("role_id", "permission_id"),
)

_organizations = Table(
    "organizations",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("parent_id", String(64)),
    Column("path", Text, nullable=False),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("key_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("key_prefix", String(16), nullable=False),  # display only
    Column("name", String(100), nullable=False),
    Column("user_id", String(32), nullable=False),
    Column("organization_id", String(64)),
    Column("scopes", Text, nullable=False),  # JSON list
    Column("status", String(16), nullable=False, server_default=ApiKeyStatus.ACTIVE.value),
    Column("expires_at", String(32)),
    Column("ip_allowlist", Text, nullable=False, server_default="[]"),  # JSON list
    Column("rate_limit", Integer, nullable=False),
    Column("usage_count", Integer, nullable=False, server_default="0"),
    Column("last_used_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("revoked_by", String(64)),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# User / role / organization repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Role, Permission, and Organization entities.

    Usage:
        store = UserStore("sqlite:///:memory:")
        store.create_user(User(id="USR-1", username="alice", email="a@example.com"))
        user = store.get_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)
        self._role_listeners: list[Callable[[], None]] = []

    def on_roles_changed(self, callback: Callable[[], None]) -> None:
        """Register `callback` to run after any role or role-permission write."""
        self._role_listeners.append(callback)

    def _roles_changed(self) -> None:
        for callback in list(self._role_listeners):
            callback()

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the id, username, or email
        already exists.
        """
        values = _user_values(user)
        values["created_at"] = _to_iso(user.created_at) or _now_iso()
        with self.engine.connect() as conn:
            conn.execute(_users.insert().values(id=user.id, **values))
            conn.commit()
        return user.id

    def save(self, user: User) -> None:
        """Upsert profile and credential fields of `user`, inserting if absent.

        An existing row keeps its lockout state and TOTP replay marker; only
        the insert takes them from `user`.
        """
        values = _user_values(user)
        updatable = {k: v for k, v in values.items() if k not in _TRANSITION_COLUMNS}
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user.id).values(**updatable))
            if result.rowcount == 0:
                values["created_at"] = _to_iso(user.created_at) or _now_iso()
                conn.execute(_users.insert().values(id=user.id, **values))
            conn.commit()

    def _update_user(self, clause, **values) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(clause).values(**values))
            conn.commit()
        return result.rowcount > 0

    def get_by_id(self, user_id: str) -> User | None:
        return self._get_user_where(_users.c.id == user_id)

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive)."""
        return self._get_user_where(_users.c.username == username)

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive)."""
        return self._get_user_where(func.lower(_users.c.email) == email.lower())

    def get_by_refresh_token_hash(self, token_hash: str) -> User | None:
        return self._get_user_where(_users.c.refresh_token_hash == token_hash)

    def get_by_reset_token_hash(self, token_hash: str) -> User | None:
        return self._get_user_where(_users.c.password_reset_token_hash == token_hash)

    def _get_user_where(self, clause) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(clause)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def record_failed_login(self, user_id: str, max_attempts: int, locked_until: datetime) -> User | None:
        """Atomically count one wrong credential; lock when the count reaches max.

        A single UPDATE increments the counter and flips status/locked_until in
        the same statement, and only while the account is ACTIVE. Once locked,
        further concurrent failures do not move the counter past max_attempts.

        Returns the user as it stands after the update.
        """
        reaches_max = _users.c.failed_login_attempts + 1 >= max_attempts
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.status == AccountStatus.ACTIVE.value))
                .values(
                    failed_login_attempts=_users.c.failed_login_attempts + 1,
                    status=case((reaches_max, AccountStatus.LOCKED.value), else_=_users.c.status),
                    locked_until=case((reaches_max, _to_iso(locked_until)), else_=_users.c.locked_until),
                )
            )
            conn.commit()
        return self.get_by_id(user_id)

    def unlock_if_expired(self, user_id: str, now: datetime) -> bool:
        """LOCKED -> ACTIVE with the counter cleared, only once locked_until has passed."""
        expired = _users.c.locked_until.is_(None) | (_users.c.locked_until <= _to_iso(now))
        return self._update_user(
            (_users.c.id == user_id) & (_users.c.status == AccountStatus.LOCKED.value) & expired,
            status=AccountStatus.ACTIVE.value,
            failed_login_attempts=0,
            locked_until=None,
        )

    def record_login_success(
        self,
        user_id: str,
        at: datetime,
        source_ip: str | None,
        user_agent: str | None,
        refresh_token_hash: str,
        refresh_token_expires: datetime,
    ) -> bool:
        """Clear the counter, stamp the login, and store the new refresh token.

        Applies only while the account is still ACTIVE, so a lock taken by
        concurrent failures after the password check stands.
        """
        return self._update_user(
            (_users.c.id == user_id) & (_users.c.status == AccountStatus.ACTIVE.value),
            failed_login_attempts=0,
            locked_until=None,
            last_login=_to_iso(at),
            last_login_ip=source_ip,
            last_login_user_agent=user_agent,
            refresh_token_hash=refresh_token_hash,
            refresh_token_expires=_to_iso(refresh_token_expires),
        )

    def claim_mfa_step(self, user_id: str, step: int) -> bool:
        """Record `step` as the last accepted TOTP step. False if it was already used."""
        fresh = _users.c.mfa_last_step.is_(None) | (_users.c.mfa_last_step < step)
        return self._update_user((_users.c.id == user_id) & fresh, mfa_last_step=step)

    def set_refresh_token(self, user_id: str, token_hash: str | None, expires: datetime | None) -> None:
        self._update_user(_users.c.id == user_id, refresh_token_hash=token_hash, refresh_token_expires=_to_iso(expires))

    def replace_refresh_token(
        self, current_hash: str, new_hash: str | None, expires: datetime | None, require_active: bool = True
    ) -> bool:
        """Swap the refresh token only if `current_hash` is still the stored one.

        Two refreshes racing on the same token cannot both rotate it.
        """
        clause = _users.c.refresh_token_hash == current_hash
        if require_active:
            clause = clause & (_users.c.status == AccountStatus.ACTIVE.value)
        return self._update_user(clause, refresh_token_hash=new_hash, refresh_token_expires=_to_iso(expires))

    def set_reset_token(self, user_id: str, token_hash: str, expires: datetime) -> None:
        self._update_user(
            _users.c.id == user_id, password_reset_token_hash=token_hash, password_reset_expires=_to_iso(expires)
        )

    def discard_reset_token(self, token_hash: str) -> None:
        self._update_user(
            _users.c.password_reset_token_hash == token_hash, password_reset_token_hash=None, password_reset_expires=None
        )

    def complete_password_reset(self, token_hash: str, password_hash: str) -> bool:
        """Consume a reset token: new password, counter and lock cleared, sessions revoked.

        LOCKED becomes ACTIVE; DISABLED stays DISABLED. Returns False if the
        token was already consumed or replaced.
        """
        return self._update_user(
            _users.c.password_reset_token_hash == token_hash,
            password_hash=password_hash,
            password_reset_token_hash=None,
            password_reset_expires=None,
            failed_login_attempts=0,
            locked_until=None,
            refresh_token_hash=None,
            refresh_token_expires=None,
            status=case(
                (_users.c.status == AccountStatus.LOCKED.value, AccountStatus.ACTIVE.value),
                else_=_users.c.status,
            ),
        )

    def set_password(self, user_id: str, password_hash: str) -> None:
        self._update_user(_users.c.id == user_id, password_hash=password_hash)

    def set_email(self, user_id: str, email: str) -> None:
        """Raises sqlalchemy.exc.IntegrityError if another account holds the email."""
        self._update_user(_users.c.id == user_id, email=email)

    def set_mfa(self, user_id: str, enabled: bool, secret: str | None) -> None:
        """Enroll or remove a TOTP secret. The replay marker starts over with each secret."""
        self._update_user(_users.c.id == user_id, mfa_enabled=1 if enabled else 0, mfa_secret=secret, mfa_last_step=None)

    def set_status(self, user_id: str, status: AccountStatus) -> bool:
        """Administrative status change in one statement.

        DISABLED also revokes the refresh token. ACTIVE also clears the
        counter and any lock.
        """
        status = AccountStatus(status)
        values: dict = {"status": status.value}
        if status == AccountStatus.DISABLED:
            values.update(refresh_token_hash=None, refresh_token_expires=None)
        elif status == AccountStatus.ACTIVE:
            values.update(failed_login_attempts=0, locked_until=None)
        return self._update_user(_users.c.id == user_id, **values)

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> str:
        """Insert a permission, returning its id. Existing (resource, action) pairs are reused."""
        with self.engine.connect() as conn:
            existing = conn.execute(
                select(_permissions.c.id).where(
                    (_permissions.c.resource == permission.resource) & (_permissions.c.action == permission.action)
                )
            ).scalar()
            if existing is not None:
                return existing
            perm_id = permission.id or f"perm-{permission.resource}-{permission.action}".replace("*", "all")
            conn.execute(
                _permissions.insert().values(
                    id=perm_id,
                    resource=permission.resource,
                    action=permission.action,
                    description=permission.description,
                )
            )
            conn.commit()
        return perm_id

    def create_role(self, role: Role) -> str:
        """Insert a role and attach its permissions (created on demand)."""
        with self.engine.connect() as conn:
            conn.execute(
                _roles.insert().values(
                    id=role.id,
                    name=role.name,
                    description=role.description,
                    parent_role_id=role.parent_role_id,
                )
            )
            conn.commit()
        for permission in role.permissions:
            self.attach_permission(role.id, permission)
        self._roles_changed()
        return role.id

    def attach_permission(self, role_id: str, permission: Permission) -> None:
        perm_id = self.create_permission(permission)
        with self.engine.connect() as conn:
            already = conn.execute(
                select(func.count())
                .select_from(_role_permissions)
                .where((_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == perm_id))
            ).scalar()
            if already:
                return
            conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=perm_id))
            conn.commit()
        self._roles_changed()

    def detach_permission(self, role_id: str, permission: Permission) -> bool:
        with self.engine.connect() as conn:
            perm_id = conn.execute(
                select(_permissions.c.id).where(
                    (_permissions.c.resource == permission.resource) & (_permissions.c.action == permission.action)
                )
            ).scalar()
            if perm_id is None:
                return False
            result = conn.execute(
                _role_permissions.delete().where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == perm_id)
                )
            )
            conn.commit()
        if result.rowcount > 0:
            self._roles_changed()
        return result.rowcount > 0

    def set_parent_role(self, role_id: str, parent_role_id: str | None) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(parent_role_id=parent_role_id))
            conn.commit()
        if result.rowcount > 0:
            self._roles_changed()
        return result.rowcount > 0

    def get_role(self, role_id: str) -> Role | None:
        """Return the role with its directly attached permissions, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
            if row is None:
                return None
            perm_rows = conn.execute(
                select(_permissions)
                .join(_role_permissions, _role_permissions.c.permission_id == _permissions.c.id)
                .where(_role_permissions.c.role_id == role_id)
                .order_by(_permissions.c.resource, _permissions.c.action)
            ).fetchall()
        return Role(
            id=row.id,
            name=row.name,
            description=row.description or "",
            parent_role_id=row.parent_role_id,
            permissions=[_row_to_permission(p) for p in perm_rows],
        )

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            ids = conn.execute(select(_roles.c.id).order_by(_roles.c.id)).scalars().all()
        return [role for role in (self.get_role(role_id) for role_id in ids) if role is not None]

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, org: Organization) -> str:
        with self.engine.connect() as conn:
            conn.execute(_organizations.insert().values(id=org.id, name=org.name, parent_id=org.parent_id, path=org.path))
            conn.commit()
        return org.id

    def get_organization(self, org_id: str) -> Organization | None:
        with self.engine.connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == org_id)).fetchone()
        if row is None:
            return None
        return Organization(id=row.id, name=row.name, parent_id=row.parent_id, path=row.path)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# API key repository
# ---------------------------------------------------------------------------


class ApiKeyStore:
    """Repository for ApiKey records. Lookup is by key hash via a UNIQUE index."""

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def create(self, api_key: ApiKey) -> str:
        with self.engine.connect() as conn:
            conn.execute(
                _api_keys.insert().values(
                    id=api_key.id,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    name=api_key.name,
                    user_id=api_key.user_id,
                    organization_id=api_key.organization_id,
                    scopes=json.dumps(api_key.scopes),
                    status=api_key.status.value,
                    expires_at=_to_iso(api_key.expires_at),
                    ip_allowlist=json.dumps(api_key.ip_allowlist),
                    rate_limit=api_key.rate_limit,
                    usage_count=api_key.usage_count,
                    created_at=_to_iso(api_key.created_at) or _now_iso(),
                )
            )
            conn.commit()
        return api_key.id

    def get_by_hash(self, key_hash: str) -> ApiKey | None:
        """Return the key whatever its status -- callers decide what status means."""
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def get_by_id(self, key_id: str) -> ApiKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_for_user(self, user_id: str) -> list[ApiKey]:
        """Return all keys for a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select().where(_api_keys.c.user_id == user_id).order_by(_api_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def mark_revoked(self, key_hash: str, revoked_by: str, revoked_at: datetime) -> bool:
        """Flip an ACTIVE or EXPIRED key to REVOKED. Returns False if absent or already revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update()
                .where((_api_keys.c.key_hash == key_hash) & (_api_keys.c.status != ApiKeyStatus.REVOKED.value))
                .values(status=ApiKeyStatus.REVOKED.value, revoked_by=revoked_by, revoked_at=_to_iso(revoked_at))
            )
            conn.commit()
        return result.rowcount > 0

    def mark_expired(self, key_hash: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _api_keys.update()
                .where((_api_keys.c.key_hash == key_hash) & (_api_keys.c.status == ApiKeyStatus.ACTIVE.value))
                .values(status=ApiKeyStatus.EXPIRED.value)
            )
            conn.commit()

    def record_usage(self, key_hash: str, used_at: datetime) -> None:
        """Atomically bump usage_count and stamp last_used_at."""
        with self.engine.connect() as conn:
            conn.execute(
                _api_keys.update()
                .where(_api_keys.c.key_hash == key_hash)
                .values(usage_count=_api_keys.c.usage_count + 1, last_used_at=_to_iso(used_at))
            )
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


# Written only by UserStore's conditional transitions, never by save().
_TRANSITION_COLUMNS = frozenset({"status", "failed_login_attempts", "locked_until", "mfa_last_step"})


def _user_values(user: User) -> dict:
    return {
        "username": user.username,
        "email": user.email,
        "password_hash": user.password_hash,
        "status": AccountStatus(user.status).value,
        "failed_login_attempts": user.failed_login_attempts,
        "locked_until": _to_iso(user.locked_until),
        "refresh_token_hash": user.refresh_token_hash,
        "refresh_token_expires": _to_iso(user.refresh_token_expires),
        "password_reset_token_hash": user.password_reset_token_hash,
        "password_reset_expires": _to_iso(user.password_reset_expires),
        "mfa_enabled": 1 if user.mfa_enabled else 0,
        "mfa_secret": user.mfa_secret,
        "mfa_last_step": user.mfa_last_step,
        "role_id": user.role_id,
        "organization_id": user.organization_id,
        "last_login": _to_iso(user.last_login),
        "last_login_ip": user.last_login_ip,
        "last_login_user_agent": user.last_login_user_agent,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        status=AccountStatus(row.status),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=_from_iso(row.locked_until),
        refresh_token_hash=row.refresh_token_hash,
        refresh_token_expires=_from_iso(row.refresh_token_expires),
        password_reset_token_hash=row.password_reset_token_hash,
        password_reset_expires=_from_iso(row.password_reset_expires),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        mfa_last_step=row.mfa_last_step,
        role_id=row.role_id,
        organization_id=row.organization_id,
        last_login=_from_iso(row.last_login),
        last_login_ip=row.last_login_ip,
        last_login_user_agent=row.last_login_user_agent,
        created_at=_from_iso(row.created_at),
    )


def _row_to_permission(row) -> Permission:
    return Permission(id=row.id, resource=row.resource, action=row.action, description=row.description or "")


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        name=row.name,
        user_id=row.user_id,
        organization_id=row.organization_id,
        scopes=json.loads(row.scopes),
        status=ApiKeyStatus(row.status),
        expires_at=_from_iso(row.expires_at),
        ip_allowlist=json.loads(row.ip_allowlist or "[]"),
        rate_limit=row.rate_limit,
        usage_count=row.usage_count,
        last_used_at=_from_iso(row.last_used_at),
        created_at=_from_iso(row.created_at),
        revoked_at=_from_iso(row.revoked_at),
        revoked_by=row.revoked_by,
    )
