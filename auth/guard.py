"""
auth/guard.py -- Account security state machine.

States: ACTIVE, LOCKED, DISABLED.

  ACTIVE   --wrong credential, count < max-->   ACTIVE   (counter + 1)
  ACTIVE   --wrong credential, count == max-->  LOCKED   (locked_until = now + lockout)
  LOCKED   --login, now <  locked_until-->      LOCKED   (reject with minutes remaining)
  LOCKED   --login, now >= locked_until-->      ACTIVE   (counter 0), then the
                                                         credential check runs in
                                                         the same call
  ACTIVE   --correct credential-->              ACTIVE   (counter 0, new token pair)
  DISABLED --any login-->                       DISABLED (always reject)

Only set_status() -- an administrative action -- leaves DISABLED.

The failed-attempt increment and the lock transition are one atomic UPDATE in
the store (UserStore.record_failed_login), so concurrent wrong guesses cannot
overshoot the limit or skip the lock. The other transitions are conditional
UPDATEs that restate the state they expect, so no path writes back lockout
state from a User read earlier in the call.

Every transition emits an audit event through the AuditSink. Expected
outcomes come back as Rejection values; weak passwords and duplicate accounts
raise AccountError subclasses.
"""

from __future__ import annotations

import logging
import math
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy.exc import IntegrityError

from auth import totp
from auth.audit import AuditSink
from auth.errors import (
    AccountError,
    AuthFailure,
    DuplicateAccountError,
    PasswordPolicyError,
    Rejection,
    UnknownAccountError,
)
from auth.models import AccountStatus, User
from auth.passwords import hash_password, validate_complexity, verify_dummy, verify_password
from auth.rbac import PermissionResolver
from auth.store import UserStore
from auth.tokens import TokenMint, TokenPair, digest_token

logger = logging.getLogger("sentinel.auth")

DEFAULT_ROLE_ID = "ROLE-VIEWER"
DEFAULT_ORGANIZATION_ID = "ORG-DEFAULT"

RESET_MESSAGE = "If an account with that email exists, a password reset link has been sent."


def new_user_id() -> str:
    return "USR-" + secrets.token_hex(8).upper()


@dataclass(frozen=True)
class LoginSuccess:
    user: User
    access_token: str
    refresh_token: str
    expires_in: int
    permissions: frozenset[str]


@dataclass(frozen=True)
class ResetTicket:
    """Result of initiate_reset. token is None when no account matched."""

    message: str
    token: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class MfaEnrollment:
    secret: str
    otpauth_uri: str


class ResetNotifier(Protocol):
    def deliver(self, user: User, token: str, expires_at: datetime) -> None: ...


class LoggingResetNotifier:
    """Default notifier: records that a token exists. The token itself is never logged."""

    def deliver(self, user: User, token: str, expires_at: datetime) -> None:
        logger.info("Password reset token issued for %s (expires %s)", user.id, expires_at.isoformat())


class AccountGuard:
    """Login, refresh, reset, MFA, and status transitions for user accounts.

    Usage:
        guard = AccountGuard(store, mint, resolver, audit)
        result = guard.login("alice", "S3cure!Passw0rd", source_ip="10.0.0.7")
        if isinstance(result, Rejection):
            ...
    """

    def __init__(
        self,
        store: UserStore,
        mint: TokenMint,
        resolver: PermissionResolver,
        audit: AuditSink,
        max_login_attempts: int = 5,
        lockout_minutes: int = 15,
        reset_ttl_seconds: int = 3600,
        mfa_issuer: str = "Sentinel",
        notifier: ResetNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._mint = mint
        self._resolver = resolver
        self._audit = audit
        self._max_attempts = max_login_attempts
        self._lockout = timedelta(minutes=lockout_minutes)
        self._reset_ttl = timedelta(seconds=reset_ttl_seconds)
        self._mfa_issuer = mfa_issuer
        self._notifier = notifier or LoggingResetNotifier()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        role_id: str | None = None,
        organization_id: str | None = None,
        created_by: str | None = None,
        source_ip: str | None = None,
    ) -> User:
        """Create an ACTIVE account.

        Raises PasswordPolicyError for a weak password and DuplicateAccountError
        if the username or email is taken.
        """
        complexity = validate_complexity(password)
        if not complexity.valid:
            raise PasswordPolicyError(complexity.errors)
        if self._store.get_by_username(username) is not None:
            raise DuplicateAccountError("Username already exists.")
        if self._store.get_by_email(email) is not None:
            raise DuplicateAccountError("Email already registered.")

        user = User(
            id=new_user_id(),
            username=username,
            email=email,
            password_hash=hash_password(password),
            status=AccountStatus.ACTIVE,
            role_id=role_id or DEFAULT_ROLE_ID,
            organization_id=organization_id or DEFAULT_ORGANIZATION_ID,
            created_at=self._clock(),
        )
        try:
            self._store.create_user(user)
        except IntegrityError as exc:
            raise DuplicateAccountError("Username or email already exists.") from exc

        self._audit.record("USER_REGISTERED", created_by or user.id, source_ip, f"Registered {username}")
        return user

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        username: str,
        password: str,
        source_ip: str | None = None,
        user_agent: str | None = None,
        mfa_code: str | None = None,
    ) -> LoginSuccess | Rejection:
        user = self._store.get_by_username(username)
        if user is None:
            verify_dummy(password)
            self._audit.record("LOGIN_FAILED", username, source_ip, "Unknown username")
            return Rejection(AuthFailure.INVALID_CREDENTIALS)

        now = self._clock()

        if user.status == AccountStatus.LOCKED:
            if user.locked_until is not None and now < user.locked_until:
                return self._blocked(user, now, source_ip)
            if self._store.unlock_if_expired(user.id, now):
                self._audit.record("ACCOUNT_UNLOCKED", user.id, source_ip, "Lockout expired")
            user = self._store.get_by_id(user.id) or user
            if user.status == AccountStatus.LOCKED:
                return self._blocked(user, now, source_ip)

        if user.status == AccountStatus.DISABLED:
            self._audit.record("LOGIN_BLOCKED", user.id, source_ip, "Account disabled")
            return Rejection(AuthFailure.ACCOUNT_DISABLED)

        if not verify_password(password, user.password_hash):
            return self._register_failure(user, source_ip, "Invalid password")

        if user.mfa_enabled:
            if not mfa_code:
                return Rejection(AuthFailure.MFA_REQUIRED)
            step = totp.matching_step(user.mfa_secret or "", mfa_code, now.timestamp())
            if step is None:
                return self._register_failure(user, source_ip, "Invalid MFA code")
            if not self._store.claim_mfa_step(user.id, step):
                return self._register_failure(user, source_ip, "Reused MFA code")

        pair = self._mint.issue_pair(user)
        refresh_hash = digest_token(pair.refresh_token)
        if not self._store.record_login_success(
            user.id, now, source_ip, user_agent, refresh_hash, pair.refresh_expires_at
        ):
            # Locked or disabled after the password check.
            current = self._store.get_by_id(user.id)
            if current is not None and current.status == AccountStatus.LOCKED:
                return self._blocked(current, now, source_ip)
            self._audit.record("LOGIN_BLOCKED", user.id, source_ip, "Account no longer active")
            return Rejection(AuthFailure.ACCOUNT_DISABLED)

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login = now
        user.last_login_ip = source_ip
        user.last_login_user_agent = user_agent
        user.refresh_token_hash = refresh_hash
        user.refresh_token_expires = pair.refresh_expires_at

        permissions = self._resolver.resolve_permissions(user.id)
        self._audit.record("LOGIN_SUCCESS", user.id, source_ip, user_agent or "")
        return LoginSuccess(
            user=user,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            permissions=permissions,
        )

    def _blocked(self, user: User, now: datetime, source_ip: str | None) -> Rejection:
        minutes = _minutes_until(now, user.locked_until) if user.locked_until else 1
        self._audit.record("LOGIN_BLOCKED", user.id, source_ip, f"Account locked, {minutes} min remaining")
        return _locked(minutes)

    def _register_failure(self, user: User, source_ip: str | None, context: str) -> Rejection:
        now = self._clock()
        updated = self._store.record_failed_login(user.id, self._max_attempts, now + self._lockout)
        if updated is not None and updated.status == AccountStatus.LOCKED:
            minutes = _minutes_until(now, updated.locked_until) if updated.locked_until else 0
            self._audit.record(
                "ACCOUNT_LOCKED",
                user.id,
                source_ip,
                f"Locked after {updated.failed_login_attempts} failed attempts",
            )
            return _locked(minutes)
        if updated is not None and updated.status == AccountStatus.DISABLED:
            self._audit.record("LOGIN_BLOCKED", user.id, source_ip, "Account disabled")
            return Rejection(AuthFailure.ACCOUNT_DISABLED)
        attempts = updated.failed_login_attempts if updated is not None else user.failed_login_attempts + 1
        self._audit.record("LOGIN_FAILED", user.id, source_ip, f"{context} (attempt {attempts})")
        return Rejection(AuthFailure.INVALID_CREDENTIALS)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, source_ip: str | None = None) -> TokenPair | Rejection:
        """Exchange a refresh token for a new pair. The old refresh token stops working."""
        if not refresh_token:
            return Rejection(AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED)
        current_hash = digest_token(refresh_token)
        user = self._store.get_by_refresh_token_hash(current_hash)
        if user is None:
            return Rejection(AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED)

        now = self._clock()
        if user.refresh_token_expires is None or now >= user.refresh_token_expires:
            self._store.replace_refresh_token(current_hash, None, None, require_active=False)
            return Rejection(AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED)
        if not user.is_active:
            return Rejection(AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED)

        pair = self._mint.issue_pair(user)
        new_hash = digest_token(pair.refresh_token)
        if not self._store.replace_refresh_token(current_hash, new_hash, pair.refresh_expires_at):
            return Rejection(AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED)
        self._audit.record("TOKEN_REFRESHED", user.id, source_ip, "")
        return pair

    def logout(self, user_id: str, source_ip: str | None = None) -> None:
        user = self._store.get_by_id(user_id)
        if user is None:
            return
        self._store.set_refresh_token(user.id, None, None)
        self._audit.record("LOGOUT", user.id, source_ip, "")

    def validate_session(self, user_id: str, access_token: str) -> bool:
        """True if the token is valid, belongs to user_id, and the account is ACTIVE."""
        check = self._mint.verify_access_token(access_token)
        if not check.valid or check.claims.get("userId") != user_id:
            return False
        user = self._store.get_by_id(user_id)
        return user is not None and user.is_active

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def initiate_reset(self, email: str, source_ip: str | None = None) -> ResetTicket:
        """Start a reset. The message is identical whether or not the email exists."""
        user = self._store.get_by_email(email)
        if user is None:
            self._audit.record("PASSWORD_RESET_REQUEST", email, source_ip, "No matching account")
            return ResetTicket(message=RESET_MESSAGE)

        token = secrets.token_hex(32)
        expires_at = self._clock() + self._reset_ttl
        self._store.set_reset_token(user.id, digest_token(token), expires_at)
        self._notifier.deliver(user, token, expires_at)
        self._audit.record("PASSWORD_RESET_REQUEST", user.id, source_ip, "Reset token issued")
        return ResetTicket(message=RESET_MESSAGE, token=token, expires_at=expires_at)

    def complete_reset(self, token: str, new_password: str, source_ip: str | None = None) -> Rejection | None:
        """Set a new password from a reset token. Returns None on success."""
        complexity = validate_complexity(new_password)
        if not complexity.valid:
            raise PasswordPolicyError(complexity.errors)
        if not token:
            return Rejection(AuthFailure.RESET_TOKEN_INVALID_OR_EXPIRED)

        token_hash = digest_token(token)
        user = self._store.get_by_reset_token_hash(token_hash)
        if user is None:
            return Rejection(AuthFailure.RESET_TOKEN_INVALID_OR_EXPIRED)
        if user.password_reset_expires is None or self._clock() >= user.password_reset_expires:
            self._store.discard_reset_token(token_hash)
            return Rejection(AuthFailure.RESET_TOKEN_INVALID_OR_EXPIRED)

        if not self._store.complete_password_reset(token_hash, hash_password(new_password)):
            return Rejection(AuthFailure.RESET_TOKEN_INVALID_OR_EXPIRED)
        self._audit.record("PASSWORD_RESET_SUCCESS", user.id, source_ip, "")
        return None

    # ------------------------------------------------------------------
    # Profile and MFA
    # ------------------------------------------------------------------

    def update_profile(
        self,
        user_id: str,
        email: str | None = None,
        current_password: str | None = None,
        new_password: str | None = None,
        source_ip: str | None = None,
    ) -> User | Rejection:
        user = self._require_user(user_id)

        if new_password is not None:
            if not verify_password(current_password or "", user.password_hash):
                self._audit.record("PASSWORD_CHANGE_FAILED", user.id, source_ip, "Current password incorrect")
                return Rejection(AuthFailure.INVALID_CREDENTIALS, "Current password is incorrect.")
            complexity = validate_complexity(new_password)
            if not complexity.valid:
                raise PasswordPolicyError(complexity.errors)

        email_changed = email is not None and email.lower() != user.email.lower()
        if email_changed:
            existing = self._store.get_by_email(email)
            if existing is not None and existing.id != user.id:
                raise DuplicateAccountError("Email already registered.")

        if new_password is not None:
            self._store.set_password(user.id, hash_password(new_password))
            self._audit.record("PASSWORD_CHANGED", user.id, source_ip, "")
        if email_changed:
            try:
                self._store.set_email(user.id, email)
            except IntegrityError as exc:
                raise DuplicateAccountError("Email already registered.") from exc
            self._audit.record("EMAIL_CHANGED", user.id, source_ip, "")
        return self._require_user(user.id)

    def enable_mfa(self, user_id: str, source_ip: str | None = None) -> MfaEnrollment:
        user = self._require_user(user_id)
        secret = totp.generate_secret()
        self._store.set_mfa(user.id, True, secret)
        self._audit.record("MFA_ENABLED", user.id, source_ip, "")
        return MfaEnrollment(secret=secret, otpauth_uri=totp.provisioning_uri(secret, user.username, self._mfa_issuer))

    def disable_mfa(self, user_id: str, password: str, source_ip: str | None = None) -> Rejection | None:
        user = self._require_user(user_id)
        if not verify_password(password, user.password_hash):
            return Rejection(AuthFailure.INVALID_CREDENTIALS, "Password is incorrect.")
        self._store.set_mfa(user.id, False, None)
        self._audit.record("MFA_DISABLED", user.id, source_ip, "")
        return None

    # ------------------------------------------------------------------
    # Administrative status changes
    # ------------------------------------------------------------------

    def set_status(
        self, user_id: str, status: AccountStatus, actor: str, source_ip: str | None = None
    ) -> User:
        """Disable, re-enable, or unlock an account on behalf of an administrator."""
        status = AccountStatus(status)
        if status == AccountStatus.LOCKED:
            raise AccountError("Accounts are locked only by failed login attempts.")
        previous = self._require_user(user_id).status

        if not self._store.set_status(user_id, status):
            raise UnknownAccountError("User not found.")
        if status == AccountStatus.DISABLED:
            kind = "ACCOUNT_DISABLED"
        else:
            kind = "ACCOUNT_UNLOCKED" if previous == AccountStatus.LOCKED else "ACCOUNT_ENABLED"

        self._resolver.invalidate_user(user_id)
        self._audit.record(kind, user_id, source_ip, f"{previous.value} -> {status.value} by {actor}")
        return self._require_user(user_id)

    def _require_user(self, user_id: str) -> User:
        user = self._store.get_by_id(user_id)
        if user is None:
            raise UnknownAccountError("User not found.")
        return user


def _minutes_until(now: datetime, deadline: datetime) -> int:
    return max(1, math.ceil((deadline - now).total_seconds() / 60))


def _locked(minutes: int) -> Rejection:
    return Rejection(
        AuthFailure.ACCOUNT_LOCKED,
        f"Account locked. Try again in {minutes} minutes.",
        minutes_remaining=minutes,
    )
