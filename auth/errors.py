"""
auth/errors.py -- Expected authentication outcomes and account policy errors.

Two kinds of "no":

  Rejection -- an expected, user-facing authentication/authorization outcome
      (wrong password, locked account, expired token, missing scope...). These
      are returned as values, never raised, so callers branch on
      Rejection.reason instead of parsing exception messages.

  AccountError -- an input-policy violation on an account operation (weak
      password, duplicate username). Raised, because the caller supplied
      something invalid; the route layer maps .code to a 4xx response.

Anything else (store unreachable, serialization failure) is an unexpected fault
and propagates as the original exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuthFailure(str, Enum):
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    MFA_REQUIRED = "MFA_REQUIRED"
    TOKEN_INVALID_OR_EXPIRED = "TOKEN_INVALID_OR_EXPIRED"
    REFRESH_TOKEN_INVALID_OR_EXPIRED = "REFRESH_TOKEN_INVALID_OR_EXPIRED"
    RESET_TOKEN_INVALID_OR_EXPIRED = "RESET_TOKEN_INVALID_OR_EXPIRED"
    API_KEY_NOT_FOUND = "API_KEY_NOT_FOUND"
    API_KEY_REVOKED = "API_KEY_REVOKED"
    API_KEY_EXPIRED = "API_KEY_EXPIRED"
    API_KEY_IP_BLOCKED = "API_KEY_IP_BLOCKED"
    API_KEY_RATE_LIMITED = "API_KEY_RATE_LIMITED"
    INSUFFICIENT_SCOPE = "INSUFFICIENT_SCOPE"
    INSUFFICIENT_PRIVILEGE = "INSUFFICIENT_PRIVILEGE"
    NO_CREDENTIALS = "NO_CREDENTIALS"


_STATUS_CODES: dict[AuthFailure, int] = {
    AuthFailure.INVALID_CREDENTIALS: 401,
    AuthFailure.ACCOUNT_LOCKED: 423,
    AuthFailure.ACCOUNT_DISABLED: 403,
    AuthFailure.MFA_REQUIRED: 403,
    AuthFailure.TOKEN_INVALID_OR_EXPIRED: 401,
    AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED: 401,
    AuthFailure.RESET_TOKEN_INVALID_OR_EXPIRED: 400,
    AuthFailure.API_KEY_NOT_FOUND: 401,
    AuthFailure.API_KEY_REVOKED: 401,
    AuthFailure.API_KEY_EXPIRED: 401,
    AuthFailure.API_KEY_IP_BLOCKED: 403,
    AuthFailure.API_KEY_RATE_LIMITED: 429,
    AuthFailure.INSUFFICIENT_SCOPE: 403,
    AuthFailure.INSUFFICIENT_PRIVILEGE: 403,
    AuthFailure.NO_CREDENTIALS: 401,
}

_DEFAULT_MESSAGES: dict[AuthFailure, str] = {
    AuthFailure.INVALID_CREDENTIALS: "Invalid credentials.",
    AuthFailure.ACCOUNT_LOCKED: "Account locked.",
    AuthFailure.ACCOUNT_DISABLED: "Account is disabled.",
    AuthFailure.MFA_REQUIRED: "Multi-factor authentication is required.",
    AuthFailure.TOKEN_INVALID_OR_EXPIRED: "Token is invalid or expired.",
    AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED: "Refresh token is invalid or expired.",
    AuthFailure.RESET_TOKEN_INVALID_OR_EXPIRED: "Invalid or expired reset token.",
    AuthFailure.API_KEY_NOT_FOUND: "Invalid API key.",
    AuthFailure.API_KEY_REVOKED: "API key has been revoked.",
    AuthFailure.API_KEY_EXPIRED: "API key has expired.",
    AuthFailure.API_KEY_IP_BLOCKED: "API key not authorized from this IP address.",
    AuthFailure.API_KEY_RATE_LIMITED: "API key rate limit exceeded.",
    AuthFailure.INSUFFICIENT_SCOPE: "Insufficient API key scope.",
    AuthFailure.INSUFFICIENT_PRIVILEGE: "Insufficient privileges.",
    AuthFailure.NO_CREDENTIALS: "Authentication required.",
}


@dataclass(frozen=True)
class Rejection:
    """A typed "no" with enough context for the transport layer.

    minutes_remaining is only set for ACCOUNT_LOCKED. retry_after (seconds) is
    only set for API_KEY_RATE_LIMITED.
    """

    reason: AuthFailure
    message: str = ""
    minutes_remaining: int | None = None
    retry_after: int | None = None

    def __post_init__(self) -> None:
        if not self.message:
            object.__setattr__(self, "message", _DEFAULT_MESSAGES[self.reason])

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.reason]

    @property
    def code(self) -> str:
        return self.reason.value.lower()


class AccountError(Exception):
    """Base class for account policy violations. .code is machine-readable."""

    code = "account_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class PasswordPolicyError(AccountError):
    code = "weak_password"

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Password validation failed: " + ", ".join(errors))
        self.errors = errors


class DuplicateAccountError(AccountError):
    code = "conflict"


class UnknownAccountError(AccountError):
    code = "not_found"
