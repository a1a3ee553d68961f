"""
auth/tokens.py -- Bearer access tokens, refresh tokens, and token digests.

Security design decisions:
  Access tokens: three base64url segments, header.claims.signature, signed
       with HMAC-SHA256 under SECRET_KEY (python-jose, HS256). Claims carry
       userId, username, roleId, organizationId plus iat/exp as whole epoch
       seconds. A token is valid only while now < exp.

  Verification never raises. Internally a failure is one of MALFORMED_TOKEN,
       INVALID_SIGNATURE, TOKEN_EXPIRED (logged for operators); externally all
       three collapse into TOKEN_INVALID_OR_EXPIRED at the gate.

  Expiry is checked here against an injectable clock rather than by jose's
       own exp validation, so lockout/expiry behavior is testable without
       sleeping and agrees with the rest of the core on what "now" is.

  Refresh tokens: 64 random bytes, hex. Opaque -- no embedded claims. They are
       lookup keys into the user record, where only their SHA-256 digest is
       stored (digest_token), the same way reset tokens are stored.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from jose import jws, jwt
from jose.exceptions import JWSError

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("sentinel.tokens")

_ALGORITHM = "HS256"
_DEFAULT_DURATION = 3600

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_duration(value: str) -> int:
    """Convert "30s" / "15m" / "1h" / "7d" to seconds.

    An unknown suffix or a non-numeric amount falls back to one hour.
    """
    value = (value or "").strip()
    unit = value[-1:].lower()
    amount = value[:-1]
    if unit not in _UNIT_SECONDS or not amount.isdigit():
        return _DEFAULT_DURATION
    return int(amount) * _UNIT_SECONDS[unit]


def digest_token(raw: str) -> str:
    """SHA-256 hex digest used to store refresh and reset tokens at rest."""
    return hashlib.sha256(raw.encode("utf-8", "surrogatepass")).hexdigest()


def access_claims(user: User) -> dict:
    """Identity claims carried by every access token."""
    return {
        "userId": user.id,
        "username": user.username,
        "roleId": user.role_id,
        "organizationId": user.organization_id,
    }


class TokenFailure(str, Enum):
    MALFORMED_TOKEN = "MALFORMED_TOKEN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"


@dataclass(frozen=True)
class TokenCheck:
    claims: dict | None = None
    failure: TokenFailure | None = None

    @property
    def valid(self) -> bool:
        return self.failure is None and self.claims is not None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    refresh_expires_at: datetime


class TokenMint:
    """Mints and verifies access tokens and mints refresh tokens.

    Usage:
        mint = TokenMint(settings.secret_key, "1h", "7d")
        token = mint.mint_access_token(access_claims(user))
        check = mint.verify_access_token(token)
        if check.valid:
            user_id = check.claims["userId"]
    """

    def __init__(
        self,
        secret_key: str,
        access_expiry: str = "1h",
        refresh_expiry: str = "7d",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenMint requires a non-empty secret key.")
        self._secret_key = secret_key
        self._access_ttl = parse_duration(access_expiry)
        self._refresh_ttl = parse_duration(refresh_expiry)
        self._clock = clock or _utcnow

    @property
    def access_ttl(self) -> int:
        return self._access_ttl

    @property
    def refresh_ttl(self) -> int:
        return self._refresh_ttl

    def _now_epoch(self) -> int:
        return int(self._clock().timestamp())

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def mint_access_token(self, claims: dict, ttl_seconds: int | None = None) -> str:
        """Sign `claims` plus iat/exp into a three-segment bearer token.

        ttl_seconds overrides the configured access lifetime; it must be positive.
        """
        ttl = self._access_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive.")
        issued_at = self._now_epoch()
        payload = {**claims, "iat": issued_at, "exp": issued_at + ttl}
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify_access_token(self, token: str) -> TokenCheck:
        """Return the verified claims, or the reason the token is unusable."""
        if not isinstance(token, str) or token.count(".") != 2:
            return self._fail(TokenFailure.MALFORMED_TOKEN)
        # Compact JWS is base64url, so anything outside ASCII is malformed.
        try:
            token.encode("ascii")
        except UnicodeEncodeError:
            return self._fail(TokenFailure.MALFORMED_TOKEN)
        try:
            jws.get_unverified_header(token)
        except JWSError:
            return self._fail(TokenFailure.MALFORMED_TOKEN)
        try:
            payload = jws.verify(token, self._secret_key, algorithms=[_ALGORITHM])
        except JWSError:
            return self._fail(TokenFailure.INVALID_SIGNATURE)
        try:
            claims = json.loads(payload)
        except (TypeError, ValueError):
            return self._fail(TokenFailure.MALFORMED_TOKEN)
        if not isinstance(claims, dict) or not isinstance(claims.get("exp"), int) or "userId" not in claims:
            return self._fail(TokenFailure.MALFORMED_TOKEN)
        if self._now_epoch() >= claims["exp"]:
            return self._fail(TokenFailure.TOKEN_EXPIRED)
        return TokenCheck(claims=claims)

    def _fail(self, failure: TokenFailure) -> TokenCheck:
        logger.warning("Access token rejected: %s", failure.value)
        return TokenCheck(failure=failure)

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def mint_refresh_token(self) -> str:
        """Return 64 CSPRNG bytes as 128 hex characters."""
        return secrets.token_hex(64)

    def issue_pair(self, user: User) -> TokenPair:
        """Mint an access token for `user` plus a fresh refresh token.

        The caller persists digest_token(pair.refresh_token) and
        pair.refresh_expires_at on the user record.
        """
        now = self._clock()
        return TokenPair(
            access_token=self.mint_access_token(access_claims(user)),
            refresh_token=self.mint_refresh_token(),
            expires_in=self._access_ttl,
            refresh_expires_at=datetime.fromtimestamp(now.timestamp() + self._refresh_ttl, tz=timezone.utc),
        )
