"""
auth/passwords.py -- Password hashing, verification, and complexity policy.

Security design decisions:
  Hashing: PBKDF2-HMAC-SHA512, 100,000 iterations, 64-byte (512-bit) derived
       key, fresh 16-byte salt per hash from the OS CSPRNG. Stored form is
       "<salt hex>:<key hex>" so the salt travels with the hash and no
       separate column is needed.

  Verification: re-derive with the stored salt and compare with
       hmac.compare_digest (constant time). A malformed stored hash fails
       verification; it never raises.

  Timing equalization: _DUMMY_HASH lets the login path run a full derivation
       when the username does not exist, so response time does not reveal
       whether an account exists [C1].

Layer rule: stdlib only. No imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, field

_ITERATIONS = 100_000
_KEY_BYTES = 64
_SALT_BYTES = 16
_DIGEST = "sha512"
_DELIMITER = ":"

PASSWORD_MIN_LENGTH = 12

_SYMBOLS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?`~]")
_COMMON_PATTERNS = ("password", "12345", "qwerty", "admin", "sentinel")


def _derive(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac(_DIGEST, password.encode("utf-8"), salt, _ITERATIONS, dklen=_KEY_BYTES)


def hash_password(password: str) -> str:
    """Return "<salt hex>:<derived key hex>" for the given plaintext."""
    salt = secrets.token_bytes(_SALT_BYTES)
    return f"{salt.hex()}{_DELIMITER}{_derive(password, salt).hex()}"


def verify_password(password: str, stored_hash: str | None) -> bool:
    """Return True if the plaintext matches the stored hash.

    Returns False (never raises) for None, a missing delimiter, empty halves,
    or non-hex content.
    """
    if not stored_hash or _DELIMITER not in stored_hash:
        return False
    salt_hex, _, key_hex = stored_hash.partition(_DELIMITER)
    if not salt_hex or not key_hex:
        return False
    try:
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(key_hex)
    except ValueError:
        return False
    return hmac.compare_digest(_derive(password, salt), expected)


# Computed once at import so the first unknown-user login is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("sentinel_timing_dummy")


def verify_dummy(password: str) -> None:
    """Burn one full derivation. Call on unknown-user logins [C1]."""
    verify_password(password, _DUMMY_HASH)


@dataclass(frozen=True)
class ComplexityResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


def validate_complexity(password: str) -> ComplexityResult:
    """Check a candidate password against the complexity policy.

    Every violated rule is reported, not just the first, so a registration
    form can show all problems at once.
    """
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not _SYMBOLS.search(password):
        errors.append("Password must contain at least one special character")
    lowered = password.lower()
    if any(pattern in lowered for pattern in _COMMON_PATTERNS):
        errors.append("Password contains common patterns and is not secure")
    return ComplexityResult(valid=not errors, errors=errors)
