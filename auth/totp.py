"""
auth/totp.py -- RFC 6238 time-based one-time passwords for MFA.

Secrets are unpadded base32 (what authenticator apps expect in otpauth URIs).
Codes are 6 digits over a 30-second step with HMAC-SHA1, the default every
mainstream authenticator app implements.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import struct
from urllib.parse import quote

_STEP_SECONDS = 30
_DIGITS = 6
# One adjacent step either side covers ordinary phone clock drift.
_SKEW_STEPS = 1


def generate_secret() -> str:
    """Return a fresh 160-bit secret as unpadded base32."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"


def _decode_secret(secret: str) -> bytes | None:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        return base64.b32decode(padded)
    except (binascii.Error, ValueError):
        return None


def code_at(secret: str, timestamp: float) -> str:
    """Return the code for the step containing `timestamp`, or "" for a bad secret."""
    key = _decode_secret(secret)
    if key is None:
        return ""
    counter = struct.pack(">Q", int(timestamp // _STEP_SECONDS))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    value = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(value % (10**_DIGITS)).zfill(_DIGITS)


def matching_step(secret: str, code: str, timestamp: float) -> int | None:
    """Return the time step `code` belongs to within the skew window, or None.

    Callers persist the step of an accepted code and refuse any later code
    whose step is not greater, so a code works once.
    """
    code = (code or "").strip()
    if len(code) != _DIGITS or not code.isdigit():
        return None
    current = int(timestamp // _STEP_SECONDS)
    for offset in range(-_SKEW_STEPS, _SKEW_STEPS + 1):
        step = current + offset
        expected = code_at(secret, step * _STEP_SECONDS)
        if expected and hmac.compare_digest(expected, code):
            return step
    return None
