"""Password hashing and secret verification."""

from __future__ import annotations

import base64
import enum
import hashlib
import hmac
import re

import bcrypt

from config import settings


PASSWORDLESS_PREFIX = "auto-generated-"
PASSWORDLESS_SUFFIX = "-password"

# bcrypt only accepts up to 72 bytes of a secret.
_BCRYPT_MAX_BYTES = 72
_SANITIZE_RE = re.compile(r"[^A-Za-z0-9]")


class VerificationResult(enum.Enum):
    VALID = "valid"
    MISMATCH = "mismatch"
    NO_HASH = "no_hash"
    MALFORMED_HASH = "malformed_hash"

    @property
    def ok(self) -> bool:
        return self is VerificationResult.VALID


def _encode_secret(secret: str) -> bytes:
    raw = secret.encode("utf-8")
    if len(raw) <= _BCRYPT_MAX_BYTES:
        return raw
    # Longer secrets are pre-hashed so bytes past the limit still count.
    return base64.b64encode(hashlib.sha256(raw).digest())


def hash_password(password: str, rounds: int | None = None) -> str:
    """Hash a password using bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds or settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(_encode_secret(password), salt).decode("utf-8")


def sanitize_email(email: str) -> str:
    """Strip every character outside [A-Za-z0-9]."""
    return _SANITIZE_RE.sub("", email or "")


def derive_passwordless_token(email: str) -> str:
    """Deterministic convenience secret for the email-only sign-in path."""
    return f"{PASSWORDLESS_PREFIX}{sanitize_email(email)}{PASSWORDLESS_SUFFIX}"


def is_passwordless_token(secret: str) -> bool:
    return bool(secret) and secret.startswith(PASSWORDLESS_PREFIX)


def sanitized_email_collides(first: str, second: str) -> bool:
    """True when two different emails derive the same convenience token."""
    if (first or "") == (second or ""):
        return False
    return sanitize_email(first) == sanitize_email(second)


def check_hashed_password(secret: str, stored_hash: str | None) -> VerificationResult:
    if not stored_hash:
        return VerificationResult.NO_HASH
    try:
        matched = bcrypt.checkpw(_encode_secret(secret or ""), stored_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return VerificationResult.MALFORMED_HASH
    return VerificationResult.VALID if matched else VerificationResult.MISMATCH


def check(
    secret: str,
    stored_hash: str | None,
    email: str,
    *,
    allow_passwordless: bool | None = None,
) -> VerificationResult:
    """
    Verify a presented secret for the account identified by email.

    Convenience tokens are matched against the email alone and never touch
    the stored hash. Everything else goes through bcrypt.
    """
    if allow_passwordless is None:
        allow_passwordless = settings.PASSWORDLESS_CONVENIENCE_ENABLED
    if allow_passwordless and is_passwordless_token(secret):
        expected = derive_passwordless_token(email)
        if hmac.compare_digest(secret.encode("utf-8"), expected.encode("utf-8")):
            return VerificationResult.VALID
        return VerificationResult.MISMATCH
    return check_hashed_password(secret, stored_hash)


def verify(secret: str, stored_hash: str | None, email: str) -> bool:
    """Boolean form of check(); never raises."""
    return check(secret, stored_hash, email).ok
