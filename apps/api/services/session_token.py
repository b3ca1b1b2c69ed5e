"""Session token helpers for backend-authenticated user scope."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "storefront_session"


@dataclass(frozen=True)
class SessionToken:
    token: str
    subject: str
    expires_at: int


@dataclass(frozen=True)
class SessionClaims:
    subject: Optional[str]
    valid: bool
    email: Optional[str] = None
    expires_at: Optional[int] = None


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a signed session token payload for API authentication."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.SESSION_TTL_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def issue_session(user) -> SessionToken:
    """Mint a session for a reconciled user."""
    session = create_session_token(str(user.id), user.email)
    return SessionToken(token=session["token"], subject=str(user.id), expires_at=session["expires_at"])


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a signed session token."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require_exp": True, "require_sub": True},
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    token_type = str(payload.get("type", "")).strip()
    if token_type != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    return payload


def verify_session_token(token: Optional[str]) -> SessionClaims:
    """Validate a token without raising; invalid tokens mean unauthenticated."""
    if not token:
        return SessionClaims(subject=None, valid=False)
    try:
        payload = decode_session_token(token)
    except ValueError:
        return SessionClaims(subject=None, valid=False)
    return SessionClaims(
        subject=str(payload["sub"]),
        valid=True,
        email=payload.get("email") or None,
        expires_at=payload.get("exp"),
    )
