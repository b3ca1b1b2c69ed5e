"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import verify_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


async def get_optional_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Resolve the bearer session if present; invalid tokens count as anonymous."""
    if not credentials or credentials.scheme.lower() != "bearer":
        return None
    claims = verify_session_token(credentials.credentials)
    if not claims.valid or not claims.subject:
        return None
    return AuthContext(user_id=claims.subject, email=claims.email)


async def get_auth_context(
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if auth is None:
        raise HTTPException(status_code=401, detail="Missing or invalid Bearer session token.")
    return auth
