"""
Authentication router: registration, sign-in flows and session introspection.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.auth_errors import AuthError, InvalidIdentity
from services.auth_flow import AuthOrchestrator, SignInResult
from services.credential_store import CredentialStore
from services.providers import ProviderRegistry, build_provider_registry, provider_capabilities

router = APIRouter()

auth_rate_limit = rate_limit("auth", settings.AUTH_RATE_LIMIT, settings.AUTH_RATE_WINDOW_SECONDS)


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    name: Optional[str] = None


class CheckUserRequest(BaseModel):
    email: str


class SignInRequest(BaseModel):
    provider: str
    credentials: Dict[str, Any] = Field(default_factory=dict)


class EmailRequest(BaseModel):
    email: EmailStr


class CompleteEmailLinkRequest(BaseModel):
    email: EmailStr
    token: str


class UserSummary(BaseModel):
    id: str
    email: str
    name: Optional[str] = None


class RegisterResponse(BaseModel):
    message: str
    user: UserSummary


class CheckUserResponse(BaseModel):
    exists: bool
    user: Optional[UserSummary] = None


class SessionResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    provider: str
    created: bool
    session_token: str
    session_expires_at: int


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    provider: str
    email_verified: bool
    has_password: bool
    created_at: Optional[datetime] = None


def get_provider_registry(request: Request) -> ProviderRegistry:
    registry = getattr(request.app.state, "provider_registry", None)
    if registry is None:
        registry = build_provider_registry()
        request.app.state.provider_registry = registry
    return registry


def get_orchestrator(
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> AuthOrchestrator:
    return AuthOrchestrator(db, registry=registry)


def _http_error(exc: AuthError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _summary(user: User) -> UserSummary:
    return UserSummary(id=user.id, email=user.email, name=user.name)


def _session_response(result: SignInResult) -> SessionResponse:
    return SessionResponse(
        user_id=result.user.id,
        email=result.user.email,
        name=result.user.name,
        picture=result.user.picture,
        provider=result.user.provider,
        created=result.created,
        session_token=result.session.token,
        session_expires_at=result.session.expires_at,
    )


@router.post("/register", response_model=RegisterResponse, dependencies=[Depends(auth_rate_limit)])
async def register(
    request: RegisterRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Create an email/password account."""
    try:
        user = await orchestrator.register(str(request.email), request.password, request.name)
    except AuthError as exc:
        raise _http_error(exc) from exc
    return RegisterResponse(message="User created successfully", user=_summary(user))


@router.post("/check-user", response_model=CheckUserResponse, dependencies=[Depends(auth_rate_limit)])
async def check_user(
    request: CheckUserRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Existence probe used by the email-only sign-in form."""
    try:
        user = await orchestrator.check_user(request.email)
    except AuthError as exc:
        raise _http_error(exc) from exc
    return CheckUserResponse(exists=user is not None, user=_summary(user) if user else None)


@router.post("/signin", response_model=SessionResponse, dependencies=[Depends(auth_rate_limit)])
async def sign_in(
    request: SignInRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Provider-pluggable sign-in.

    `credentials` carries email/password for the local provider, email for
    passwordless, or the provider token for social sign-in.
    """
    provider = request.provider.strip().lower()
    creds = request.credentials
    try:
        if provider in {"credentials", "email"}:
            email = str(creds.get("email") or "")
            password = str(creds.get("password") or "")
            if not email or not password:
                raise InvalidIdentity("Email and password are required.")
            result = await orchestrator.credential_sign_in(email, password)
        elif provider == "passwordless":
            result = await orchestrator.passwordless_sign_in(str(creds.get("email") or ""))
        else:
            result = await orchestrator.social_sign_in_with_credentials(provider, creds)
    except AuthError as exc:
        raise _http_error(exc) from exc
    return _session_response(result)


@router.post("/passwordless", response_model=SessionResponse, dependencies=[Depends(auth_rate_limit)])
async def passwordless_sign_in(
    request: EmailRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Email-only sign-in; registers the address on first use."""
    try:
        result = await orchestrator.passwordless_sign_in(str(request.email))
    except AuthError as exc:
        raise _http_error(exc) from exc
    return _session_response(result)


@router.post("/email-link", status_code=202, dependencies=[Depends(auth_rate_limit)])
async def request_email_link(
    request: EmailRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Send a one-time sign-in link to the address."""
    try:
        await orchestrator.request_email_link(str(request.email))
    except AuthError as exc:
        raise _http_error(exc) from exc
    return {"message": "Login link sent! Check your email."}


@router.post("/email-link/complete", response_model=SessionResponse, dependencies=[Depends(auth_rate_limit)])
async def complete_email_link(
    request: CompleteEmailLinkRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    try:
        result = await orchestrator.complete_email_link(str(request.email), request.token)
    except AuthError as exc:
        raise _http_error(exc) from exc
    return _session_response(result)


@router.get("/providers")
async def list_providers(registry: ProviderRegistry = Depends(get_provider_registry)):
    """Sign-in methods available to the client."""
    return {
        "providers": [
            {"id": config.name, "name": config.display_name}
            for config in registry.values()
        ],
        "capabilities": provider_capabilities(registry),
    }


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the user behind the current session."""
    try:
        user = await CredentialStore(db).find_by_id(auth.user_id)
    except AuthError as exc:
        raise _http_error(exc) from exc
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        picture=user.picture,
        provider=user.provider,
        email_verified=bool(user.email_verified),
        has_password=user.has_password,
        created_at=user.created_at,
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Sessions are stateless; the client discards its token."""
    return {"message": "Logged out successfully"}
