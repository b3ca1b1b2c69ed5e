"""Sign-in orchestration across social, credential, passwordless and email-link flows."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Tuple, Type, TypeVar

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.user import User
from services import passwords
from services.auth_errors import (
    AuthError,
    AuthUnavailable,
    DuplicateEmail,
    EmailAlreadyRegistered,
    InvalidIdentity,
    InvalidPassword,
    LoginFailedAfterRegistration,
    NoPasswordSet,
    ProviderNotConfigured,
    UseManualSignIn,
    UserNotFound,
    WeakPassword,
)
from services.credential_store import CredentialStore
from services.email_link import IssuedEmailLink, LinkDelivery, LoggingLinkDelivery, consume_email_link, issue_email_link
from services.identity import EMAIL_PROVIDER, Identity, IdentityReconciler, normalize_email
from services.providers import (
    ProviderRegistry,
    SocialProfile,
    build_provider_registry,
    get_identity_provider,
)
from services.session_token import SessionToken, issue_session

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuthState(enum.Enum):
    IDLE = "idle"
    CHECKING_EMAIL = "checking_email"
    REGISTERING_NEW = "registering_new"
    AUTHENTICATING_EXISTING = "authenticating_existing"
    ISSUING = "issuing"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass
class AuthAttempt:
    flow: str
    email: str
    state: AuthState = AuthState.IDLE
    transitions: List[AuthState] = field(default_factory=lambda: [AuthState.IDLE])

    def advance(self, state: AuthState) -> None:
        logger.debug("%s sign-in for %s: %s -> %s", self.flow, self.email, self.state.value, state.value)
        self.state = state
        self.transitions.append(state)


@dataclass(frozen=True)
class SignInResult:
    user: User
    session: SessionToken
    created: bool
    attempt: AuthAttempt


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-delay bounded retry; max_attempts counts the first try."""

    max_attempts: int = 2
    delay_seconds: float = 0.5

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: Tuple[Type[BaseException], ...],
    ) -> T:
        attempts = max(1, self.max_attempts)
        for number in range(1, attempts + 1):
            try:
                return await operation()
            except retry_on as exc:
                if number >= attempts:
                    raise
                logger.warning("Attempt %s/%s failed (%s); retrying in %.2fs", number, attempts, exc, self.delay_seconds)
                await asyncio.sleep(self.delay_seconds)
        raise RuntimeError("unreachable")


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=2, delay_seconds=settings.AUTH_RETRY_DELAY_SECONDS)


class AuthOrchestrator:
    """Decides returning-user vs new-user handling and mints sessions."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        registry: Optional[ProviderRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        delivery: Optional[LinkDelivery] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.db = db
        self.store = CredentialStore(db)
        self.reconciler = IdentityReconciler(self.store)
        self.registry = registry if registry is not None else build_provider_registry()
        self.retry_policy = retry_policy or default_retry_policy()
        self.delivery = delivery or LoggingLinkDelivery()
        self.http_client = http_client

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _guard(self, attempt: AuthAttempt, flow: Callable[[], Awaitable[T]]) -> T:
        try:
            return await flow()
        except AuthError as exc:
            attempt.advance(AuthState.FAILED)
            logger.info("%s sign-in failed for %s: %s", attempt.flow, attempt.email, exc.code)
            raise

    def _issue(self, attempt: AuthAttempt, user: User, created: bool) -> SignInResult:
        attempt.advance(AuthState.ISSUING)
        session = issue_session(user)
        attempt.advance(AuthState.AUTHENTICATED)
        logger.info("%s sign-in succeeded for user %s", attempt.flow, user.id)
        return SignInResult(user=user, session=session, created=created, attempt=attempt)

    @staticmethod
    def _require_email(email: Optional[str]) -> str:
        normalized = normalize_email(email)
        if not normalized:
            raise InvalidIdentity()
        return normalized

    async def _verify(self, secret: str, user: User, *, allow_passwordless: bool) -> passwords.VerificationResult:
        # bcrypt is deliberately slow; keep it off the event loop.
        return await asyncio.to_thread(
            passwords.check,
            secret,
            user.password_hash,
            user.email,
            allow_passwordless=allow_passwordless,
        )

    async def _find_credential_user(self, email: str) -> User:
        user = await self.store.find_by_email_and_provider(email, EMAIL_PROVIDER)
        if user is None:
            if await self.store.find_by_email(email) is not None:
                raise NoPasswordSet()
            raise UserNotFound()
        if not user.password_hash:
            raise NoPasswordSet()
        return user

    # ------------------------------------------------------------------
    # Lookups and registration
    # ------------------------------------------------------------------

    async def check_user(self, email: str) -> Optional[User]:
        return await self.store.find_by_email(self._require_email(email))

    async def register(self, email: str, password: str, name: Optional[str] = None) -> User:
        """Create a credential user; existing emails are rejected."""
        normalized = self._require_email(email)
        if len(password or "") < settings.PASSWORD_MIN_LENGTH:
            raise WeakPassword(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters long.")
        if await self.store.find_by_email(normalized) is not None:
            raise EmailAlreadyRegistered()

        password_hash = await asyncio.to_thread(passwords.hash_password, password)
        try:
            user = await self.store.create(
                {
                    "email": normalized,
                    "password_hash": password_hash,
                    "name": name or "",
                    "provider": EMAIL_PROVIDER,
                    "email_verified": False,
                }
            )
        except DuplicateEmail as exc:
            raise EmailAlreadyRegistered() from exc
        logger.info("Registered credential user %s", user.id)
        return user

    # ------------------------------------------------------------------
    # Social sign-in
    # ------------------------------------------------------------------

    async def social_sign_in(self, profile: SocialProfile) -> SignInResult:
        attempt = AuthAttempt(flow=profile.provider, email=normalize_email(profile.email))

        async def flow() -> SignInResult:
            if profile.provider not in self.registry:
                raise ProviderNotConfigured(f"Sign-in with {profile.provider} is not available.")
            attempt.advance(AuthState.CHECKING_EMAIL)
            self._require_email(profile.email)
            user, created = await self.reconciler.reconcile_outcome(
                Identity(
                    email=profile.email or "",
                    provider=profile.provider,
                    provider_id=profile.provider_id,
                    display_name=profile.display_name,
                    avatar_url=profile.avatar_url,
                )
            )
            attempt.advance(AuthState.REGISTERING_NEW if created else AuthState.AUTHENTICATING_EXISTING)
            return self._issue(attempt, user, created)

        return await self._guard(attempt, flow)

    async def social_sign_in_with_credentials(self, provider: str, credentials: Mapping[str, Any]) -> SignInResult:
        """Resolve a provider token to a verified profile, then reconcile it."""
        identity_provider = get_identity_provider(provider, self.registry, http_client=self.http_client)
        profile = await identity_provider.fetch_profile(credentials)
        return await self.social_sign_in(profile)

    # ------------------------------------------------------------------
    # Credential sign-in
    # ------------------------------------------------------------------

    async def credential_sign_in(self, email: str, password: str) -> SignInResult:
        attempt = AuthAttempt(flow="credentials", email=normalize_email(email))

        async def flow() -> SignInResult:
            normalized = self._require_email(email)
            attempt.advance(AuthState.CHECKING_EMAIL)
            user = await self._find_credential_user(normalized)
            attempt.advance(AuthState.AUTHENTICATING_EXISTING)
            result = await self._verify(password or "", user, allow_passwordless=False)
            if not result.ok:
                if result is passwords.VerificationResult.MALFORMED_HASH:
                    logger.warning("Stored password hash for user %s is malformed", user.id)
                raise InvalidPassword()
            return self._issue(attempt, user, False)

        return await self._guard(attempt, flow)

    # ------------------------------------------------------------------
    # Passwordless convenience sign-in
    # ------------------------------------------------------------------

    async def _passwordless_existing(self, user: User) -> None:
        if user.provider != EMAIL_PROVIDER or not user.password_hash:
            raise UseManualSignIn()
        token = passwords.derive_passwordless_token(user.email)
        result = await self._verify(token, user, allow_passwordless=True)
        if not result.ok:
            raise UseManualSignIn()

    async def passwordless_sign_in(self, email: str) -> SignInResult:
        attempt = AuthAttempt(flow="passwordless", email=normalize_email(email))

        async def flow() -> SignInResult:
            if not settings.PASSWORDLESS_CONVENIENCE_ENABLED:
                raise ProviderNotConfigured("Passwordless sign-in is disabled. Use an email sign-in link.")
            normalized = self._require_email(email)
            attempt.advance(AuthState.CHECKING_EMAIL)
            existing = await self.store.find_by_email(normalized)
            if existing is not None:
                attempt.advance(AuthState.AUTHENTICATING_EXISTING)
                await self._passwordless_existing(existing)
                return self._issue(attempt, existing, False)

            attempt.advance(AuthState.REGISTERING_NEW)
            token = passwords.derive_passwordless_token(normalized)
            password_hash = await asyncio.to_thread(passwords.hash_password, token)

            registered = False

            async def register_then_login() -> Tuple[User, bool]:
                nonlocal registered
                user, created = await self.reconciler.reconcile_outcome(
                    Identity(email=normalized, provider=EMAIL_PROVIDER, password_hash=password_hash)
                )
                registered = registered or created
                if not registered:
                    # Lost a concurrent registration; continue as a returning user.
                    attempt.advance(AuthState.AUTHENTICATING_EXISTING)
                    if user.provider != EMAIL_PROVIDER or not user.password_hash:
                        raise UseManualSignIn()
                signed_in = await self._find_credential_user(normalized)
                result = await self._verify(token, signed_in, allow_passwordless=True)
                if not result.ok:
                    raise InvalidPassword()
                return signed_in, registered

            try:
                user, created = await self.retry_policy.run(
                    register_then_login,
                    retry_on=(UserNotFound, NoPasswordSet, InvalidPassword, AuthUnavailable),
                )
            except (UserNotFound, NoPasswordSet, InvalidPassword, AuthUnavailable) as exc:
                if isinstance(exc, AuthUnavailable) and not registered:
                    # No row was written; report the outage as is.
                    raise
                logger.error("Login failed after registration for %s: %s", normalized, exc)
                raise LoginFailedAfterRegistration() from exc
            return self._issue(attempt, user, created)

        return await self._guard(attempt, flow)

    # ------------------------------------------------------------------
    # Email sign-in link
    # ------------------------------------------------------------------

    async def request_email_link(self, email: str) -> IssuedEmailLink:
        normalized = self._require_email(email)
        link = await issue_email_link(normalized, self.db)
        await self.delivery.send(link)
        return link

    async def complete_email_link(self, email: str, token: str) -> SignInResult:
        attempt = AuthAttempt(flow="email_link", email=normalize_email(email))

        async def flow() -> SignInResult:
            normalized = self._require_email(email)
            attempt.advance(AuthState.CHECKING_EMAIL)
            await consume_email_link(normalized, token, self.db)
            user, created = await self.reconciler.reconcile_outcome(
                Identity(email=normalized, provider=EMAIL_PROVIDER, email_verified=True)
            )
            attempt.advance(AuthState.REGISTERING_NEW if created else AuthState.AUTHENTICATING_EXISTING)
            return self._issue(attempt, user, created)

        return await self._guard(attempt, flow)
