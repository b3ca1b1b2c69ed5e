import pytest
from sqlalchemy import func, select

from models.user import User
from services.auth_errors import (
    AuthUnavailable,
    EmailAlreadyRegistered,
    InvalidIdentity,
    InvalidPassword,
    InvalidSignInLink,
    LoginFailedAfterRegistration,
    NoPasswordSet,
    ProviderNotConfigured,
    UseManualSignIn,
    UserNotFound,
    WeakPassword,
)
from services.auth_flow import AuthOrchestrator, AuthState, RetryPolicy
from services.providers import ProviderConfig, SocialProfile
from services.session_token import verify_session_token


REGISTRY = {
    "google": ProviderConfig("google", "google-client-id", "google-secret", "Google"),
    "facebook": ProviderConfig("facebook", "facebook-app-id", "facebook-secret", "Facebook"),
}


class CapturingDelivery:
    def __init__(self):
        self.sent = []

    async def send(self, link):
        self.sent.append(link)


def _orchestrator(db, **kwargs):
    kwargs.setdefault("registry", dict(REGISTRY))
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=2, delay_seconds=0))
    return AuthOrchestrator(db, **kwargs)


async def _user_count(db):
    result = await db.execute(select(func.count()).select_from(User))
    return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_register_then_credential_sign_in_resolves_to_same_user(db):
    orchestrator = _orchestrator(db)
    alice = await orchestrator.register("alice@x.com", "secret1", "Alice")
    assert alice.provider == "email"
    assert alice.email_verified is False

    result = await orchestrator.credential_sign_in("alice@x.com", "secret1")

    claims = verify_session_token(result.session.token)
    assert claims.valid is True
    assert claims.subject == alice.id
    assert result.created is False
    assert result.attempt.state is AuthState.AUTHENTICATED
    assert result.attempt.transitions == [
        AuthState.IDLE,
        AuthState.CHECKING_EMAIL,
        AuthState.AUTHENTICATING_EXISTING,
        AuthState.ISSUING,
        AuthState.AUTHENTICATED,
    ]


@pytest.mark.asyncio
async def test_wrong_password_raises_invalid_password(db):
    orchestrator = _orchestrator(db)
    await orchestrator.register("alice@x.com", "secret1")
    with pytest.raises(InvalidPassword):
        await orchestrator.credential_sign_in("alice@x.com", "wrong")


@pytest.mark.asyncio
async def test_credential_sign_in_unknown_email(db):
    with pytest.raises(UserNotFound):
        await _orchestrator(db).credential_sign_in("nobody@x.com", "secret1")


@pytest.mark.asyncio
async def test_credential_sign_in_for_social_only_user_has_no_password(db):
    orchestrator = _orchestrator(db)
    await orchestrator.social_sign_in(
        SocialProfile(provider="google", provider_id="g-1", email="gina@x.com", display_name="Gina")
    )
    with pytest.raises(NoPasswordSet):
        await orchestrator.credential_sign_in("gina@x.com", "anything")


@pytest.mark.asyncio
async def test_credential_sign_in_rejects_passwordless_token(db):
    orchestrator = _orchestrator(db)
    await orchestrator.register("alice@x.com", "secret1")
    with pytest.raises(InvalidPassword):
        await orchestrator.credential_sign_in("alice@x.com", "auto-generated-alicexcom-password")


@pytest.mark.asyncio
async def test_register_rejects_existing_and_short_passwords(db):
    orchestrator = _orchestrator(db)
    await orchestrator.register("alice@x.com", "secret1")
    with pytest.raises(EmailAlreadyRegistered):
        await orchestrator.register("ALICE@x.com", "secret2")
    with pytest.raises(WeakPassword):
        await orchestrator.register("short@x.com", "abc")
    with pytest.raises(InvalidIdentity):
        await orchestrator.register("  ", "secret1")


@pytest.mark.asyncio
async def test_passwordless_new_then_existing_user(db):
    orchestrator = _orchestrator(db)

    first = await orchestrator.passwordless_sign_in("bob@y.com")
    assert first.created is True
    assert first.user.provider == "email"
    assert first.user.password_hash
    assert AuthState.REGISTERING_NEW in first.attempt.transitions

    second = await orchestrator.passwordless_sign_in("bob@y.com")
    assert second.created is False
    assert second.user.id == first.user.id
    assert AuthState.AUTHENTICATING_EXISTING in second.attempt.transitions
    assert AuthState.REGISTERING_NEW not in second.attempt.transitions
    assert verify_session_token(second.session.token).subject == first.user.id
    assert await _user_count(db) == 1


@pytest.mark.asyncio
async def test_passwordless_for_social_account_requires_manual_sign_in(db):
    orchestrator = _orchestrator(db)
    await orchestrator.social_sign_in(SocialProfile(provider="facebook", provider_id="fb-9", email="hal@y.com"))
    with pytest.raises(UseManualSignIn) as excinfo:
        await orchestrator.passwordless_sign_in("hal@y.com")
    assert excinfo.value.status_code == 409


@pytest.mark.asyncio
async def test_passwordless_disabled(db, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "PASSWORDLESS_CONVENIENCE_ENABLED", False)
    with pytest.raises(ProviderNotConfigured):
        await _orchestrator(db).passwordless_sign_in("bob@y.com")


@pytest.mark.asyncio
async def test_passwordless_retries_once_when_login_lags_registration(db):
    orchestrator = _orchestrator(db)
    real_lookup = orchestrator.store.find_by_email_and_provider
    calls = {"count": 0}

    async def lagging_lookup(email, provider):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return await real_lookup(email, provider)

    orchestrator.store.find_by_email_and_provider = lagging_lookup

    result = await orchestrator.passwordless_sign_in("ivy@y.com")
    assert calls["count"] == 2
    assert result.created is True
    assert result.attempt.state is AuthState.AUTHENTICATED
    assert await _user_count(db) == 1


@pytest.mark.asyncio
async def test_passwordless_gives_up_after_single_retry(db):
    orchestrator = _orchestrator(db)
    calls = {"count": 0}

    async def never_visible(email, provider):
        calls["count"] += 1
        return None

    orchestrator.store.find_by_email_and_provider = never_visible

    with pytest.raises(LoginFailedAfterRegistration) as excinfo:
        await orchestrator.passwordless_sign_in("jay@y.com")

    assert calls["count"] == 2
    # The account still exists so manual sign-in remains possible.
    assert await orchestrator.check_user("jay@y.com") is not None
    assert "sign in manually" in excinfo.value.message


@pytest.mark.asyncio
async def test_passwordless_concurrent_loser_proceeds_as_existing_user(session_maker):
    async with session_maker() as winner_session:
        winner = await _orchestrator(winner_session).passwordless_sign_in("kim@y.com")

    async with session_maker() as loser_session:
        orchestrator = _orchestrator(loser_session)
        real_find = orchestrator.store.find_by_email
        calls = {"count": 0}

        async def stale_first_two(email):
            # Existence check and reconciler lookup both ran before the winner committed.
            calls["count"] += 1
            if calls["count"] <= 2:
                return None
            return await real_find(email)

        orchestrator.store.find_by_email = stale_first_two
        result = await orchestrator.passwordless_sign_in("kim@y.com")

    assert result.user.id == winner.user.id
    assert result.created is False
    assert result.attempt.transitions[-3:] == [
        AuthState.AUTHENTICATING_EXISTING,
        AuthState.ISSUING,
        AuthState.AUTHENTICATED,
    ]
    async with session_maker() as session:
        assert await _user_count(session) == 1


@pytest.mark.asyncio
async def test_social_sign_in_merges_into_credential_user(db):
    orchestrator = _orchestrator(db)
    alice = await orchestrator.register("alice@x.com", "secret1", "alice")
    stored_hash = alice.password_hash

    result = await orchestrator.social_sign_in(
        SocialProfile(
            provider="google",
            provider_id="google-alice",
            email="alice@x.com",
            display_name="Alice L.",
            avatar_url="https://img/a.png",
        )
    )

    assert result.user.id == alice.id
    assert result.user.password_hash == stored_hash
    assert result.user.name == "Alice L."
    assert result.created is False
    assert await _user_count(db) == 1

    again = await orchestrator.credential_sign_in("alice@x.com", "secret1")
    assert again.user.id == alice.id


@pytest.mark.asyncio
async def test_social_sign_in_is_idempotent(db):
    orchestrator = _orchestrator(db)
    profile = SocialProfile(provider="google", provider_id="g-2", email="lee@x.com", display_name="Lee")
    first = await orchestrator.social_sign_in(profile)
    second = await orchestrator.social_sign_in(profile)
    assert first.created is True
    assert second.created is False
    assert first.user.id == second.user.id
    assert await _user_count(db) == 1


@pytest.mark.asyncio
async def test_social_sign_in_without_email_is_rejected(db):
    orchestrator = _orchestrator(db)
    with pytest.raises(InvalidIdentity):
        await orchestrator.social_sign_in(SocialProfile(provider="google", provider_id="g-3", email=None))
    assert await _user_count(db) == 0


@pytest.mark.asyncio
async def test_social_sign_in_for_unconfigured_provider(db):
    with pytest.raises(ProviderNotConfigured):
        await _orchestrator(db).social_sign_in(
            SocialProfile(provider="apple", provider_id="a-1", email="mo@x.com")
        )


@pytest.mark.asyncio
async def test_email_link_signs_in_exactly_once(db):
    delivery = CapturingDelivery()
    orchestrator = _orchestrator(db, delivery=delivery)

    link = await orchestrator.request_email_link("Nina@Y.com")
    assert delivery.sent == [link]
    assert link.email == "nina@y.com"
    assert "/finishSignIn?" in link.url

    result = await orchestrator.complete_email_link("nina@y.com", link.token)
    assert result.created is True
    assert result.user.email_verified is True
    assert result.user.password_hash is None

    with pytest.raises(InvalidSignInLink):
        await orchestrator.complete_email_link("nina@y.com", link.token)


@pytest.mark.asyncio
async def test_email_link_rejects_mismatched_email_and_unknown_token(db):
    orchestrator = _orchestrator(db, delivery=CapturingDelivery())
    link = await orchestrator.request_email_link("olga@y.com")

    with pytest.raises(InvalidSignInLink):
        await orchestrator.complete_email_link("mallory@y.com", link.token)
    with pytest.raises(InvalidSignInLink):
        await orchestrator.complete_email_link("olga@y.com", "not-a-real-token")

    # The valid pair still works after the failed attempts.
    result = await orchestrator.complete_email_link("olga@y.com", link.token)
    assert result.user.email == "olga@y.com"


@pytest.mark.asyncio
async def test_email_link_expired(db):
    from services.email_link import issue_email_link
    from models.email_link_token import EmailLinkToken
    from datetime import datetime, timedelta, timezone

    link = await issue_email_link("pia@y.com", db)
    row = (await db.execute(select(EmailLinkToken))).scalar_one()
    row.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    await db.commit()

    with pytest.raises(InvalidSignInLink):
        await _orchestrator(db).complete_email_link("pia@y.com", link.token)


@pytest.mark.asyncio
async def test_storage_failures_surface_as_auth_unavailable(db):
    from sqlalchemy.exc import OperationalError

    orchestrator = _orchestrator(db)

    async def broken_execute(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection lost"))

    orchestrator.store.db.execute = broken_execute
    with pytest.raises(AuthUnavailable) as excinfo:
        await orchestrator.credential_sign_in("alice@x.com", "secret1")
    assert "connection lost" not in excinfo.value.message


@pytest.mark.asyncio
async def test_passwordless_outage_before_any_insert_is_auth_unavailable(db, monkeypatch):
    from sqlalchemy.exc import OperationalError

    orchestrator = _orchestrator(db)

    async def broken_commit():
        raise OperationalError("INSERT INTO users", {}, Exception("connection lost"))

    monkeypatch.setattr(db, "commit", broken_commit)
    with pytest.raises(AuthUnavailable):
        await orchestrator.passwordless_sign_in("zed@y.com")
    assert await orchestrator.check_user("zed@y.com") is None
