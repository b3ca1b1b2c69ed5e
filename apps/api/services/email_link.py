"""One-time email sign-in links."""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from urllib.parse import urlencode

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.email_link_token import EmailLinkToken
from services.auth_errors import AuthUnavailable, InvalidSignInLink
from services.identity import normalize_email

logger = logging.getLogger(__name__)

FINISH_SIGN_IN_PATH = "/finishSignIn"


@dataclass(frozen=True)
class IssuedEmailLink:
    email: str
    token: str
    url: str
    expires_at: datetime


class LinkDelivery(Protocol):
    async def send(self, link: IssuedEmailLink) -> None: ...


class LoggingLinkDelivery:
    """Delivery used when no mail transport is wired in; records the send only."""

    async def send(self, link: IssuedEmailLink) -> None:
        logger.info("Sign-in link issued for %s (expires %s)", link.email, link.expires_at.isoformat())


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def build_sign_in_url(email: str, token: str) -> str:
    base = settings.APP_URL.rstrip("/")
    return f"{base}{FINISH_SIGN_IN_PATH}?{urlencode({'email': email, 'token': token})}"


async def issue_email_link(
    email: str,
    db: AsyncSession,
    *,
    ttl_minutes: Optional[int] = None,
) -> IssuedEmailLink:
    normalized = normalize_email(email)
    now = datetime.now(timezone.utc)
    ttl = max(1, int(ttl_minutes or settings.EMAIL_LINK_TTL_MINUTES))
    expires_at = now + timedelta(minutes=ttl)

    token = secrets.token_urlsafe(32)
    row = EmailLinkToken(
        id=str(uuid.uuid4()),
        email=normalized,
        token_hash=_hash_token(token),
        expires_at=expires_at,
    )
    db.add(row)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Could not store sign-in link for %s: %s", normalized, exc)
        raise AuthUnavailable() from exc

    return IssuedEmailLink(
        email=normalized,
        token=token,
        url=build_sign_in_url(normalized, token),
        expires_at=expires_at,
    )


async def consume_email_link(email: str, token: str, db: AsyncSession) -> str:
    """Mark a link used and return its email. Each token succeeds at most once."""
    normalized = normalize_email(email)
    raw = str(token or "").strip()
    if not normalized or not raw:
        raise InvalidSignInLink()

    token_hash = _hash_token(raw)
    try:
        result = await db.execute(select(EmailLinkToken).where(EmailLinkToken.token_hash == token_hash))
        row = result.scalar_one_or_none()
        if row is None or row.email != normalized or row.consumed_at is not None:
            raise InvalidSignInLink()

        now = datetime.now(timezone.utc)
        if _as_utc(row.expires_at) <= now:
            raise InvalidSignInLink()

        claimed = await db.execute(
            update(EmailLinkToken)
            .where(EmailLinkToken.id == row.id, EmailLinkToken.consumed_at.is_(None))
            .values(consumed_at=now)
        )
        if claimed.rowcount != 1:
            await db.rollback()
            raise InvalidSignInLink()
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Could not consume sign-in link for %s: %s", normalized, exc)
        raise AuthUnavailable() from exc

    return normalized
