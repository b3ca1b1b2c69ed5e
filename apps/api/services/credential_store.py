"""Persistence for user identity records."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.auth_errors import AuthUnavailable, DuplicateEmail, UserNotFound
from services.identity import normalize_email

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = {
    "name",
    "picture",
    "password_hash",
    "provider",
    "provider_id",
    "email_verified",
}


class CredentialStore:
    """User rows keyed by normalized email; uniqueness is enforced by the schema."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _first(self, stmt) -> Optional[User]:
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as exc:
            logger.exception("User lookup failed: %s", exc)
            raise AuthUnavailable() from exc
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return await self._first(select(User).where(User.email == normalized))

    async def find_by_email_and_provider(self, email: str, provider: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return await self._first(
            select(User).where(User.email == normalized, User.provider == provider)
        )

    async def find_by_id(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        return await self._first(select(User).where(User.id == user_id))

    async def create(self, record: Dict[str, Any]) -> User:
        """Insert a user; raises DuplicateEmail when the email is already taken."""
        user = User(
            email=normalize_email(record.get("email")),
            password_hash=record.get("password_hash"),
            provider=record.get("provider") or "email",
            provider_id=record.get("provider_id") or "",
            name=record.get("name"),
            picture=record.get("picture"),
            email_verified=bool(record.get("email_verified", False)),
        )
        self.db.add(user)
        try:
            await self.db.commit()
            await self.db.refresh(user)
        except IntegrityError as exc:
            await self.db.rollback()
            logger.info("Concurrent registration detected for %s", user.email)
            raise DuplicateEmail() from exc
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("User insert failed for %s: %s", user.email, exc)
            raise AuthUnavailable() from exc
        return user

    async def update(self, user_id: str, fields: Dict[str, Any]) -> User:
        user = await self.find_by_id(user_id)
        if not user:
            raise UserNotFound()
        for key, value in fields.items():
            if key not in _MUTABLE_FIELDS:
                raise ValueError(f"Field {key!r} cannot be updated.")
            setattr(user, key, value)
        user.updated_at = datetime.now(timezone.utc)
        try:
            await self.db.commit()
            await self.db.refresh(user)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("User update failed for %s: %s", user_id, exc)
            raise AuthUnavailable() from exc
        return user
