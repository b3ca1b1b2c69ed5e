"""User model."""

from sqlalchemy import Boolean, Column, DateTime, Index, String
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Identity record, one row per normalized email."""

    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_provider_provider_id", "provider", "provider_id"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=True)
    provider = Column(String, nullable=False, default="email")
    provider_id = Column(String, nullable=False, default="")
    name = Column(String, nullable=True)
    picture = Column(String, nullable=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)
