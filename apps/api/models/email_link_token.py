"""EmailLinkToken model for one-time sign-in links."""

import uuid

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class EmailLinkToken(Base):
    """Hashed one-time token mailed to an address to complete sign-in."""

    __tablename__ = "email_link_tokens"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=False, index=True)
    token_hash = Column(String, nullable=False, unique=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
