"""Identity normalization and reconciliation onto local user rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from services.auth_errors import DuplicateEmail, InvalidIdentity

if TYPE_CHECKING:
    from models.user import User
    from services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

EMAIL_PROVIDER = "email"
SOCIAL_PROVIDERS = ("google", "facebook", "apple")
KNOWN_PROVIDERS = (EMAIL_PROVIDER,) + SOCIAL_PROVIDERS


def normalize_email(value: Any) -> str:
    """Lowercase and trim an email for matching and storage."""
    return str(value or "").strip().lower()


@dataclass(frozen=True)
class Identity:
    """An authenticated identity assertion from a provider or the local store."""

    email: str
    provider: str = EMAIL_PROVIDER
    provider_id: str = ""
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    password_hash: Optional[str] = None
    # Set when the caller has proven ownership of a local email address.
    email_verified: Optional[bool] = None

    @property
    def is_social(self) -> bool:
        return self.provider != EMAIL_PROVIDER


class IdentityReconciler:
    """Find-or-create-and-merge keyed on email."""

    def __init__(self, store: "CredentialStore") -> None:
        self.store = store

    async def reconcile(self, identity: Identity) -> "User":
        user, _created = await self.reconcile_outcome(identity)
        return user

    async def reconcile_outcome(self, identity: Identity) -> Tuple["User", bool]:
        """Return the reconciled user and whether this call created it."""
        email = normalize_email(identity.email)
        if not email:
            raise InvalidIdentity()
        if identity.provider not in KNOWN_PROVIDERS:
            raise InvalidIdentity(f"Unknown identity provider: {identity.provider}")

        user = await self.store.find_by_email(email)
        if user is None:
            verified = identity.is_social if identity.email_verified is None else identity.email_verified
            try:
                user = await self.store.create(
                    {
                        "email": email,
                        "provider": identity.provider,
                        "provider_id": identity.provider_id or "",
                        "name": identity.display_name,
                        "picture": identity.avatar_url,
                        "email_verified": verified,
                        "password_hash": identity.password_hash,
                    }
                )
                logger.info("Created user %s via %s", user.id, identity.provider)
                return user, True
            except DuplicateEmail:
                # Another request won the insert; merge into its row.
                user = await self.store.find_by_email(email)
                if user is None:
                    raise

        # First establishment wins for password, provider and verification.
        fields: Dict[str, Any] = {
            "name": identity.display_name if identity.display_name is not None else user.name,
            "picture": identity.avatar_url if identity.avatar_url is not None else user.picture,
        }
        if not identity.is_social and identity.email_verified and not user.email_verified:
            fields["email_verified"] = True
        user = await self.store.update(user.id, fields)
        logger.info("Reconciled user %s via %s", user.id, identity.provider)
        return user, False
