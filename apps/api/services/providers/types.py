"""Identity provider contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional


ProviderKey = Literal["google", "facebook", "apple"]


@dataclass(frozen=True)
class ProviderConfig:
    name: ProviderKey
    client_id: str
    client_secret: str
    display_name: str


@dataclass(frozen=True)
class SocialProfile:
    """Verified profile returned by a social provider."""

    provider: ProviderKey
    provider_id: str
    email: Optional[str]
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
