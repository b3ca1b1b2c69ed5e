"""Public identity provider utilities."""

from services.providers.providers import (
    BaseIdentityProvider,
    ProviderRegistry,
    build_provider_registry,
    get_identity_provider,
    provider_capabilities,
)
from services.providers.types import ProviderConfig, ProviderKey, SocialProfile

__all__ = [
    "BaseIdentityProvider",
    "ProviderConfig",
    "ProviderKey",
    "ProviderRegistry",
    "SocialProfile",
    "build_provider_registry",
    "get_identity_provider",
    "provider_capabilities",
]
