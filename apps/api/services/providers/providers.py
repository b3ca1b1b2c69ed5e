"""Social identity providers and the registry built from settings."""

from __future__ import annotations

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import httpx
from jose import JWTError, jwt

from config import Settings, settings
from services.auth_errors import AuthUnavailable, ProviderNotConfigured, ProviderProfileError
from services.providers.types import ProviderConfig, ProviderKey, SocialProfile

logger = logging.getLogger(__name__)

GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
FACEBOOK_ME_URL = "https://graph.facebook.com/me"
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"
APPLE_ISSUER = "https://appleid.apple.com"

ProviderRegistry = Dict[str, ProviderConfig]


def build_provider_registry(source: Optional[Settings] = None) -> ProviderRegistry:
    """Map each fully configured social provider to its credentials."""
    cfg = source or settings
    candidates = (
        ProviderConfig("google", cfg.GOOGLE_CLIENT_ID, cfg.GOOGLE_CLIENT_SECRET, "Google"),
        ProviderConfig("facebook", cfg.FACEBOOK_CLIENT_ID, cfg.FACEBOOK_CLIENT_SECRET, "Facebook"),
        ProviderConfig("apple", cfg.APPLE_ID, cfg.APPLE_SECRET, "Apple"),
    )
    return {
        item.name: item
        for item in candidates
        if item.client_id.strip() and item.client_secret.strip()
    }


def provider_capabilities(registry: Mapping[str, ProviderConfig]) -> Dict[str, bool]:
    return {
        "credentials": True,
        "passwordless": bool(settings.PASSWORDLESS_CONVENIENCE_ENABLED),
        "email_link": True,
        "google": "google" in registry,
        "facebook": "facebook" in registry,
        "apple": "apple" in registry,
    }


class BaseIdentityProvider(ABC):
    name: ProviderKey

    def __init__(self, config: ProviderConfig, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        self._http_client = http_client

    async def _get_json(self, url: str, *, params: Optional[Dict[str, str]] = None,
                        headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=10) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("%s profile request failed: %s", self.name, exc)
            raise AuthUnavailable() from exc

        if response.status_code >= 500:
            logger.warning("%s returned %s", self.name, response.status_code)
            raise AuthUnavailable()
        if response.status_code != 200:
            raise ProviderProfileError()
        try:
            data = response.json()
        except ValueError as exc:
            logger.warning("%s returned a non-JSON body", self.name)
            raise AuthUnavailable() from exc
        if not isinstance(data, dict):
            logger.warning("%s returned an unexpected payload", self.name)
            raise AuthUnavailable()
        return data

    @abstractmethod
    async def fetch_profile(self, credentials: Mapping[str, Any]) -> SocialProfile:
        raise NotImplementedError


class GoogleIdentityProvider(BaseIdentityProvider):
    name = "google"

    def _require_audience(self, token_info: Mapping[str, Any]) -> None:
        client_id = self.config.client_id
        if client_id not in {token_info.get("aud"), token_info.get("azp")}:
            logger.warning("Rejected Google token issued to another client")
            raise ProviderProfileError()

    async def fetch_profile(self, credentials: Mapping[str, Any]) -> SocialProfile:
        access_token = str(credentials.get("access_token") or "").strip()
        id_token = str(credentials.get("id_token") or "").strip()
        if access_token:
            # Only tokens issued to this client may sign in.
            token_info = await self._get_json(GOOGLE_TOKENINFO_URL, params={"access_token": access_token})
            self._require_audience(token_info)
            data = await self._get_json(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            if token_info.get("sub") and str(data.get("sub") or "") != str(token_info["sub"]):
                raise ProviderProfileError()
        elif id_token:
            data = await self._get_json(GOOGLE_TOKENINFO_URL, params={"id_token": id_token})
            self._require_audience(data)
        else:
            raise ProviderProfileError("Google sign-in requires an access_token or id_token.")

        if str(data.get("email_verified", "")).lower() not in {"true", "1"}:
            raise ProviderProfileError("Google account email is not verified.")
        return SocialProfile(
            provider="google",
            provider_id=str(data.get("sub") or ""),
            email=data.get("email"),
            display_name=data.get("name"),
            avatar_url=data.get("picture"),
        )


class FacebookIdentityProvider(BaseIdentityProvider):
    name = "facebook"

    async def fetch_profile(self, credentials: Mapping[str, Any]) -> SocialProfile:
        access_token = str(credentials.get("access_token") or "").strip()
        if not access_token:
            raise ProviderProfileError("Facebook sign-in requires an access_token.")
        proof = hmac.new(
            self.config.client_secret.encode("utf-8"),
            access_token.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        data = await self._get_json(
            FACEBOOK_ME_URL,
            params={
                "fields": "id,name,email,picture.type(large)",
                "access_token": access_token,
                "appsecret_proof": proof,
            },
        )
        picture = ((data.get("picture") or {}).get("data") or {}).get("url")
        return SocialProfile(
            provider="facebook",
            provider_id=str(data.get("id") or ""),
            email=data.get("email"),
            display_name=data.get("name"),
            avatar_url=picture,
        )


class AppleIdentityProvider(BaseIdentityProvider):
    name = "apple"

    async def fetch_profile(self, credentials: Mapping[str, Any]) -> SocialProfile:
        id_token = str(credentials.get("id_token") or "").strip()
        if not id_token:
            raise ProviderProfileError("Apple sign-in requires an id_token.")
        jwks = await self._get_json(APPLE_KEYS_URL)
        try:
            claims = jwt.decode(
                id_token,
                jwks,
                algorithms=["RS256"],
                audience=self.config.client_id,
                issuer=APPLE_ISSUER,
                options={"verify_at_hash": False},
            )
        except JWTError as exc:
            raise ProviderProfileError() from exc

        # Apple only sends the name on the very first authorization, from the client.
        return SocialProfile(
            provider="apple",
            provider_id=str(claims.get("sub") or ""),
            email=claims.get("email"),
            display_name=credentials.get("name") or None,
            avatar_url=None,
        )


_PROVIDER_CLASSES = {
    "google": GoogleIdentityProvider,
    "facebook": FacebookIdentityProvider,
    "apple": AppleIdentityProvider,
}


def get_identity_provider(
    name: str,
    registry: Mapping[str, ProviderConfig],
    http_client: Optional[httpx.AsyncClient] = None,
) -> BaseIdentityProvider:
    config = registry.get(name)
    if config is None or name not in _PROVIDER_CLASSES:
        raise ProviderNotConfigured(f"Sign-in with {name} is not available.")
    return _PROVIDER_CLASSES[name](config, http_client=http_client)
