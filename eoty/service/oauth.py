from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from eoty.config import Settings
from eoty.logging import get_logger
from eoty.service.errors import InternalError, ValidationError

logger = get_logger(__name__)

EXCHANGE_FAILED = "Failed to exchange authorization code"


@dataclass
class OAuthIdentity:
    """Provider user info normalized to the fields the orchestrator needs."""

    provider: str
    provider_id: str
    email: Optional[str]
    given_name: str
    surname: str
    picture: Optional[str] = None


def _split_name(full_name: Optional[str]) -> tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class OAuthProvider:
    """Server-side authorization-code exchange against one provider."""

    name = ""
    display_name = ""
    token_url = ""
    userinfo_url = ""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        frontend_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def default_redirect_uri(self) -> str:
        return f"{self.frontend_url}/auth/{self.name}/callback"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self.transport
        )

    async def exchange(self, code: Optional[str], redirect_uri: Optional[str] = None) -> OAuthIdentity:
        """Trade ``code`` for an access token and fetch normalized user info.

        Raises:
            ValidationError: missing code, rejected exchange or user-info failure
            InternalError: provider credentials are not configured
        """
        if not code:
            raise ValidationError("Authorization code is required")
        if not self.configured:
            logger.error("oauth_credentials_missing", provider=self.name)
            raise InternalError(f"{self.display_name} OAuth not configured on server")

        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri or self.default_redirect_uri,
        }
        async with self._client() as client:
            try:
                token_response = await client.post(
                    self.token_url,
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "oauth_token_exchange_rejected",
                    provider=self.name,
                    status_code=exc.response.status_code,
                    body=exc.response.text[:500],
                )
                raise ValidationError(EXCHANGE_FAILED) from exc
            except (httpx.HTTPError, ValueError) as exc:
                logger.error("oauth_token_exchange_error", provider=self.name, error=str(exc))
                raise ValidationError(EXCHANGE_FAILED) from exc

            access_token = (
                token_result.get("access_token") if isinstance(token_result, dict) else None
            )
            if not access_token:
                logger.error("oauth_no_access_token", provider=self.name)
                raise ValidationError(EXCHANGE_FAILED)

            userinfo_failed = f"Failed to get user information from {self.display_name}"
            try:
                userinfo = await self._fetch_userinfo(client, access_token)
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "oauth_userinfo_rejected",
                    provider=self.name,
                    status_code=exc.response.status_code,
                    body=exc.response.text[:500],
                )
                raise ValidationError(userinfo_failed) from exc
            except (httpx.HTTPError, ValueError) as exc:
                logger.error("oauth_userinfo_error", provider=self.name, error=str(exc))
                raise ValidationError(userinfo_failed) from exc

        if not isinstance(userinfo, dict) or not userinfo.get("id"):
            logger.error("oauth_userinfo_invalid", provider=self.name)
            raise ValidationError(userinfo_failed)
        identity = self.normalize(userinfo)
        logger.info("oauth_exchange_success", provider=self.name, provider_id=identity.provider_id)
        return identity

    async def _fetch_userinfo(self, client: httpx.AsyncClient, access_token: str) -> Any:
        raise NotImplementedError

    def normalize(self, userinfo: Dict[str, Any]) -> OAuthIdentity:
        raise NotImplementedError


class GoogleProvider(OAuthProvider):
    name = "google"
    display_name = "Google"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"

    async def _fetch_userinfo(self, client: httpx.AsyncClient, access_token: str) -> Any:
        response = await client.get(
            self.userinfo_url, headers={"Authorization": f"Bearer {access_token}"}
        )
        response.raise_for_status()
        return response.json()

    def normalize(self, userinfo: Dict[str, Any]) -> OAuthIdentity:
        first, rest = _split_name(userinfo.get("name"))
        return OAuthIdentity(
            provider=self.name,
            provider_id=str(userinfo["id"]),
            email=userinfo.get("email"),
            given_name=userinfo.get("given_name") or first,
            surname=userinfo.get("family_name") or rest,
            picture=userinfo.get("picture"),
        )


class FacebookProvider(OAuthProvider):
    name = "facebook"
    display_name = "Facebook"
    token_url = "https://graph.facebook.com/v19.0/oauth/access_token"
    userinfo_url = "https://graph.facebook.com/v19.0/me"

    async def _fetch_userinfo(self, client: httpx.AsyncClient, access_token: str) -> Any:
        response = await client.get(
            self.userinfo_url,
            params={
                "fields": "id,name,email,first_name,last_name,picture",
                "access_token": access_token,
            },
        )
        response.raise_for_status()
        return response.json()

    def normalize(self, userinfo: Dict[str, Any]) -> OAuthIdentity:
        first, rest = _split_name(userinfo.get("name"))
        picture = userinfo.get("picture")
        picture_url = None
        if isinstance(picture, dict):
            picture_url = (picture.get("data") or {}).get("url")
        elif isinstance(picture, str):
            picture_url = picture
        return OAuthIdentity(
            provider=self.name,
            provider_id=str(userinfo["id"]),
            email=userinfo.get("email"),
            given_name=userinfo.get("first_name") or first,
            surname=userinfo.get("last_name") or rest,
            picture=picture_url,
        )


def build_providers(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, OAuthProvider]:
    common = {
        "frontend_url": settings.frontend_url,
        "timeout": settings.oauth_timeout_seconds,
        "transport": transport,
    }
    return {
        "google": GoogleProvider(
            settings.google_client_id, settings.google_client_secret, **common
        ),
        "facebook": FacebookProvider(
            settings.facebook_app_id, settings.facebook_app_secret, **common
        ),
    }
