# =============================================================================
# OAuth Integration (Google, Facebook)
# =============================================================================
#
# Setup (Google):
#   1. Go to https://console.cloud.google.com/apis/credentials
#   2. Create OAuth 2.0 Client ID (Web application)
#   3. Add authorized redirect URI: {OAUTH_REDIRECT_BASE_URL}/auth/oauth/google/callback
#   4. Set env vars:
#      - SAASLIB_GOOGLE_OAUTH_CLIENT_ID=...
#      - SAASLIB_GOOGLE_OAUTH_CLIENT_SECRET=...
#
# Setup (Facebook):
#   1. Go to https://developers.facebook.com/apps
#   2. Create app, add Facebook Login product
#   3. Set env vars:
#      - SAASLIB_FACEBOOK_OAUTH_CLIENT_ID=...
#      - SAASLIB_FACEBOOK_OAUTH_CLIENT_SECRET=...
#
# This module only completes the external handshake. Linking the
# resulting identity to a user happens in AuthFlowController.oauth_sign_in.
#
# =============================================================================

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt
from pydantic import BaseModel

from saaslib.config import Settings
from saaslib.core.utils import generate_secret, utc_now

logger = logging.getLogger(__name__)

STATE_TTL = timedelta(minutes=10)


# =============================================================================
# Models
# =============================================================================


class OAuthUserInfo(BaseModel):
    """User info retrieved from OAuth provider."""
    provider: str  # "google", "facebook"
    provider_user_id: str
    email: str
    name: str
    picture_url: str | None = None
    email_verified: bool = True


class OAuthError(Exception):
    """OAuth flow error."""
    pass


# =============================================================================
# Base provider
# =============================================================================


class OAuthProvider:
    """Authorization-code flow shared by the concrete providers."""

    name: str = ""
    AUTHORIZE_URL: str = ""
    TOKEN_URL: str = ""
    USERINFO_URL: str = ""
    SCOPE: str = ""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_base_url: str,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_base_url = redirect_base_url.rstrip("/")
        self.http = http_client or httpx.AsyncClient(timeout=10.0)

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def redirect_uri(self) -> str:
        return f"{self.redirect_base_url}/auth/oauth/{self.name}/callback"

    def authorize_params(self) -> dict[str, str]:
        return {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.SCOPE,
        }

    def get_authorize_url(self, state: str) -> str:
        """Get URL to redirect the user to for sign-in."""
        if not self.is_configured:
            raise OAuthError(f"{self.name} OAuth not configured")
        params = {**self.authorize_params(), "state": state}
        return f"{self.AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for provider tokens."""
        if not self.is_configured:
            raise OAuthError(f"{self.name} OAuth not configured")

        try:
            response = await self.http.post(
                self.TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
        except httpx.HTTPError as e:
            raise OAuthError(f"Token exchange failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"{self.name} token exchange failed: {response.text}")
            raise OAuthError(f"Token exchange failed: {response.status_code}")

        return response.json()

    async def fetch_user_info(self, access_token: str) -> dict[str, Any]:
        raise NotImplementedError

    def parse_user_info(self, data: dict[str, Any]) -> OAuthUserInfo:
        raise NotImplementedError

    async def authenticate(self, code: str) -> OAuthUserInfo:
        """Complete OAuth flow: exchange code and get user info."""
        tokens = await self.exchange_code(code)
        if "access_token" not in tokens:
            raise OAuthError("Provider returned no access token")
        data = await self.fetch_user_info(tokens["access_token"])
        info = self.parse_user_info(data)
        if not info.email:
            raise OAuthError(f"{self.name} account has no email address")
        return info


# =============================================================================
# Google OAuth
# =============================================================================


class GoogleOAuth(OAuthProvider):
    """Google OAuth 2.0 implementation."""

    name = "google"
    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
    SCOPE = "openid email profile"

    def authorize_params(self) -> dict[str, str]:
        return {**super().authorize_params(), "prompt": "select_account"}

    async def fetch_user_info(self, access_token: str) -> dict[str, Any]:
        response = await self.http.get(
            self.USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if response.status_code != 200:
            logger.error(f"Google userinfo failed: {response.text}")
            raise OAuthError(f"Failed to get user info: {response.status_code}")
        return response.json()

    def parse_user_info(self, data: dict[str, Any]) -> OAuthUserInfo:
        email = data.get("email", "")
        return OAuthUserInfo(
            provider=self.name,
            provider_user_id=str(data["id"]),
            email=email,
            name=data.get("name", email.split("@")[0]),
            picture_url=data.get("picture"),
            email_verified=data.get("verified_email", False),
        )


# =============================================================================
# Facebook OAuth
# =============================================================================


class FacebookOAuth(OAuthProvider):
    """Facebook OAuth 2.0 implementation."""

    name = "facebook"
    AUTHORIZE_URL = "https://www.facebook.com/v18.0/dialog/oauth"
    TOKEN_URL = "https://graph.facebook.com/v18.0/oauth/access_token"
    USERINFO_URL = "https://graph.facebook.com/v18.0/me"
    SCOPE = "email,public_profile"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        if not self.is_configured:
            raise OAuthError("facebook OAuth not configured")

        try:
            response = await self.http.get(
                self.TOKEN_URL,
                params={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                },
            )
        except httpx.HTTPError as e:
            raise OAuthError(f"Token exchange failed: {e}") from e

        if response.status_code != 200:
            raise OAuthError(f"Token exchange failed: {response.status_code}")

        return response.json()

    async def fetch_user_info(self, access_token: str) -> dict[str, Any]:
        response = await self.http.get(
            self.USERINFO_URL,
            params={
                "fields": "id,email,name,picture.type(large)",
                "access_token": access_token,
            },
        )
        if response.status_code != 200:
            raise OAuthError(f"Failed to get user info: {response.status_code}")
        return response.json()

    def parse_user_info(self, data: dict[str, Any]) -> OAuthUserInfo:
        return OAuthUserInfo(
            provider=self.name,
            provider_user_id=str(data["id"]),
            email=data.get("email", ""),
            name=data.get("name", ""),
            picture_url=data.get("picture", {}).get("data", {}).get("url"),
            email_verified=True,  # Facebook only returns confirmed emails
        )


# =============================================================================
# OAuth Manager
# =============================================================================


class OAuthManager:
    """
    Manage all OAuth providers.

    CSRF state is a short-lived signed token rather than server-side
    session state; the callback route additionally compares it with a
    cookie set at authorize time.
    """

    def __init__(self, settings: Settings, providers: list[OAuthProvider]):
        self.settings = settings
        self.providers = {p.name: p for p in providers}

    def get_available_providers(self) -> list[str]:
        """Get list of configured OAuth providers."""
        return [name for name, p in self.providers.items() if p.is_configured]

    def get_provider(self, name: str) -> OAuthProvider:
        provider = self.providers.get(name)
        if provider is None or not provider.is_configured:
            raise OAuthError(f"Unknown provider: {name}")
        return provider

    def create_state(self, provider: str) -> str:
        """Create a signed state token for CSRF protection."""
        now = utc_now()
        payload = {
            "provider": provider,
            "nonce": generate_secret(16),
            "iat": now,
            "exp": now + STATE_TTL,
            "type": "oauth_state",
        }
        return jwt.encode(payload, self.settings.jwt_secret_key, algorithm=self.settings.jwt_algorithm)

    def validate_state(self, state: str) -> str | None:
        """Validate a state token. Returns provider if valid."""
        try:
            payload = jwt.decode(
                state,
                self.settings.jwt_secret_key,
                algorithms=[self.settings.jwt_algorithm],
            )
        except jwt.InvalidTokenError:
            return None
        if payload.get("type") != "oauth_state":
            return None
        return payload.get("provider")

    def get_authorize_url(self, provider: str, state: str) -> str:
        """Get authorization URL for a provider."""
        return self.get_provider(provider).get_authorize_url(state)

    async def authenticate(self, provider: str, code: str) -> OAuthUserInfo:
        """Complete authentication for a provider."""
        return await self.get_provider(provider).authenticate(code)


def build_oauth_manager(
    settings: Settings, http_client: httpx.AsyncClient | None = None
) -> OAuthManager:
    """Construct the manager with every provider known to settings."""
    base = settings.oauth_redirect_base_url
    return OAuthManager(settings, [
        GoogleOAuth(
            settings.google_oauth_client_id,
            settings.google_oauth_client_secret,
            base,
            http_client,
        ),
        FacebookOAuth(
            settings.facebook_oauth_client_id,
            settings.facebook_oauth_client_secret,
            base,
            http_client,
        ),
    ])
