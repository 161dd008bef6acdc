"""
Application configuration.

Settings are loaded from environment variables (``SAASLIB_`` prefix) or a
``.env`` file once at process start, then passed explicitly to every
component that needs them. Nothing in the core reads the environment at
call time.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


class EmailProvider(str, Enum):
    """Which transactional email provider is active."""

    CONSOLE = "console"        # Log emails instead of sending (development)
    SES = "ses"                # AWS SES via boto3
    SENDGRID = "sendgrid"
    MAILERSEND = "mailersend"


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="SAASLIB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # Environment
    # ==========================================================================

    environment: str = "development"
    debug: bool = False
    frontend_url: str = "http://localhost:3000"
    cors_origins: str = "http://localhost:3000"

    # ==========================================================================
    # Tokens
    # ==========================================================================

    jwt_secret_key: str = "dev-jwt-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "saaslib"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 30

    # Refresh token cookie
    refresh_cookie_name: str = "refresh_token"
    refresh_cookie_secure: bool = True
    refresh_cookie_samesite: str = "strict"
    refresh_cookie_domain: str | None = None
    refresh_cookie_path: str = "/auth"

    # ==========================================================================
    # Auth flows
    # ==========================================================================

    password_min_length: int = 8
    verification_code_expire_hours: int = 24
    reset_code_expire_minutes: int = 60
    require_captcha_on_sign_up: bool = False

    # ==========================================================================
    # Email
    # ==========================================================================

    email_provider: EmailProvider = EmailProvider.CONSOLE
    email_from: str = "noreply@example.com"
    email_sender_name: str = ""
    sendgrid_api_key: str = ""
    mailersend_api_key: str = ""
    aws_ses_region: str = "us-east-1"
    aws_ses_access_key_id: str = ""
    aws_ses_secret_access_key: str = ""

    # ==========================================================================
    # CAPTCHA (Cloudflare Turnstile)
    # ==========================================================================

    turnstile_secret_key: str = ""
    turnstile_expected_action: str = "signup"

    # ==========================================================================
    # OAuth providers (optional)
    # ==========================================================================

    oauth_redirect_base_url: str = "http://localhost:8000"
    google_oauth_client_id: str = ""
    google_oauth_client_secret: str = ""
    facebook_oauth_client_id: str = ""
    facebook_oauth_client_secret: str = ""

    # ==========================================================================
    # Storage / quotas
    # ==========================================================================

    store_timeout_seconds: float = 5.0
    plans_file: str = ""
    email_templates_file: str = ""

    # ==========================================================================
    # Optional Services
    # ==========================================================================

    sentry_dsn: str = ""

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def frontend_hostname(self) -> str | None:
        """Hostname CAPTCHA tokens are expected to be issued for."""
        return urlparse(self.frontend_url).hostname

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_expire_minutes * 60


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Only process bootstrapping should call this; components receive the
    resulting Settings through their constructors.
    """
    return Settings()
