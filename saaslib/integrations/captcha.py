# =============================================================================
# CAPTCHA Integration (Cloudflare Turnstile)
# =============================================================================
#
# Setup:
#   1. Create a Turnstile widget in the Cloudflare dashboard
#   2. Set the widget action to match SAASLIB_TURNSTILE_EXPECTED_ACTION
#   3. Set env vars:
#      - SAASLIB_TURNSTILE_SECRET_KEY=...
#      - SAASLIB_FRONTEND_URL=https://app.example.com (expected hostname)
#
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Protocol

import httpx
from pydantic import BaseModel, Field

from saaslib.core.utils import utc_now

logger = logging.getLogger(__name__)

# Tokens older than this still validate, but are logged.
STALE_TOKEN_MINUTES = 4


class CaptchaResult(BaseModel):
    """Outcome of a CAPTCHA check."""

    valid: bool
    reason: str | None = None  # turnstile_failed, action_mismatch, hostname_mismatch
    errors: list[str] = Field(default_factory=list)
    expected: str | None = None
    received: str | None = None
    token_age_minutes: float | None = None


class CaptchaValidator(Protocol):
    async def validate(
        self,
        token: str,
        client_ip: str | None,
        expected_action: str | None = None,
        expected_hostname: str | None = None,
    ) -> CaptchaResult:
        ...


class TurnstileValidator:
    """Validate Turnstile tokens against Cloudflare's siteverify endpoint."""

    VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"

    def __init__(
        self,
        secret_key: str,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.secret_key = secret_key
        self.client = client or httpx.AsyncClient(timeout=10.0)
        self._clock = clock

    async def _siteverify(self, token: str, client_ip: str | None) -> dict[str, Any]:
        form = {"secret": self.secret_key, "response": token}
        if client_ip:
            form["remoteip"] = client_ip

        try:
            response = await self.client.post(self.VERIFY_URL, data=form)
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Turnstile validation error: {e}")
            return {"success": False, "error-codes": ["internal-error"]}

    async def validate(
        self,
        token: str,
        client_ip: str | None,
        expected_action: str | None = None,
        expected_hostname: str | None = None,
    ) -> CaptchaResult:
        """
        Verify a token, then check the action and hostname it was issued for.

        Network failures are reported as an invalid result with the
        ``internal-error`` code rather than raised.
        """
        result = await self._siteverify(token, client_ip)

        if not result.get("success"):
            return CaptchaResult(
                valid=False,
                reason="turnstile_failed",
                errors=result.get("error-codes", []),
            )

        action = result.get("action")
        if expected_action and action != expected_action:
            return CaptchaResult(
                valid=False,
                reason="action_mismatch",
                expected=expected_action,
                received=action,
            )

        hostname = result.get("hostname")
        if expected_hostname and hostname != expected_hostname:
            return CaptchaResult(
                valid=False,
                reason="hostname_mismatch",
                expected=expected_hostname,
                received=hostname,
            )

        age_minutes = None
        challenge_ts = result.get("challenge_ts")
        if challenge_ts:
            try:
                challenged_at = datetime.fromisoformat(challenge_ts.replace("Z", "+00:00"))
                age_minutes = (self._clock() - challenged_at).total_seconds() / 60
            except ValueError:
                logger.warning(f"Unparseable Turnstile challenge_ts: {challenge_ts}")

        if age_minutes is not None and age_minutes > STALE_TOKEN_MINUTES:
            logger.warning(f"Turnstile token is {age_minutes:.1f} minutes old")

        return CaptchaResult(valid=True, token_age_minutes=age_minutes)
