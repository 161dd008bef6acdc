# =============================================================================
# Sentry Error Tracking Integration
# =============================================================================
#
# Setup:
#   1. Create a Python project at sentry.io
#   2. Copy the DSN to .env: SAASLIB_SENTRY_DSN=https://...@sentry.io/...
#
# Usage:
#   create_app() calls init_sentry(settings) at startup.
#
# Expected failures (bad credentials, forbidden, quota, validation) are
# part of normal operation and are not reported. Retryable store errors
# are.
#
# =============================================================================

import logging

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from saaslib.config import Settings
from saaslib.core.errors import SaaslibError

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = ("authorization", "cookie", "set-cookie", "x-api-key")


def init_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry error tracking.

    Returns True if initialized, False if skipped.
    """
    if not settings.sentry_dsn:
        logger.info("SENTRY_DSN not set - error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=0.1 if settings.is_production else 1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],
        # Tokens and emails must not leave the process
        send_default_pii=False,
        before_send=filter_event,
        before_send_transaction=filter_transaction,
    )

    logger.info(f"Sentry initialized for {settings.environment}")
    return True


def filter_event(event: dict, hint: dict) -> dict | None:
    """Drop expected errors and scrub credentials from request data."""
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]
        if isinstance(exc_value, SaaslibError) and not exc_value.retryable:
            return None

    request = event.get("request")
    if request:
        headers = request.get("headers") or {}
        for key in list(headers.keys()):
            if key.lower() in SENSITIVE_HEADERS:
                headers[key] = "[Filtered]"
        if "cookies" in request:
            request["cookies"] = "[Filtered]"
        if "data" in request:
            request["data"] = "[Filtered]"

    return event


def filter_transaction(event: dict, hint: dict) -> dict | None:
    """Filter out noisy transactions."""
    transaction = event.get("transaction", "")
    if transaction in ("/health", "/healthz", "/ready"):
        return None
    return event


def set_user(user_id: str) -> None:
    """Attach the user id (never the email) to subsequent error reports."""
    if sentry_sdk.get_client().is_active():
        sentry_sdk.set_user({"id": user_id})
