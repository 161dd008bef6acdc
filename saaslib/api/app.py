"""
FastAPI application factory.

Wires settings, storage, the token service, auth flows and the external
collaborators (email, CAPTCHA, OAuth) into one app. Every collaborator
can be injected; anything not given is built from settings.

    settings = get_settings()
    app = create_app(settings, resources=[notes_service])
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Iterable

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from saaslib.api.errors import install_error_handlers
from saaslib.auth.flows import AuthFlowController
from saaslib.auth.routes import router as auth_router
from saaslib.auth.tokens import TokenService
from saaslib.config import Settings, get_settings
from saaslib.config_loader import ConfigLoader
from saaslib.core.utils import utc_now
from saaslib.integrations.captcha import CaptchaValidator, TurnstileValidator
from saaslib.integrations.email import EmailSender, EmailService, build_email_sender
from saaslib.integrations.oauth import OAuthManager, build_oauth_manager
from saaslib.integrations.sentry import init_sentry
from saaslib.ownership.routes import build_resource_router
from saaslib.ownership.service import OwnedResourceService
from saaslib.storage import StorageProvider, create_memory_storage

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    storage: StorageProvider | None = None,
    email_sender: EmailSender | None = None,
    captcha: CaptchaValidator | None = None,
    oauth: OAuthManager | None = None,
    resources: Iterable[OwnedResourceService] = (),
    http_client: httpx.AsyncClient | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    settings = settings or get_settings()
    storage = storage or create_memory_storage()
    owns_client = http_client is None
    http_client = http_client or httpx.AsyncClient(timeout=10.0)

    loader = ConfigLoader(settings)
    sender = email_sender or build_email_sender(settings, http_client=http_client)
    email = EmailService(sender, settings, loader.load_email_templates())

    if captcha is None and settings.turnstile_secret_key:
        captcha = TurnstileValidator(settings.turnstile_secret_key, http_client, clock=clock)

    tokens = TokenService(settings, storage.tokens, users=storage.users, clock=clock)
    auth = AuthFlowController(settings, storage, tokens, email=email, captcha=captcha, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if init_sentry(settings):
            logger.info("Sentry error tracking enabled")
        logger.info(f"saaslib API starting in {settings.environment} mode")
        yield
        if owns_client:
            await http_client.aclose()
        logger.info("saaslib API shutting down")

    app = FastAPI(
        title="saaslib API",
        description="Accounts, sessions and owner-scoped resources",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )

    # =========================================================================
    # State
    # =========================================================================

    app.state.settings = settings
    app.state.storage = storage
    app.state.tokens = tokens
    app.state.auth = auth
    app.state.email = email
    app.state.oauth = oauth or build_oauth_manager(settings, http_client)
    app.state.resources = {}

    # =========================================================================
    # Middleware, errors, routers
    # =========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    app.include_router(auth_router)
    for service in resources:
        app.state.resources[service.name] = service
        app.include_router(build_resource_router(service))

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
