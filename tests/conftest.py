"""
Shared fixtures.

Everything runs against the in-memory stores with a controllable clock,
so expiry can be tested by moving time forward instead of sleeping.
"""

import re
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from saaslib.api.app import create_app
from saaslib.auth.context import AuthContext
from saaslib.auth.flows import AuthFlowController
from saaslib.auth.tokens import TokenService
from saaslib.config import EmailProvider, Settings
from saaslib.core.models import OwnedResource, UserIdentity
from saaslib.integrations.billing import UserPlanBilling
from saaslib.integrations.captcha import CaptchaResult
from saaslib.integrations.email import EmailOutcome, EmailService
from saaslib.ownership.policy import OwnershipPolicy, admin_override, owner_only, plan_quota
from saaslib.ownership.projector import ApiProjector
from saaslib.ownership.service import OwnedResourceService
from saaslib.storage import create_memory_storage


# =============================================================================
# Test doubles
# =============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmailSender:
    """EmailSender that keeps every message instead of sending it."""

    provider = EmailProvider.CONSOLE

    def __init__(self, fail: bool = False):
        self.messages: list[dict] = []
        self.fail = fail

    async def send(self, to, subject, html_body, unsubscribe_url=None) -> EmailOutcome:
        if self.fail:
            raise RuntimeError("smtp down")
        self.messages.append({"to": to, "subject": subject, "html": html_body})
        return EmailOutcome(sent=True, provider=self.provider)

    def to(self, address: str) -> list[dict]:
        return [m for m in self.messages if m["to"] == address]

    def last_code(self, address: str) -> str:
        """The code embedded in the most recent link sent to an address."""
        match = re.search(r"code=([A-Za-z0-9_\-]+)", self.to(address)[-1]["html"])
        assert match, "no code in email"
        return match.group(1)


class StubCaptcha:
    def __init__(self, result: CaptchaResult):
        self.result = result
        self.calls: list[tuple] = []

    async def validate(self, token, client_ip, expected_action=None, expected_hostname=None):
        self.calls.append((token, client_ip, expected_action, expected_hostname))
        return self.result


class Note(OwnedResource):
    title: str
    body: str = ""
    shared: bool = False


def note_visible(note: Note, viewer: AuthContext | None) -> bool:
    return note.shared or owner_only(note, viewer)


NOTE_QUOTAS = {"free": 3, "pro": 100, "enterprise": None}


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings():
    """Settings for tests: short, explicit, no environment."""
    return Settings(
        _env_file=None,
        environment="test",
        jwt_secret_key="test-secret-key-that-is-long-enough-for-hs256",
        frontend_url="https://app.example.com",
        access_token_expire_minutes=15,
        refresh_token_expire_days=30,
        store_timeout_seconds=2.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    """In-memory storage with a small latency so concurrent calls interleave."""
    return create_memory_storage(latency=0.001)


@pytest.fixture
def tokens(settings, storage, clock):
    return TokenService(settings, storage.tokens, users=storage.users, clock=clock)


@pytest.fixture
def mailbox():
    return RecordingEmailSender()


@pytest.fixture
def email_service(mailbox, settings):
    return EmailService(mailbox, settings)


@pytest.fixture
def flows(settings, storage, tokens, email_service, clock):
    return AuthFlowController(settings, storage, tokens, email=email_service, clock=clock)


@pytest_asyncio.fixture
async def user(storage):
    """A stored, verified user on the free plan."""
    return await storage.users.create_user(
        UserIdentity(email="owner@example.com", email_verified=True)
    )


@pytest_asyncio.fixture
async def other_user(storage):
    return await storage.users.create_user(
        UserIdentity(email="other@example.com", email_verified=True)
    )


@pytest.fixture
def notes(storage):
    """Owned-resource service for notes: owner-only edits, shared notes readable."""
    return OwnedResourceService(
        name="notes",
        model=Note,
        store=storage.resources,
        policy=OwnershipPolicy(
            can_view=admin_override(note_visible),
            max_entities=plan_quota(NOTE_QUOTAS),
        ),
        projector=ApiProjector(
            public_fields=("id", "title"),
            owner_fields=("body", "shared", "owner_id", "created_at"),
        ),
        billing=UserPlanBilling(storage.users),
    )


@pytest.fixture
def app(settings, storage, mailbox, notes, clock):
    return create_app(
        settings,
        storage=storage,
        email_sender=mailbox,
        resources=[notes],
        clock=clock,
    )


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="https://testserver") as c:
        yield c
