"""
Tests for Turnstile CAPTCHA validation.
"""

import logging
from datetime import datetime, timezone

import httpx
import pytest

from conftest import FakeClock
from saaslib.integrations.captcha import TurnstileValidator


def turnstile(payload: dict | None = None, error: Exception | None = None):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if error:
            raise error
        return httpx.Response(200, json=payload)

    return requests, httpx.AsyncClient(transport=httpx.MockTransport(handler))


OK = {
    "success": True,
    "action": "signup",
    "hostname": "app.example.com",
    "challenge_ts": "2025-01-01T11:59:00Z",
}


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))


class TestTurnstile:
    @pytest.mark.asyncio
    async def test_valid(self, clock):
        requests, client = turnstile(OK)
        validator = TurnstileValidator("secret", client, clock=clock)

        result = await validator.validate("tok", "1.2.3.4", "signup", "app.example.com")

        assert result.valid
        assert result.token_age_minutes == pytest.approx(1.0)
        form = dict(httpx.QueryParams(requests[0].content.decode()))
        assert form == {"secret": "secret", "response": "tok", "remoteip": "1.2.3.4"}

    @pytest.mark.asyncio
    async def test_rejected(self, clock):
        _, client = turnstile({"success": False, "error-codes": ["invalid-input-response"]})

        result = await TurnstileValidator("secret", client, clock=clock).validate("tok", None)

        assert not result.valid
        assert result.reason == "turnstile_failed"
        assert result.errors == ["invalid-input-response"]

    @pytest.mark.asyncio
    async def test_action_mismatch(self, clock):
        _, client = turnstile({**OK, "action": "login"})

        result = await TurnstileValidator("secret", client, clock=clock).validate(
            "tok", None, expected_action="signup"
        )

        assert result.reason == "action_mismatch"
        assert (result.expected, result.received) == ("signup", "login")

    @pytest.mark.asyncio
    async def test_hostname_mismatch(self, clock):
        _, client = turnstile({**OK, "hostname": "evil.example.com"})

        result = await TurnstileValidator("secret", client, clock=clock).validate(
            "tok", None, expected_hostname="app.example.com"
        )
        assert result.reason == "hostname_mismatch"

    @pytest.mark.asyncio
    async def test_network_failure(self, clock):
        _, client = turnstile(error=httpx.ConnectError("down"))

        result = await TurnstileValidator("secret", client, clock=clock).validate("tok", None)

        assert not result.valid
        assert result.errors == ["internal-error"]

    @pytest.mark.asyncio
    async def test_stale_token_warns(self, clock, caplog):
        _, client = turnstile({**OK, "challenge_ts": "2025-01-01T11:50:00Z"})

        with caplog.at_level(logging.WARNING, logger="saaslib.integrations.captcha"):
            result = await TurnstileValidator("secret", client, clock=clock).validate("tok", None)

        assert result.valid
        assert result.token_age_minutes == pytest.approx(10.0)
        assert "minutes old" in caplog.text
