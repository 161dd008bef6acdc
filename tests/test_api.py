"""
HTTP API tests: auth and OAuth routes, cookie handling, request policies,
error mapping and the generic owned-resource routes.
"""

import httpx
import pytest
import pytest_asyncio
from fastapi import APIRouter, Depends

from saaslib.api.app import create_app
from saaslib.api.errors import error_response
from saaslib.auth.context import AuthContext
from saaslib.auth.dependencies import require, require_admin, require_verified
from saaslib.core.errors import TransientStoreError
from saaslib.core.models import UserIdentity, UserRole
from saaslib.integrations.oauth import GoogleOAuth, OAuthManager
from saaslib.ownership.routes import build_resource_router


async def sign_up(client, email: str, password: str = "p12345678") -> dict:
    response = await client.post("/auth/sign-up", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()


def bearer(pair: dict) -> dict:
    return {"Authorization": f"Bearer {pair['access_token']}"}


# =============================================================================
# Auth routes
# =============================================================================


class TestAuthRoutes:
    @pytest.mark.asyncio
    async def test_sign_up_sets_refresh_cookie(self, client):
        response = await client.post(
            "/auth/sign-up", json={"email": "a@x.com", "password": "p12345678"}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["token_type"] == "bearer"
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"refresh_token={body['refresh_token']}")
        assert "HttpOnly" in cookie
        assert "Path=/auth" in cookie
        assert "samesite=strict" in cookie.lower()

    @pytest.mark.asyncio
    async def test_duplicate_sign_up(self, client):
        await sign_up(client, "a@x.com")
        response = await client.post(
            "/auth/sign-up", json={"email": "A@x.com", "password": "p12345678"}
        )

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, client):
        response = await client.post(
            "/auth/sign-up", json={"email": "not-an-email", "password": "p12345678"}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_wrong_password(self, client):
        await sign_up(client, "a@x.com")
        response = await client.post(
            "/auth/sign-in", json={"email": "a@x.com", "password": "wrong-password"}
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_credentials"
        assert response.headers["www-authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_me(self, client):
        pair = await sign_up(client, "a@x.com")

        response = await client.get("/auth/me", headers=bearer(pair))

        assert response.status_code == 200
        assert response.json()["email"] == "a@x.com"
        assert response.json()["email_verified"] is False
        assert "password_hash" not in response.json()

    @pytest.mark.asyncio
    async def test_me_requires_token(self, client):
        assert (await client.get("/auth/me")).status_code == 401
        bad = await client.get("/auth/me", headers={"Authorization": "Bearer nope"})
        assert bad.status_code == 401
        assert bad.json()["error"] == "invalid_token"

    @pytest.mark.asyncio
    async def test_refresh_from_cookie(self, client):
        first = await sign_up(client, "a@x.com")

        response = await client.post("/auth/refresh")

        assert response.status_code == 200
        assert response.json()["refresh_token"] != first["refresh_token"]

    @pytest.mark.asyncio
    async def test_replay_clears_cookie(self, client):
        first = await sign_up(client, "a@x.com")
        await client.post("/auth/refresh")
        client.cookies.clear()

        response = await client.post("/auth/refresh", json={"refresh_token": first["refresh_token"]})

        assert response.status_code == 401
        assert response.json()["error"] == "reuse_detected"
        assert "Max-Age=0" in response.headers["set-cookie"]

    @pytest.mark.asyncio
    async def test_refresh_without_token(self, client):
        response = await client.post("/auth/refresh")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_sign_out_kills_access_token(self, client):
        pair = await sign_up(client, "a@x.com")

        response = await client.post("/auth/sign-out")
        assert response.status_code == 200
        assert "Max-Age=0" in response.headers["set-cookie"]

        assert (await client.get("/auth/me", headers=bearer(pair))).status_code == 401

    @pytest.mark.asyncio
    async def test_verify_email(self, client, mailbox):
        pair = await sign_up(client, "a@x.com")
        code = mailbox.last_code("a@x.com")

        response = await client.post("/auth/verify-email", json={"code": code})
        assert response.status_code == 200
        assert response.json()["email_verified"] is True

        again = await client.post("/auth/verify-email", json={"code": code})
        assert again.status_code == 400
        assert again.json()["error"] == "code_already_used"

        me = await client.get("/auth/me", headers=bearer(pair))
        assert me.json()["email_verified"] is True

    @pytest.mark.asyncio
    async def test_forgot_password_does_not_enumerate(self, client):
        await sign_up(client, "a@x.com")

        known = await client.post("/auth/forgot-password", json={"email": "a@x.com"})
        unknown = await client.post("/auth/forgot-password", json={"email": "b@x.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    @pytest.mark.asyncio
    async def test_reset_password(self, client, mailbox):
        old = await sign_up(client, "a@x.com")
        await client.post("/auth/forgot-password", json={"email": "a@x.com"})

        response = await client.post(
            "/auth/reset-password",
            json={"code": mailbox.last_code("a@x.com"), "new_password": "p87654321"},
        )
        assert response.status_code == 200

        assert (await client.get("/auth/me", headers=bearer(old))).status_code == 401
        signed_in = await client.post(
            "/auth/sign-in", json={"email": "a@x.com", "password": "p87654321"}
        )
        assert signed_in.status_code == 200

    @pytest.mark.asyncio
    async def test_change_password(self, client):
        pair = await sign_up(client, "a@x.com")

        response = await client.post(
            "/auth/change-password",
            headers=bearer(pair),
            json={"current_password": "p12345678", "new_password": "p87654321"},
        )

        assert response.status_code == 200
        assert (await client.get("/auth/me", headers=bearer(response.json()))).status_code == 200
        assert (await client.get("/auth/me", headers=bearer(pair))).status_code == 401

    @pytest.mark.asyncio
    async def test_delete_account(self, client):
        pair = await sign_up(client, "a@x.com")

        response = await client.delete("/auth/me", headers=bearer(pair))

        assert response.status_code == 204
        signed_in = await client.post(
            "/auth/sign-in", json={"email": "a@x.com", "password": "p12345678"}
        )
        assert signed_in.status_code == 401


# =============================================================================
# OAuth routes
# =============================================================================


def fake_google(verified_email: bool = True) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "g-access"})
        return httpx.Response(200, json={
            "id": "g-42", "email": "g@x.com", "name": "G", "verified_email": verified_email,
        })

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def oauth_app(settings, storage, mailbox, clock, verified_email: bool = True):
    manager = OAuthManager(settings, [
        GoogleOAuth("gid", "gsecret", "https://testserver", fake_google(verified_email)),
    ])
    return create_app(settings, storage=storage, email_sender=mailbox, oauth=manager, clock=clock)


@pytest_asyncio.fixture
async def oauth_client(settings, storage, mailbox, clock):
    transport = httpx.ASGITransport(app=oauth_app(settings, storage, mailbox, clock))
    async with httpx.AsyncClient(transport=transport, base_url="https://testserver") as c:
        yield c


class TestOAuthRoutes:
    @pytest.mark.asyncio
    async def test_providers(self, oauth_client):
        response = await oauth_client.get("/auth/oauth/providers")
        assert response.json() == {"providers": ["google"]}

    @pytest.mark.asyncio
    async def test_full_flow(self, oauth_client, storage):
        authorize = await oauth_client.get("/auth/oauth/google/authorize")
        assert authorize.status_code == 302
        location = httpx.URL(authorize.headers["location"])
        assert location.host == "accounts.google.com"
        state = location.params["state"]

        callback = await oauth_client.get(
            "/auth/oauth/google/callback", params={"code": "c-1", "state": state}
        )
        assert callback.status_code == 302
        assert callback.headers["location"] == "https://app.example.com/oauth/complete"

        refreshed = await oauth_client.post("/auth/refresh")
        assert refreshed.status_code == 200
        user = await storage.users.get_user_by_link("google", "g-42")
        assert user is not None and user.email == "g@x.com"

    @pytest.mark.asyncio
    async def test_state_must_match_cookie(self, oauth_client, storage):
        await oauth_client.get("/auth/oauth/google/authorize")

        callback = await oauth_client.get(
            "/auth/oauth/google/callback", params={"code": "c-1", "state": "forged"}
        )

        assert callback.status_code == 302
        assert "error=oauth_state" in callback.headers["location"]
        assert await storage.users.get_user_by_link("google", "g-42") is None

    @pytest.mark.asyncio
    async def test_provider_error_redirects(self, oauth_client):
        await oauth_client.get("/auth/oauth/google/authorize")

        callback = await oauth_client.get(
            "/auth/oauth/google/callback", params={"error": "access_denied"}
        )

        assert callback.status_code == 302
        assert callback.headers["location"] == "https://app.example.com/sign-in?error=oauth_denied"

    @pytest.mark.asyncio
    async def test_refused_link_redirects(self, settings, storage, mailbox, clock):
        await storage.users.create_user(UserIdentity(email="g@x.com"))
        app = oauth_app(settings, storage, mailbox, clock, verified_email=False)
        transport = httpx.ASGITransport(app=app)

        async with httpx.AsyncClient(transport=transport, base_url="https://testserver") as c:
            authorize = await c.get("/auth/oauth/google/authorize")
            state = httpx.URL(authorize.headers["location"]).params["state"]
            callback = await c.get(
                "/auth/oauth/google/callback", params={"code": "c-1", "state": state}
            )

        assert callback.status_code == 302
        assert callback.headers["location"] == "https://app.example.com/sign-in?error=oauth_link"
        assert "refresh_token" not in callback.headers.get("set-cookie", "")
        assert await storage.users.get_user_by_link("google", "g-42") is None

    @pytest.mark.asyncio
    async def test_unknown_provider(self, oauth_client):
        response = await oauth_client.get("/auth/oauth/myspace/authorize")
        assert response.status_code == 400


# =============================================================================
# Owned resource routes
# =============================================================================


class TestResourceRoutes:
    @pytest.mark.asyncio
    async def test_crud(self, client):
        owner = await sign_up(client, "a@x.com")

        created = await client.post(
            "/notes", headers=bearer(owner), json={"title": "Plan", "body": "secret"}
        )
        assert created.status_code == 201
        note = created.json()
        assert note["is_owner"] is True and note["body"] == "secret"

        updated = await client.patch(
            f"/notes/{note['id']}", headers=bearer(owner), json={"title": "Plan B"}
        )
        assert updated.json()["title"] == "Plan B"
        assert updated.json()["body"] == "secret"

        listed = await client.get("/notes", headers=bearer(owner))
        assert [n["title"] for n in listed.json()] == ["Plan B"]

        deleted = await client.delete(f"/notes/{note['id']}", headers=bearer(owner))
        assert deleted.status_code == 204
        assert (await client.get(f"/notes/{note['id']}", headers=bearer(owner))).status_code == 403

    @pytest.mark.asyncio
    async def test_strangers_get_403_not_404(self, client):
        owner = await sign_up(client, "a@x.com")
        stranger = await sign_up(client, "b@x.com")
        note = (await client.post("/notes", headers=bearer(owner), json={"title": "Mine"})).json()

        hidden = await client.get(f"/notes/{note['id']}", headers=bearer(stranger))
        missing = await client.get("/notes/res_missing", headers=bearer(stranger))

        assert hidden.status_code == missing.status_code == 403
        assert hidden.json() == missing.json()

    @pytest.mark.asyncio
    async def test_shared_note_projection(self, client):
        owner = await sign_up(client, "a@x.com")
        stranger = await sign_up(client, "b@x.com")
        note = (await client.post(
            "/notes", headers=bearer(owner), json={"title": "Open", "body": "hidden", "shared": True}
        )).json()

        seen = await client.get(f"/notes/{note['id']}", headers=bearer(stranger))
        assert seen.json() == {"id": note["id"], "title": "Open", "is_owner": False}

        anonymous = await client.get(f"/notes/{note['id']}")
        assert anonymous.json()["is_owner"] is False

    @pytest.mark.asyncio
    async def test_anonymous_cannot_create(self, client):
        response = await client.post("/notes", json={"title": "x"})
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_verified_email_required(self, app, client, notes, mailbox):
        app.include_router(build_resource_router(
            notes, get_identity=require_verified(), prefix="/verified-notes"
        ))
        owner = await sign_up(client, "a@x.com")

        refused = await client.post("/verified-notes", headers=bearer(owner), json={"title": "x"})
        assert refused.status_code == 403
        assert refused.json()["error"] == "forbidden"

        await client.post("/auth/verify-email", json={"code": mailbox.last_code("a@x.com")})
        accepted = await client.post("/verified-notes", headers=bearer(owner), json={"title": "x"})
        assert accepted.status_code == 201

    @pytest.mark.asyncio
    async def test_quota(self, client):
        owner = await sign_up(client, "a@x.com")
        for i in range(3):
            r = await client.post("/notes", headers=bearer(owner), json={"title": f"n{i}"})
            assert r.status_code == 201

        response = await client.post("/notes", headers=bearer(owner), json={"title": "n3"})
        assert response.status_code == 403
        assert response.json()["error"] == "quota_exceeded"


# =============================================================================
# Request policies
# =============================================================================


@pytest.fixture
def guarded_app(app):
    """The test app plus a few routes behind request policies."""
    router = APIRouter(prefix="/guarded")

    @router.get("/admin")
    async def admin_only(ctx: AuthContext = Depends(require_admin())):
        return {"user_id": ctx.user_id}

    @router.get("/corp")
    async def corp_only(
        ctx: AuthContext = Depends(require(custom_check=lambda c: c.email.endswith("@corp.com"))),
    ):
        return {"user_id": ctx.user_id}

    app.include_router(router)
    return app


class TestRequestPolicies:
    @pytest.mark.asyncio
    async def test_admin_required(self, guarded_app, client, storage):
        pair = await sign_up(client, "a@x.com")

        refused = await client.get("/guarded/admin", headers=bearer(pair))
        assert refused.status_code == 403
        assert refused.json()["error"] == "forbidden"

        user = await storage.users.get_user_by_email("a@x.com")
        await storage.users.update_user(user.id, {"role": UserRole.ADMIN})
        allowed = await client.get("/guarded/admin", headers=bearer(pair))
        assert allowed.json() == {"user_id": user.id}

    @pytest.mark.asyncio
    async def test_custom_check(self, guarded_app, client):
        insider = await sign_up(client, "a@corp.com")
        outsider = await sign_up(client, "b@x.com")

        assert (await client.get("/guarded/corp", headers=bearer(insider))).status_code == 200
        assert (await client.get("/guarded/corp", headers=bearer(outsider))).status_code == 403

    @pytest.mark.asyncio
    async def test_signed_in_viewer_tagged_for_error_reports(self, client, storage, monkeypatch):
        tagged = []
        monkeypatch.setattr("saaslib.auth.dependencies.set_user", tagged.append)
        pair = await sign_up(client, "a@x.com")

        await client.get("/notes", headers=bearer(pair))
        await client.get("/notes")

        user = await storage.users.get_user_by_email("a@x.com")
        assert tagged == [user.id]


# =============================================================================
# Error mapping
# =============================================================================


class TestErrorMapping:
    def test_transient_errors_are_retryable(self):
        response = error_response(TransientStoreError())

        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"

    @pytest.mark.asyncio
    async def test_health(self, client):
        assert (await client.get("/health")).json() == {"status": "ok"}
