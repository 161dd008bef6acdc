"""
Tests for the token service.

Core principle: a refresh token is used once. Presenting it again means
it leaked, and the whole session family goes.
"""

import asyncio

import jwt
import pytest

from saaslib.auth.tokens import TokenService
from saaslib.core.errors import (
    AuthError,
    InvalidToken,
    ReuseDetected,
    TokenExpired,
    TransientStoreError,
    UnknownToken,
)
from saaslib.core.utils import hash_secret


# =============================================================================
# Issue / verify
# =============================================================================


class TestAccessTokens:
    @pytest.mark.asyncio
    async def test_issue_and_verify(self, tokens, user):
        pair = await tokens.issue(user.id)

        identity = tokens.verify_access(pair.access_token)
        assert identity.user_id == user.id
        assert identity.family_id.startswith("fam_")
        assert pair.token_type == "bearer"
        assert pair.expires_in == 15 * 60

    @pytest.mark.asyncio
    async def test_valid_until_expiry(self, tokens, user, clock):
        pair = await tokens.issue(user.id)

        clock.advance(minutes=14, seconds=59)
        tokens.verify_access(pair.access_token)

        clock.advance(seconds=1)
        with pytest.raises(TokenExpired):
            tokens.verify_access(pair.access_token)

    @pytest.mark.asyncio
    async def test_forged_signature_rejected(self, tokens, user, settings):
        pair = await tokens.issue(user.id)
        claims = jwt.decode(pair.access_token, options={"verify_signature": False})
        forged = jwt.encode(claims, "not-the-secret", algorithm=settings.jwt_algorithm)

        with pytest.raises(InvalidToken):
            tokens.verify_access(forged)

    def test_garbage_rejected(self, tokens):
        with pytest.raises(InvalidToken):
            tokens.verify_access("not-a-jwt")

    @pytest.mark.asyncio
    async def test_state_token_is_not_an_access_token(self, tokens, settings, clock):
        other = jwt.encode(
            {"sub": "user_x", "fid": "fam_x", "iat": clock(), "exp": clock(),
             "iss": settings.jwt_issuer, "type": "oauth_state"},
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(InvalidToken):
            tokens.verify_access(other)

    @pytest.mark.asyncio
    async def test_issue_for_unknown_user(self, tokens):
        with pytest.raises(InvalidToken):
            await tokens.issue("user_missing")

    @pytest.mark.asyncio
    async def test_authenticate_sees_revocation(self, tokens, user):
        pair = await tokens.issue(user.id)
        await tokens.authenticate(pair.access_token)

        await tokens.revoke(user_id=user.id)

        # Signature check alone still passes; the session check does not
        tokens.verify_access(pair.access_token)
        with pytest.raises(InvalidToken):
            await tokens.authenticate(pair.access_token)


# =============================================================================
# Rotation
# =============================================================================


class TestRefresh:
    @pytest.mark.asyncio
    async def test_rotation_chain(self, tokens, user, storage):
        pair = await tokens.issue(user.id)
        family = tokens.verify_access(pair.access_token).family_id

        current = pair
        for _ in range(3):
            current = await tokens.refresh(current.refresh_token)
            assert tokens.verify_access(current.access_token).family_id == family

        records = await storage.tokens.list_family(family)
        assert len(records) == 4
        assert sum(1 for r in records if r.superseded_by is None) == 1

    @pytest.mark.asyncio
    async def test_refresh_token_stored_by_digest(self, tokens, user, storage):
        pair = await tokens.issue(user.id)

        assert await storage.tokens.get_by_hash(pair.refresh_token) is None
        assert await storage.tokens.get_by_hash(hash_secret(pair.refresh_token)) is not None

    @pytest.mark.asyncio
    async def test_replay_revokes_family(self, tokens, user):
        first = await tokens.issue(user.id)
        second = await tokens.refresh(first.refresh_token)

        with pytest.raises(ReuseDetected):
            await tokens.refresh(first.refresh_token)

        # Everything descending from the same sign-in is now dead
        with pytest.raises(ReuseDetected):
            await tokens.refresh(second.refresh_token)
        with pytest.raises(InvalidToken):
            await tokens.authenticate(second.access_token)

    @pytest.mark.asyncio
    async def test_replay_leaves_other_sessions_alone(self, tokens, user):
        laptop = await tokens.issue(user.id)
        phone = await tokens.issue(user.id)
        await tokens.refresh(laptop.refresh_token)

        with pytest.raises(ReuseDetected):
            await tokens.refresh(laptop.refresh_token)

        await tokens.refresh(phone.refresh_token)

    @pytest.mark.asyncio
    async def test_unknown_token(self, tokens):
        with pytest.raises(UnknownToken):
            await tokens.refresh("never-issued")

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, tokens, user, clock):
        pair = await tokens.issue(user.id)
        clock.advance(days=30)

        with pytest.raises(TokenExpired):
            await tokens.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_deleted_user_cannot_refresh(self, tokens, user, storage, clock):
        pair = await tokens.issue(user.id)
        await storage.users.soft_delete_user(user.id, clock())

        with pytest.raises(UnknownToken):
            await tokens.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_concurrent_refresh_single_winner(self, tokens, user):
        pair = await tokens.issue(user.id)

        results = await asyncio.gather(
            tokens.refresh(pair.refresh_token),
            tokens.refresh(pair.refresh_token),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ReuseDetected)

        # The loser's detection revoked the winner's family too
        with pytest.raises(AuthError):
            await tokens.refresh(successes[0].refresh_token)


# =============================================================================
# Revocation
# =============================================================================


class TestRevocation:
    @pytest.mark.asyncio
    async def test_revoke_user_ends_all_sessions(self, tokens, user):
        a = await tokens.issue(user.id)
        b = await tokens.issue(user.id)

        assert await tokens.revoke(user_id=user.id) == 2

        for pair in (a, b):
            with pytest.raises(AuthError):
                await tokens.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_revoke_requires_exactly_one_target(self, tokens):
        with pytest.raises(ValueError):
            await tokens.revoke()
        with pytest.raises(ValueError):
            await tokens.revoke(user_id="a", family_id="b")

    @pytest.mark.asyncio
    async def test_revoke_refresh_token(self, tokens, user):
        pair = await tokens.issue(user.id)

        assert await tokens.revoke_refresh_token(pair.refresh_token) is True
        assert await tokens.revoke_refresh_token("unknown") is False
        with pytest.raises(InvalidToken):
            await tokens.authenticate(pair.access_token)


# =============================================================================
# Store failures
# =============================================================================


class SlowTokenStore:
    """Delegates to a real store but hangs on lookups."""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def get_by_hash(self, token_hash):
        await asyncio.sleep(1)
        return await self.inner.get_by_hash(token_hash)


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_timeout_is_retryable_not_security_failure(self, settings, storage, user, clock):
        fast = TokenService(settings, storage.tokens, users=storage.users, clock=clock)
        pair = await fast.issue(user.id)

        slow = TokenService(
            settings.model_copy(update={"store_timeout_seconds": 0.01}),
            SlowTokenStore(storage.tokens),
            users=storage.users,
            clock=clock,
        )
        with pytest.raises(TransientStoreError) as exc:
            await slow.refresh(pair.refresh_token)

        assert exc.value.retryable
        assert not isinstance(exc.value, AuthError)
        # The token was not burned by the failed attempt
        await fast.refresh(pair.refresh_token)
