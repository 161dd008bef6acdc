# =============================================================================
# Token Service
# =============================================================================
#
# Session tokens come in pairs:
#   - access token:  short-lived signed JWT (sub, fid, iat, exp). Verified by
#                    signature + clock only, never stored.
#   - refresh token: long-lived opaque secret, stored by SHA-256 digest and
#                    rotated on every use.
#
# Every refresh token belongs to a family (all tokens descending from one
# sign-in). Presenting a token that is no longer live (already rotated or
# revoked) is treated as theft: the whole family is revoked before the
# caller hears about it.
#
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import jwt

from saaslib.config import Settings
from saaslib.core.errors import (
    InvalidToken,
    ReuseDetected,
    TokenExpired,
    UnknownToken,
)
from saaslib.core.models import AccessIdentity, RefreshTokenRecord, TokenPair
from saaslib.core.utils import generate_id, generate_secret, hash_secret, utc_now
from saaslib.storage.base import CredentialStore, RefreshTokenStore, guarded

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"


class TokenService:
    """Issues, verifies, rotates, and revokes session tokens."""

    def __init__(
        self,
        settings: Settings,
        store: RefreshTokenStore,
        users: CredentialStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.store = store
        self.users = users
        self._clock = clock

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_expire_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_expire_days)

    async def _call(self, aw):
        return await guarded(aw, self.settings.store_timeout_seconds)

    # =========================================================================
    # Creation
    # =========================================================================

    def _encode_access(
        self,
        user_id: str,
        family_id: str,
        now: datetime,
        extra_claims: dict[str, Any] | None = None,
    ) -> str:
        payload = {
            **(extra_claims or {}),
            "sub": user_id,
            "fid": family_id,
            "iat": now,
            "exp": now + self.access_ttl,
            "iss": self.settings.jwt_issuer,
            "type": ACCESS_TOKEN_TYPE,
            "jti": generate_id("at"),
        }
        return jwt.encode(
            payload,
            self.settings.jwt_secret_key,
            algorithm=self.settings.jwt_algorithm,
        )

    def _new_refresh(
        self, user_id: str, family_id: str, now: datetime
    ) -> tuple[str, RefreshTokenRecord]:
        token = generate_secret(32)
        record = RefreshTokenRecord(
            token_hash=hash_secret(token),
            user_id=user_id,
            family_id=family_id,
            issued_at=now,
            expires_at=now + self.refresh_ttl,
        )
        return token, record

    def _pair(self, access_token: str, refresh_token: str) -> TokenPair:
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    async def issue(self, user_id: str, extra_claims: dict[str, Any] | None = None) -> TokenPair:
        """
        Start a new session for a user.

        Creates a new token family with one live refresh record and signs
        an access token referencing that family.
        """
        if self.users is not None:
            user = await self._call(self.users.get_user(user_id))
            if user is None or not user.is_active:
                raise InvalidToken("Unknown subject")

        now = self._clock()
        family_id = generate_id("fam")
        refresh_token, record = self._new_refresh(user_id, family_id, now)
        await self._call(self.store.insert(record))

        logger.debug(f"Issued token family {family_id} for {user_id}")
        return self._pair(self._encode_access(user_id, family_id, now, extra_claims), refresh_token)

    # =========================================================================
    # Verification
    # =========================================================================

    def verify_access(self, token: str) -> AccessIdentity:
        """
        Verify an access token's signature, type and expiry.

        Pure: no storage lookup.

        Raises:
            TokenExpired: Token has expired
            InvalidToken: Token is malformed, forged, or not an access token
        """
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret_key,
                algorithms=[self.settings.jwt_algorithm],
                issuer=self.settings.jwt_issuer,
                # Expiry is checked against the injected clock below
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "fid", "iat", "exp", "type"],
                },
            )
        except jwt.InvalidTokenError as e:
            raise InvalidToken(f"Invalid token: {e}") from e

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise InvalidToken(f"Expected access token, got {payload.get('type')}")

        try:
            expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
            issued_at = datetime.fromtimestamp(payload["iat"], tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidToken("Invalid token timestamps") from e

        if self._clock() >= expires_at:
            raise TokenExpired()

        return AccessIdentity(
            user_id=payload["sub"],
            family_id=payload["fid"],
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=payload.get("jti", ""),
            claims=payload,
        )

    async def authenticate(self, token: str) -> AccessIdentity:
        """
        Verify an access token and confirm its family has not been revoked.

        Used by request authentication so that sign-out, password resets
        and reuse detection take effect before the access token expires.
        """
        identity = self.verify_access(token)
        active = await self._call(self.store.family_is_active(identity.family_id))
        if not active:
            raise InvalidToken("Session has been revoked")
        return identity

    # =========================================================================
    # Rotation
    # =========================================================================

    async def _revoke_for_reuse(self, record: RefreshTokenRecord, now: datetime) -> None:
        count = await self._call(self.store.revoke_family(record.family_id, now))
        logger.warning(
            f"Refresh token reuse detected for user {record.user_id}: "
            f"revoked family {record.family_id} ({count} records)"
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        """
        Exchange a live refresh token for a new pair.

        The presented token is superseded; its replacement joins the same
        family.

        Raises:
            UnknownToken: No such refresh token
            TokenExpired: Refresh token has expired
            ReuseDetected: Token was already rotated or revoked. The whole
                family has been revoked by the time this is raised.
        """
        record = await self._call(self.store.get_by_hash(hash_secret(refresh_token)))
        if record is None:
            raise UnknownToken()

        now = self._clock()
        if record.is_expired(now):
            raise TokenExpired()

        if not record.is_live(now):
            await self._revoke_for_reuse(record, now)
            raise ReuseDetected()

        if self.users is not None:
            user = await self._call(self.users.get_user(record.user_id))
            if user is None or not user.is_active:
                await self._call(self.store.revoke_family(record.family_id, now))
                raise UnknownToken()

        new_token, new_record = self._new_refresh(record.user_id, record.family_id, now)
        rotated = await self._call(self.store.rotate(record.id, new_record, now))
        if not rotated:
            # Lost a race with a concurrent refresh of the same token.
            await self._revoke_for_reuse(record, now)
            raise ReuseDetected()

        access_token = self._encode_access(record.user_id, record.family_id, now)
        return self._pair(access_token, new_token)

    # =========================================================================
    # Revocation
    # =========================================================================

    async def revoke(self, *, user_id: str | None = None, family_id: str | None = None) -> int:
        """
        Revoke all refresh records of a user or of one family.

        Returns the number of records revoked.
        """
        if (user_id is None) == (family_id is None):
            raise ValueError("Pass exactly one of user_id or family_id")

        now = self._clock()
        if user_id is not None:
            count = await self._call(self.store.revoke_user(user_id, now))
            logger.info(f"Revoked all sessions for {user_id} ({count} records)")
        else:
            count = await self._call(self.store.revoke_family(family_id, now))
            logger.info(f"Revoked token family {family_id} ({count} records)")
        return count

    async def revoke_refresh_token(self, refresh_token: str) -> bool:
        """Revoke the family a presented refresh token belongs to (sign-out)."""
        record = await self._call(self.store.get_by_hash(hash_secret(refresh_token)))
        if record is None:
            return False
        await self.revoke(family_id=record.family_id)
        return True
