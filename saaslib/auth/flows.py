"""
Auth flows - sign-up, sign-in, email verification, password reset and
OAuth linking, built on the token service and the credential store.

Each flow is a short state machine over stored records:

    sign-up:   (none) -> unverified --verify_email--> verified
    reset:     requested (code issued) --reset_password--> done, all sessions revoked
    oauth:     link found -> sign in
               email found, no conflicting link -> link -> sign in
               otherwise -> new verified user -> sign in

Notification emails are sent after the state transition has been
committed. A failed send is logged and never undoes the transition.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt

from saaslib.auth.passwords import (
    dummy_hash,
    hash_password_async,
    verify_password_async,
)
from saaslib.auth.tokens import TokenService
from saaslib.config import Settings
from saaslib.core.errors import (
    CaptchaFailed,
    CodeAlreadyUsed,
    CodeExpired,
    Conflict,
    InvalidCode,
    InvalidCredentials,
    InvalidToken,
    ValidationFailed,
)
from saaslib.core.models import (
    CodePurpose,
    LinkedIdentity,
    OneTimeCode,
    TokenPair,
    UserIdentity,
)
from saaslib.core.utils import generate_secret, hash_secret, normalize_email, utc_now
from saaslib.integrations.captcha import CaptchaValidator
from saaslib.integrations.email import EmailService
from saaslib.storage.base import StorageProvider, guarded

logger = logging.getLogger(__name__)

OAUTH_LINK_ATTEMPTS = 3


class _LinkRace(Exception):
    """A concurrent first OAuth login won the unique-key race."""


class AuthFlowController:
    """Orchestrates the user-facing authentication flows."""

    def __init__(
        self,
        settings: Settings,
        storage: StorageProvider,
        tokens: TokenService,
        email: EmailService | None = None,
        captcha: CaptchaValidator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.storage = storage
        self.tokens = tokens
        self.email = email
        self.captcha = captcha
        self._clock = clock

    @property
    def users(self):
        return self.storage.users

    async def _call(self, aw):
        return await guarded(aw, self.settings.store_timeout_seconds)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _check_password_policy(self, password: str) -> None:
        if len(password) < self.settings.password_min_length:
            raise ValidationFailed(
                f"Password must be at least {self.settings.password_min_length} characters"
            )

    async def _notify(self, send: Callable[[], Awaitable[object]], what: str) -> None:
        """Send a notification; failures are logged, never raised."""
        if self.email is None:
            return
        try:
            outcome = await send()
        except Exception:
            logger.exception(f"Failed to send {what} email")
            return
        if outcome is not None and not getattr(outcome, "sent", True):
            logger.warning(f"{what} email was not delivered: {outcome.error}")

    async def _issue_code(self, user_id: str, purpose: CodePurpose, ttl: timedelta) -> str:
        """Issue a one-time code, invalidating earlier ones for the same purpose."""
        code = generate_secret(24)
        now = self._clock()
        await self._call(self.storage.codes.issue(OneTimeCode(
            code_hash=hash_secret(code),
            user_id=user_id,
            purpose=purpose,
            created_at=now,
            expires_at=now + ttl,
        )))
        return code

    async def _consume_code(self, code: str, purpose: CodePurpose) -> OneTimeCode:
        """
        Consume a one-time code exactly once.

        Raises:
            InvalidCode: Unknown, wrong purpose, or superseded by a newer code
            CodeAlreadyUsed: Already consumed
            CodeExpired: Past its expiry
        """
        code_hash = hash_secret(code)
        record = await self._call(self.storage.codes.get(code_hash))
        if record is None or record.purpose != purpose:
            raise InvalidCode()
        if record.is_consumed:
            raise CodeAlreadyUsed()
        if record.invalidated:
            raise InvalidCode()

        now = self._clock()
        if now >= record.expires_at:
            raise CodeExpired()

        if not await self._call(self.storage.codes.mark_consumed(code_hash, now)):
            # Consumed concurrently between the read and the write.
            raise CodeAlreadyUsed()
        return record

    async def get_user(self, user_id: str) -> UserIdentity:
        user = await self._call(self.users.get_user(user_id))
        if user is None or not user.is_active:
            raise InvalidToken("Unknown subject")
        return user

    # =========================================================================
    # Sign-up / sign-in
    # =========================================================================

    async def sign_up(
        self,
        email: str,
        password: str,
        name: str | None = None,
        captcha_token: str | None = None,
        client_ip: str | None = None,
    ) -> tuple[UserIdentity, TokenPair]:
        """
        Create an unverified account and start a session.

        A verification code is emailed; signing in is allowed before it
        is used.
        """
        email = normalize_email(email)
        if "@" not in email:
            raise ValidationFailed("Invalid email address")
        self._check_password_policy(password)

        if self.captcha is not None:
            if not captcha_token:
                raise CaptchaFailed(reason="missing_token")
            result = await self.captcha.validate(
                captcha_token,
                client_ip,
                self.settings.turnstile_expected_action,
                self.settings.frontend_hostname,
            )
            if not result.valid:
                logger.info(f"Sign-up rejected by CAPTCHA: {result.reason}")
                raise CaptchaFailed(reason=result.reason)
        elif self.settings.require_captcha_on_sign_up:
            raise CaptchaFailed("CAPTCHA is required but not configured")

        user = UserIdentity(
            email=email,
            name=name,
            password_hash=await hash_password_async(password),
        )
        try:
            user = await self._call(self.users.create_user(user))
        except Conflict:
            raise Conflict("Unable to create account with the provided details")

        code = await self._issue_code(
            user.id,
            CodePurpose.EMAIL_VERIFY,
            timedelta(hours=self.settings.verification_code_expire_hours),
        )
        pair = await self.tokens.issue(user.id)
        logger.info(f"User {user.id} signed up")

        await self._notify(lambda: self.email.send_verification(user, code), "verification")
        return user, pair

    async def sign_in(self, email: str, password: str) -> TokenPair:
        """
        Authenticate by email and password.

        Every failure raises the same InvalidCredentials, after the same
        amount of hashing work.
        """
        user = await self._call(self.users.get_user_by_email(normalize_email(email)))

        if user is None or not user.is_active or not user.password_hash:
            await verify_password_async(password, dummy_hash())
            raise InvalidCredentials()

        if not await verify_password_async(password, user.password_hash):
            raise InvalidCredentials()

        return await self.tokens.issue(user.id)

    async def sign_out(self, refresh_token: str) -> None:
        """Revoke the session (token family) the refresh token belongs to."""
        await self.tokens.revoke_refresh_token(refresh_token)

    async def sign_out_everywhere(self, user_id: str) -> int:
        return await self.tokens.revoke(user_id=user_id)

    # =========================================================================
    # Email verification
    # =========================================================================

    async def request_email_verification(self, user_id: str) -> None:
        """Email a fresh verification code. No-op if already verified."""
        user = await self.get_user(user_id)
        if user.email_verified:
            return

        code = await self._issue_code(
            user.id,
            CodePurpose.EMAIL_VERIFY,
            timedelta(hours=self.settings.verification_code_expire_hours),
        )
        await self._notify(lambda: self.email.send_verification(user, code), "verification")

    async def verify_email(self, code: str) -> UserIdentity:
        record = await self._consume_code(code, CodePurpose.EMAIL_VERIFY)
        user = await self._call(self.users.update_user(record.user_id, {"email_verified": True}))
        if user is None:
            raise InvalidCode()

        logger.info(f"User {user.id} verified their email")
        await self._notify(lambda: self.email.send_email_verified(user), "email verified")
        return user

    # =========================================================================
    # Passwords
    # =========================================================================

    async def request_password_reset(self, email: str) -> None:
        """
        Email a password reset code if the account exists.

        Returns nothing either way, so callers cannot enumerate accounts.
        """
        user = await self._call(self.users.get_user_by_email(normalize_email(email)))
        if user is None or not user.is_active:
            logger.debug("Password reset requested for unknown email")
            return

        code = await self._issue_code(
            user.id,
            CodePurpose.PASSWORD_RESET,
            timedelta(minutes=self.settings.reset_code_expire_minutes),
        )
        await self._notify(lambda: self.email.send_password_reset(user, code), "password reset")

    async def reset_password(self, code: str, new_password: str) -> None:
        """Set a new password from a reset code and revoke every session."""
        self._check_password_policy(new_password)
        record = await self._consume_code(code, CodePurpose.PASSWORD_RESET)

        updated = await self._call(self.users.update_user(
            record.user_id,
            {"password_hash": await hash_password_async(new_password)},
        ))
        if updated is None:
            raise InvalidCode()

        count = await self.tokens.revoke(user_id=record.user_id)
        logger.warning(f"Password reset for {record.user_id}: revoked {count} refresh tokens")

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> TokenPair:
        """Change password, sign out everywhere, and start a fresh session."""
        user = await self.get_user(user_id)
        if not await verify_password_async(current_password, user.password_hash):
            raise InvalidCredentials()
        self._check_password_policy(new_password)

        await self._call(self.users.update_user(
            user.id,
            {"password_hash": await hash_password_async(new_password)},
        ))
        await self.tokens.revoke(user_id=user.id)
        return await self.tokens.issue(user.id)

    # =========================================================================
    # Profile
    # =========================================================================

    async def update_profile(self, user_id: str, name: str | None = None) -> UserIdentity:
        await self.get_user(user_id)
        updates = {}
        if name is not None:
            updates["name"] = name
        return await self._call(self.users.update_user(user_id, updates))

    async def delete_account(self, user_id: str) -> None:
        """Soft-delete the account, end every session and void outstanding codes."""
        await self._call(self.users.soft_delete_user(user_id, self._clock()))
        await self.tokens.revoke(user_id=user_id)
        for purpose in CodePurpose:
            await self._call(self.storage.codes.invalidate(user_id, purpose))

    # =========================================================================
    # OAuth
    # =========================================================================

    async def _resolve_oauth_user(
        self,
        link: LinkedIdentity,
        email: str,
        name: str | None,
        email_verified: bool,
    ) -> tuple[UserIdentity, bool]:
        """Returns (user, created)."""
        user = await self._call(self.users.get_user_by_link(link.provider, link.provider_account_id))
        if user is not None:
            if not user.is_active:
                raise InvalidCredentials()
            return user, False

        existing = await self._call(self.users.get_user_by_email(email))
        if existing is not None:
            if not existing.is_active:
                raise InvalidCredentials()
            if existing.get_link(link.provider) is not None or not email_verified:
                # Another account from this provider, or an unverified
                # provider email, must not take over an existing account.
                raise Conflict("Unable to link this account")
            try:
                user = await self._call(self.users.link_identity(existing.id, link))
            except Conflict as e:
                raise _LinkRace() from e
            if not user.email_verified:
                user = await self._call(self.users.update_user(user.id, {"email_verified": True}))
            logger.info(f"Linked {link.provider} account to existing user {user.id}")
            return user, False

        user = UserIdentity(
            email=email,
            name=name,
            email_verified=email_verified,
            linked_identities=[link],
        )
        try:
            user = await self._call(self.users.create_user(user))
        except Conflict as e:
            raise _LinkRace() from e
        logger.info(f"Created user {user.id} from {link.provider} sign-in")
        return user, True

    async def oauth_sign_in(
        self,
        provider: str,
        provider_account_id: str,
        email: str,
        name: str | None = None,
        email_verified: bool = True,
    ) -> tuple[UserIdentity, TokenPair]:
        """
        Complete sign-in from a finished external OAuth handshake.

        Concurrent first logins from the same external account race on
        the store's unique link key; the loser retries as a lookup and
        signs in to the identity the winner created.
        """
        email = normalize_email(email)
        link = LinkedIdentity(provider=provider, provider_account_id=provider_account_id)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_LinkRace),
                stop=stop_after_attempt(OAUTH_LINK_ATTEMPTS),
            ):
                with attempt:
                    user, created = await self._resolve_oauth_user(
                        link, email, name, email_verified
                    )
        except RetryError as e:
            raise Conflict("Unable to link this account") from e

        pair = await self.tokens.issue(user.id)
        if created:
            await self._notify(lambda: self.email.send_welcome(user), "welcome")
        return user, pair
