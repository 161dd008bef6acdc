"""
Core data models for saaslib.

These are the records the identity core reads and writes: users and
their linked external identities, refresh token records, one-time codes,
and the base model every ownable resource extends.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from saaslib.core.utils import generate_id, utc_now


# =============================================================================
# Enums
# =============================================================================


class UserRole(str, Enum):
    """Platform-wide role of a user."""

    USER = "user"
    ADMIN = "admin"


class CodePurpose(str, Enum):
    """What a one-time code may be used for."""

    EMAIL_VERIFY = "email_verify"
    PASSWORD_RESET = "password_reset"


# =============================================================================
# Users
# =============================================================================


class LinkedIdentity(BaseModel):
    """An external account (Google, Facebook, ...) linked to a user."""

    provider: str
    provider_account_id: str
    linked_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, str]:
        return (self.provider, self.provider_account_id)


class UserIdentity(BaseModel):
    """A user as stored by the credential store."""

    id: str = Field(default_factory=lambda: generate_id("user"))
    email: str
    name: str | None = None
    password_hash: str | None = None  # None for OAuth-only accounts
    email_verified: bool = False
    linked_identities: list[LinkedIdentity] = Field(default_factory=list)
    plan: str = "free"
    role: UserRole = UserRole.USER

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def get_link(self, provider: str) -> LinkedIdentity | None:
        """Get the linked identity for a provider, if any."""
        for link in self.linked_identities:
            if link.provider == provider:
                return link
        return None


class UserResponse(BaseModel):
    """User data returned to the client (no sensitive fields)."""

    id: str
    email: str
    name: str | None
    plan: str
    email_verified: bool
    providers: list[str]
    created_at: datetime

    @classmethod
    def from_user(cls, user: UserIdentity) -> UserResponse:
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            plan=user.plan,
            email_verified=user.email_verified,
            providers=[link.provider for link in user.linked_identities],
            created_at=user.created_at,
        )


# =============================================================================
# Tokens
# =============================================================================


class RefreshTokenRecord(BaseModel):
    """
    Stored state of one refresh token.

    All records descending from one sign-in share a ``family_id``. A record
    is live until it is revoked, superseded by rotation, or expires.
    """

    id: str = Field(default_factory=lambda: generate_id("rt"))
    token_hash: str
    user_id: str
    family_id: str
    issued_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    revoked: bool = False
    revoked_at: datetime | None = None
    superseded_by: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def is_live(self, now: datetime | None = None) -> bool:
        return (
            not self.revoked
            and self.superseded_by is None
            and not self.is_expired(now)
        )


class TokenPair(BaseModel):
    """Access and refresh token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until access token expires


class AccessIdentity(BaseModel):
    """The verified claims of an access token."""

    user_id: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    token_id: str = ""
    claims: dict[str, Any] = Field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.user_id


# =============================================================================
# One-time codes
# =============================================================================


class OneTimeCode(BaseModel):
    """A single-use verification or password-reset code (stored by digest)."""

    code_hash: str
    user_id: str
    purpose: CodePurpose
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    consumed_at: datetime | None = None
    invalidated: bool = False

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None


# =============================================================================
# Ownable resources
# =============================================================================


class OwnedResource(BaseModel):
    """
    Base model for any resource governed by an owner reference.

    ``owner_id`` is assigned by the server at creation and never changes.
    """

    id: str = Field(default_factory=lambda: generate_id("res"))
    owner_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
