"""
Storage abstraction layer.

All persistence goes through these interfaces. This allows swapping
implementations (in-memory → PostgreSQL, DynamoDB, Mongo, etc.)
without changing the identity core.

Each interface names the operations that must be atomic against the
shared store. A database-backed implementation maps them onto a
conditional update, a unique index, or a transaction:

- RefreshTokenStore.rotate       → UPDATE ... WHERE superseded_by IS NULL AND NOT revoked
- CredentialStore.link_identity  → unique index on (provider, provider_account_id)
- ResourceStore.insert_with_quota → count + insert in one transaction
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, TypeVar

from pydantic import BaseModel

from saaslib.core.errors import TransientStoreError
from saaslib.core.models import (
    CodePurpose,
    LinkedIdentity,
    OneTimeCode,
    RefreshTokenRecord,
    UserIdentity,
)

T = TypeVar("T")


# =============================================================================
# Storage Interfaces
# =============================================================================


class CredentialStore(ABC):
    """
    Persists user identities.

    Email and every (provider, provider_account_id) pair are unique.
    Violations raise ``Conflict``.
    """

    @abstractmethod
    async def create_user(self, user: UserIdentity) -> UserIdentity:
        """Insert a new user. Raises Conflict on a duplicate email or link."""
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> UserIdentity | None:
        pass

    @abstractmethod
    async def get_user_by_email(self, email: str) -> UserIdentity | None:
        """Lookup by normalized email."""
        pass

    @abstractmethod
    async def get_user_by_link(
        self, provider: str, provider_account_id: str
    ) -> UserIdentity | None:
        pass

    @abstractmethod
    async def update_user(
        self, user_id: str, updates: dict[str, Any]
    ) -> UserIdentity | None:
        """Partial update. Returns the updated user, or None if missing."""
        pass

    @abstractmethod
    async def link_identity(self, user_id: str, link: LinkedIdentity) -> UserIdentity:
        """
        Attach an external identity to a user.

        Raises Conflict if the pair is already linked to anyone, or if the
        user already has a different account linked for that provider.
        """
        pass

    @abstractmethod
    async def soft_delete_user(self, user_id: str, now: datetime) -> bool:
        pass


class RefreshTokenStore(ABC):
    """Persists refresh token records."""

    @abstractmethod
    async def insert(self, record: RefreshTokenRecord) -> None:
        pass

    @abstractmethod
    async def get_by_hash(self, token_hash: str) -> RefreshTokenRecord | None:
        pass

    @abstractmethod
    async def rotate(
        self,
        record_id: str,
        replacement: RefreshTokenRecord,
        now: datetime,
    ) -> bool:
        """
        Atomically supersede a live record and insert its replacement.

        Returns False, changing nothing, if the record is no longer live.
        """
        pass

    @abstractmethod
    async def revoke_family(self, family_id: str, now: datetime) -> int:
        """Revoke every record of a family. Returns the count newly revoked."""
        pass

    @abstractmethod
    async def revoke_user(self, user_id: str, now: datetime) -> int:
        """Revoke every record owned by a user."""
        pass

    @abstractmethod
    async def family_is_active(self, family_id: str) -> bool:
        """True while at least one record of the family is unrevoked."""
        pass

    @abstractmethod
    async def list_family(self, family_id: str) -> list[RefreshTokenRecord]:
        pass


class CodeStore(ABC):
    """Persists one-time verification/reset codes."""

    @abstractmethod
    async def issue(self, code: OneTimeCode) -> None:
        """
        Insert a code, invalidating every earlier unconsumed code for the
        same user and purpose.
        """
        pass

    @abstractmethod
    async def get(self, code_hash: str) -> OneTimeCode | None:
        pass

    @abstractmethod
    async def mark_consumed(self, code_hash: str, now: datetime) -> bool:
        """Consume a code only if it is still unconsumed and valid."""
        pass

    @abstractmethod
    async def invalidate(self, user_id: str, purpose: CodePurpose) -> int:
        """Void every unconsumed code for a user and purpose. Returns the count."""
        pass


class ResourceStore(ABC):
    """
    Storage for owned resources, as documents grouped in collections.

    AWS Implementation: PostgreSQL via RDS/Aurora, or DynamoDB
    Local Implementation: in-memory
    """

    @abstractmethod
    async def get(self, collection: str, id: str) -> dict[str, Any] | None:
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Query documents with optional equality filters."""
        pass

    @abstractmethod
    async def count(self, collection: str, filters: dict[str, Any] | None = None) -> int:
        pass

    @abstractmethod
    async def insert_with_quota(
        self,
        collection: str,
        id: str,
        data: dict[str, Any],
        owner_id: str,
        max_count: int | None,
    ) -> bool:
        """
        Insert a document unless the owner already holds ``max_count``
        documents in the collection. The count and the insert are atomic.

        Returns False if the quota would be exceeded.
        """
        pass

    @abstractmethod
    async def update(self, collection: str, id: str, updates: dict[str, Any]) -> bool:
        """Partial update of a document."""
        pass

    @abstractmethod
    async def delete(self, collection: str, id: str) -> bool:
        pass


# =============================================================================
# Storage Provider (dependency injection container)
# =============================================================================


class StorageProvider(BaseModel):
    """
    Container for all storage backends.

    Initialize once at app startup with appropriate implementations.
    Services receive this and use the interfaces without knowing
    the underlying implementation.
    """

    model_config = {"arbitrary_types_allowed": True}

    users: CredentialStore
    tokens: RefreshTokenStore
    codes: CodeStore
    resources: ResourceStore


# =============================================================================
# Store access guard
# =============================================================================


async def guarded(call: Awaitable[T], timeout: float | None = None) -> T:
    """
    Await a store call, mapping timeouts and connection failures to
    TransientStoreError.

    Security-relevant errors raised by the store (Conflict etc.) pass
    through untouched.
    """
    try:
        if timeout:
            return await asyncio.wait_for(call, timeout=timeout)
        return await call
    except asyncio.TimeoutError as e:
        raise TransientStoreError("Store access timed out") from e
    except (ConnectionError, OSError) as e:
        raise TransientStoreError(f"Store unavailable: {e}") from e
