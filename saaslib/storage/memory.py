"""
In-memory storage implementations for development and tests.

Every compound operation runs under an ``asyncio.Lock`` so that the
atomicity contracts of the interfaces hold for concurrent coroutines in
one process. ``latency`` inserts an artificial await before each
operation, which lets tests interleave concurrent callers the way a
network round-trip would.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from saaslib.core.errors import Conflict
from saaslib.core.models import (
    CodePurpose,
    LinkedIdentity,
    OneTimeCode,
    RefreshTokenRecord,
    UserIdentity,
)
from saaslib.core.utils import normalize_email, utc_now
from saaslib.storage.base import (
    CodeStore,
    CredentialStore,
    RefreshTokenStore,
    ResourceStore,
    StorageProvider,
)


class _LatencyMixin:
    latency: float = 0.0

    async def _io(self) -> None:
        # Always yield, so callers interleave like real I/O.
        await asyncio.sleep(self.latency)


# =============================================================================
# Credential Store
# =============================================================================


class InMemoryCredentialStore(_LatencyMixin, CredentialStore):
    """In-memory user storage with unique email and link indexes."""

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._lock = asyncio.Lock()
        self._users: dict[str, UserIdentity] = {}
        self._by_email: dict[str, str] = {}  # email -> user_id
        self._by_link: dict[tuple[str, str], str] = {}  # (provider, account) -> user_id

    async def create_user(self, user: UserIdentity) -> UserIdentity:
        await self._io()
        async with self._lock:
            email = normalize_email(user.email)
            if email in self._by_email:
                raise Conflict()
            for link in user.linked_identities:
                if link.key in self._by_link:
                    raise Conflict()

            stored = user.model_copy(deep=True, update={"email": email})
            self._users[stored.id] = stored
            self._by_email[email] = stored.id
            for link in stored.linked_identities:
                self._by_link[link.key] = stored.id
            return stored.model_copy(deep=True)

    async def get_user(self, user_id: str) -> UserIdentity | None:
        await self._io()
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def get_user_by_email(self, email: str) -> UserIdentity | None:
        await self._io()
        user_id = self._by_email.get(normalize_email(email))
        return self._users[user_id].model_copy(deep=True) if user_id else None

    async def get_user_by_link(
        self, provider: str, provider_account_id: str
    ) -> UserIdentity | None:
        await self._io()
        user_id = self._by_link.get((provider, provider_account_id))
        return self._users[user_id].model_copy(deep=True) if user_id else None

    async def update_user(
        self, user_id: str, updates: dict[str, Any]
    ) -> UserIdentity | None:
        await self._io()
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None

            updates = {k: v for k, v in updates.items() if k not in ("id", "email")}
            updated = user.model_copy(update={**updates, "updated_at": utc_now()})
            self._users[user_id] = updated
            return updated.model_copy(deep=True)

    async def link_identity(self, user_id: str, link: LinkedIdentity) -> UserIdentity:
        await self._io()
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise Conflict()

            owner = self._by_link.get(link.key)
            if owner is not None:
                if owner == user_id:
                    return user.model_copy(deep=True)
                raise Conflict()

            existing = user.get_link(link.provider)
            if existing is not None:
                raise Conflict()

            updated = user.model_copy(
                update={
                    "linked_identities": [*user.linked_identities, link],
                    "updated_at": utc_now(),
                },
            )
            self._users[user_id] = updated
            self._by_link[link.key] = user_id
            return updated.model_copy(deep=True)

    async def soft_delete_user(self, user_id: str, now: datetime) -> bool:
        await self._io()
        async with self._lock:
            user = self._users.get(user_id)
            if user is None or user.deleted_at is not None:
                return False
            self._users[user_id] = user.model_copy(update={"deleted_at": now, "updated_at": now})
            return True


# =============================================================================
# Refresh Token Store
# =============================================================================


class InMemoryRefreshTokenStore(_LatencyMixin, RefreshTokenStore):
    """In-memory refresh token records, indexed by token digest."""

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._lock = asyncio.Lock()
        self._records: dict[str, RefreshTokenRecord] = {}
        self._by_hash: dict[str, str] = {}  # token_hash -> record id

    async def insert(self, record: RefreshTokenRecord) -> None:
        await self._io()
        async with self._lock:
            if record.token_hash in self._by_hash:
                raise Conflict()
            self._records[record.id] = record.model_copy()
            self._by_hash[record.token_hash] = record.id

    async def get_by_hash(self, token_hash: str) -> RefreshTokenRecord | None:
        await self._io()
        record_id = self._by_hash.get(token_hash)
        return self._records[record_id].model_copy() if record_id else None

    async def rotate(
        self,
        record_id: str,
        replacement: RefreshTokenRecord,
        now: datetime,
    ) -> bool:
        await self._io()
        async with self._lock:
            current = self._records.get(record_id)
            if current is None or not current.is_live(now):
                return False

            self._records[record_id] = current.model_copy(
                update={"superseded_by": replacement.id},
            )
            self._records[replacement.id] = replacement.model_copy()
            self._by_hash[replacement.token_hash] = replacement.id
            return True

    async def _revoke_where(self, now: datetime, **match: str) -> int:
        async with self._lock:
            count = 0
            for record_id, record in self._records.items():
                if record.revoked:
                    continue
                if all(getattr(record, k) == v for k, v in match.items()):
                    self._records[record_id] = record.model_copy(
                        update={"revoked": True, "revoked_at": now},
                    )
                    count += 1
            return count

    async def revoke_family(self, family_id: str, now: datetime) -> int:
        await self._io()
        return await self._revoke_where(now, family_id=family_id)

    async def revoke_user(self, user_id: str, now: datetime) -> int:
        await self._io()
        return await self._revoke_where(now, user_id=user_id)

    async def family_is_active(self, family_id: str) -> bool:
        await self._io()
        return any(
            not r.revoked for r in self._records.values() if r.family_id == family_id
        )

    async def list_family(self, family_id: str) -> list[RefreshTokenRecord]:
        await self._io()
        records = [r.model_copy() for r in self._records.values() if r.family_id == family_id]
        return sorted(records, key=lambda r: r.issued_at)


# =============================================================================
# Code Store
# =============================================================================


class InMemoryCodeStore(_LatencyMixin, CodeStore):
    """In-memory one-time codes, indexed by code digest."""

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._lock = asyncio.Lock()
        self._codes: dict[str, OneTimeCode] = {}

    def _invalidate_locked(self, user_id: str, purpose: CodePurpose) -> int:
        count = 0
        for code_hash, code in self._codes.items():
            if (
                code.user_id == user_id
                and code.purpose == purpose
                and not code.is_consumed
                and not code.invalidated
            ):
                self._codes[code_hash] = code.model_copy(update={"invalidated": True})
                count += 1
        return count

    async def issue(self, code: OneTimeCode) -> None:
        await self._io()
        async with self._lock:
            self._invalidate_locked(code.user_id, code.purpose)
            self._codes[code.code_hash] = code.model_copy()

    async def get(self, code_hash: str) -> OneTimeCode | None:
        await self._io()
        code = self._codes.get(code_hash)
        return code.model_copy() if code else None

    async def mark_consumed(self, code_hash: str, now: datetime) -> bool:
        await self._io()
        async with self._lock:
            code = self._codes.get(code_hash)
            if code is None or code.is_consumed or code.invalidated:
                return False
            self._codes[code_hash] = code.model_copy(update={"consumed_at": now})
            return True

    async def invalidate(self, user_id: str, purpose: CodePurpose) -> int:
        await self._io()
        async with self._lock:
            return self._invalidate_locked(user_id, purpose)


# =============================================================================
# Resource Store
# =============================================================================


class InMemoryResourceStore(_LatencyMixin, ResourceStore):
    """In-memory document storage for owned resources."""

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._lock = asyncio.Lock()
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    @staticmethod
    def _matches(doc: dict[str, Any], filters: dict[str, Any] | None) -> bool:
        if not filters:
            return True
        return all(doc.get(key) == value for key, value in filters.items())

    async def get(self, collection: str, id: str) -> dict[str, Any] | None:
        await self._io()
        doc = self._data.get(collection, {}).get(id)
        return dict(doc) if doc is not None else None

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        await self._io()
        results = [
            dict(doc)
            for doc in self._data.get(collection, {}).values()
            if self._matches(doc, filters)
        ]
        return results[offset:offset + limit]

    async def count(self, collection: str, filters: dict[str, Any] | None = None) -> int:
        await self._io()
        return sum(
            1 for doc in self._data.get(collection, {}).values() if self._matches(doc, filters)
        )

    async def insert_with_quota(
        self,
        collection: str,
        id: str,
        data: dict[str, Any],
        owner_id: str,
        max_count: int | None,
    ) -> bool:
        await self._io()
        async with self._lock:
            docs = self._data.setdefault(collection, {})
            if id in docs:
                raise Conflict()
            if max_count is not None:
                owned = sum(1 for doc in docs.values() if doc.get("owner_id") == owner_id)
                if owned >= max_count:
                    return False
            docs[id] = dict(data)
            return True

    async def update(self, collection: str, id: str, updates: dict[str, Any]) -> bool:
        await self._io()
        async with self._lock:
            doc = self._data.get(collection, {}).get(id)
            if doc is None:
                return False
            doc.update(updates)
            return True

    async def delete(self, collection: str, id: str) -> bool:
        await self._io()
        async with self._lock:
            docs = self._data.get(collection, {})
            if id in docs:
                del docs[id]
                return True
            return False


# =============================================================================
# Factory
# =============================================================================


def create_memory_storage(latency: float = 0.0) -> StorageProvider:
    """Create a StorageProvider with in-memory implementations."""
    return StorageProvider(
        users=InMemoryCredentialStore(latency),
        tokens=InMemoryRefreshTokenStore(latency),
        codes=InMemoryCodeStore(latency),
        resources=InMemoryResourceStore(latency),
    )
