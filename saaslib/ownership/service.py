"""
Owned resource service - guarded CRUD for one resource type.

Every operation goes through the same steps:

    create:          quota -> construct (owner = viewer) -> before hook -> atomic insert -> after hook
    update / delete: load -> capability check -> before hook -> persist -> after hook

Failures are uniform: a missing resource and a resource the viewer may
not touch both raise Forbidden, so ids cannot be enumerated. Any error while
evaluating a capability check denies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from pydantic import ValidationError

from saaslib.auth.context import AuthContext
from saaslib.core.errors import Forbidden, QuotaExceeded, ValidationFailed
from saaslib.core.models import OwnedResource
from saaslib.core.utils import utc_now
from saaslib.integrations.billing import BillingProvider
from saaslib.ownership.policy import Action, OwnershipPolicy
from saaslib.ownership.projector import ApiProjector
from saaslib.storage.base import ResourceStore, guarded

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=OwnedResource)

# Never accepted from clients.
PROTECTED_FIELDS = frozenset({"id", "owner_id", "created_at", "updated_at"})

# Rows read per store query when listing.
LIST_BATCH_SIZE = 100


@dataclass
class ResourceHooks(Generic[R]):
    """
    Optional async callbacks around writes.

    ``before_create`` and ``before_update`` may return a replacement data
    dict; returning None keeps the input unchanged.
    """

    before_create: Callable[[AuthContext, dict[str, Any]], Awaitable[dict[str, Any] | None]] | None = None
    after_create: Callable[[AuthContext, R], Awaitable[None]] | None = None
    before_update: Callable[[AuthContext, R, dict[str, Any]], Awaitable[dict[str, Any] | None]] | None = None
    after_update: Callable[[AuthContext, R], Awaitable[None]] | None = None
    before_delete: Callable[[AuthContext, R], Awaitable[None]] | None = None
    after_delete: Callable[[AuthContext, R], Awaitable[None]] | None = None


class OwnedResourceService(Generic[R]):
    """CRUD over one owned resource type, enforced by an OwnershipPolicy."""

    def __init__(
        self,
        name: str,
        model: type[R],
        store: ResourceStore,
        policy: OwnershipPolicy[R] | None = None,
        projector: ApiProjector[R] | None = None,
        hooks: ResourceHooks[R] | None = None,
        billing: BillingProvider | None = None,
        store_timeout: float | None = None,
    ):
        self.name = name
        self.model = model
        self.store = store
        self.policy = policy or OwnershipPolicy()
        self.projector = projector or ApiProjector.owner_sees_all(model)
        self.hooks = hooks or ResourceHooks()
        self.billing = billing
        self.store_timeout = store_timeout

    async def _call(self, aw):
        return await guarded(aw, self.store_timeout)

    @staticmethod
    def _require_viewer(viewer: AuthContext | None) -> AuthContext:
        if viewer is None or viewer.is_anonymous:
            raise Forbidden()
        return viewer

    def _load(self, doc: dict[str, Any]) -> R:
        return self.model.model_validate(doc)

    async def _get_any(self, id: str) -> R:
        doc = await self._call(self.store.get(self.name, id))
        if doc is None:
            raise Forbidden()
        return self._load(doc)

    # =========================================================================
    # Capability checks
    # =========================================================================

    def allows(self, action: Action, resource: R, viewer: AuthContext | None) -> bool:
        """Evaluate a capability check, failing closed."""
        check = self.policy.check_for(action)
        try:
            return check(resource, viewer) is True
        except Exception:
            logger.exception(f"{self.name}: {action.value} check raised; denying")
            return False

    def can_view(self, resource: R, viewer: AuthContext | None) -> bool:
        return self.allows(Action.VIEW, resource, viewer)

    def can_edit(self, resource: R, viewer: AuthContext | None) -> bool:
        return self.allows(Action.EDIT, resource, viewer)

    def can_delete(self, resource: R, viewer: AuthContext | None) -> bool:
        return self.allows(Action.DELETE, resource, viewer)

    # =========================================================================
    # Quota
    # =========================================================================

    async def max_entities_for(self, owner: AuthContext) -> int | None:
        plan = await self.billing.plan_for(owner) if self.billing else owner.plan
        return self.policy.max_entities(plan)

    async def quota_remaining(self, owner: AuthContext) -> bool:
        """
        Whether the owner may create one more resource.

        Advisory only: create() re-checks atomically with the insert.
        """
        return await self._under_quota(owner, await self.max_entities_for(owner))

    async def _under_quota(self, owner: AuthContext, maximum: int | None) -> bool:
        if maximum is None:
            return True
        count = await self._call(self.store.count(self.name, {"owner_id": owner.user_id}))
        return count < maximum

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create(self, viewer: AuthContext | None, data: dict[str, Any]) -> R:
        """
        Create a resource owned by the viewer.

        Raises:
            Forbidden: Anonymous viewer
            QuotaExceeded: Owner is at the plan maximum
            ValidationFailed: Data does not fit the model
        """
        viewer = self._require_viewer(viewer)
        maximum = await self.max_entities_for(viewer)
        if not await self._under_quota(viewer, maximum):
            raise QuotaExceeded()

        data = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
        if self.hooks.before_create:
            data = await self.hooks.before_create(viewer, data) or data
            data = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}

        try:
            resource = self.model(**data, owner_id=viewer.user_id)
        except ValidationError as e:
            raise ValidationFailed(str(e)) from e

        inserted = await self._call(self.store.insert_with_quota(
            self.name,
            resource.id,
            resource.model_dump(),
            viewer.user_id,
            maximum,
        ))
        if not inserted:
            raise QuotaExceeded()

        logger.debug(f"{self.name}: {viewer.user_id} created {resource.id}")
        if self.hooks.after_create:
            await self.hooks.after_create(viewer, resource)
        return resource

    async def get(self, id: str, viewer: AuthContext | None) -> R:
        resource = await self._get_any(id)
        if not self.can_view(resource, viewer):
            raise Forbidden()
        return resource

    async def list(
        self,
        viewer: AuthContext | None,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[R]:
        """
        Resources the viewer may see, scoped by the policy.

        ``limit`` and ``offset`` count visible resources: rows dropped by
        can_view are skipped and the store is read further until the page
        is full or exhausted.
        """
        viewer = self._require_viewer(viewer)
        scope = self.policy.list_scope(viewer, dict(filters or {}))
        batch = max(limit, LIST_BATCH_SIZE)

        page: list[R] = []
        skipped = 0
        cursor = 0
        while len(page) < limit:
            docs = await self._call(self.store.query(self.name, scope, limit=batch, offset=cursor))
            for doc in docs:
                resource = self._load(doc)
                if not self.can_view(resource, viewer):
                    continue
                if skipped < offset:
                    skipped += 1
                    continue
                page.append(resource)
                if len(page) == limit:
                    break
            if len(docs) < batch:
                break
            cursor += len(docs)
        return page

    async def update(self, id: str, viewer: AuthContext | None, changes: dict[str, Any]) -> R:
        resource = await self._get_any(id)
        if not self.can_edit(resource, viewer):
            raise Forbidden()

        changes = {k: v for k, v in changes.items() if k not in PROTECTED_FIELDS}
        if self.hooks.before_update:
            changes = await self.hooks.before_update(viewer, resource, changes) or changes
            changes = {k: v for k, v in changes.items() if k not in PROTECTED_FIELDS}

        try:
            updated = self.model.model_validate({
                **resource.model_dump(),
                **changes,
                "updated_at": utc_now(),
            })
        except ValidationError as e:
            raise ValidationFailed(str(e)) from e

        persisted = updated.model_dump(include={*changes.keys(), "updated_at"})
        if not await self._call(self.store.update(self.name, id, persisted)):
            raise Forbidden()

        if self.hooks.after_update:
            await self.hooks.after_update(viewer, updated)
        return updated

    async def delete(self, id: str, viewer: AuthContext | None) -> R:
        resource = await self._get_any(id)
        if not self.can_delete(resource, viewer):
            raise Forbidden()

        if self.hooks.before_delete:
            await self.hooks.before_delete(viewer, resource)
        if not await self._call(self.store.delete(self.name, id)):
            raise Forbidden()

        logger.debug(f"{self.name}: deleted {id}")
        if self.hooks.after_delete:
            await self.hooks.after_delete(viewer, resource)
        return resource

    # =========================================================================
    # Projection
    # =========================================================================

    def project(self, resource: R, viewer: AuthContext | None) -> dict[str, Any]:
        return self.projector.project(resource, viewer)
