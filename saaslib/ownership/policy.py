"""
Ownership policies - who may view, edit, delete and create a resource.

A policy is a plain value holding strategy functions. The defaults grant
everything to the owner and nothing to anyone else; resource types swap
in other strategies (public read, admin override, sharing) without
subclassing.

    notes = OwnershipPolicy(
        can_view=public_read,
        can_delete=admin_override(owner_only),
        max_entities=plan_quota({"free": 3, "pro": 100, "enterprise": None}),
    )
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Mapping, TypeVar

from saaslib.auth.context import AuthContext
from saaslib.core.models import OwnedResource

R = TypeVar("R", bound=OwnedResource)

CapabilityCheck = Callable[[Any, "AuthContext | None"], bool]
QuotaFunction = Callable[[str], "int | None"]
ListScope = Callable[[AuthContext, dict[str, Any]], dict[str, Any]]


class Action(str, Enum):
    """What a viewer is trying to do to a resource."""

    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"


# =============================================================================
# Capability strategies
# =============================================================================


def owner_only(resource: OwnedResource, viewer: AuthContext | None) -> bool:
    """Allowed only when the viewer owns the resource."""
    return (
        viewer is not None
        and viewer.user_id is not None
        and viewer.user_id == resource.owner_id
    )


def public_read(resource: OwnedResource, viewer: AuthContext | None) -> bool:
    """Anyone, including anonymous viewers."""
    return True


def deny_all(resource: OwnedResource, viewer: AuthContext | None) -> bool:
    return False


def admin_override(check: CapabilityCheck) -> CapabilityCheck:
    """Wrap a check so platform admins are always allowed."""

    def allowed(resource: OwnedResource, viewer: AuthContext | None) -> bool:
        if viewer is not None and viewer.is_admin:
            return True
        return check(resource, viewer)

    return allowed


# =============================================================================
# Quota strategies
# =============================================================================


def unlimited(plan: str) -> int | None:
    return None


def plan_quota(limits: Mapping[str, int | None], default: int | None = 0) -> QuotaFunction:
    """
    Build a quota function from a plan -> maximum mapping.

    ``None`` means unbounded. Plans missing from the mapping get ``default``.
    """

    def max_entities(plan: str) -> int | None:
        return limits.get(plan, default)

    return max_entities


# =============================================================================
# List scoping
# =============================================================================


def owned_by_viewer(viewer: AuthContext, filters: dict[str, Any]) -> dict[str, Any]:
    """Restrict a listing to the viewer's own resources."""
    return {**filters, "owner_id": viewer.user_id}


def all_resources(viewer: AuthContext, filters: dict[str, Any]) -> dict[str, Any]:
    """No store-level scoping; rows are still filtered through can_view."""
    return dict(filters)


# =============================================================================
# Policy
# =============================================================================


@dataclass(frozen=True)
class OwnershipPolicy(Generic[R]):
    """Access rules for one resource type."""

    can_view: CapabilityCheck = owner_only
    can_edit: CapabilityCheck = owner_only
    can_delete: CapabilityCheck = owner_only
    max_entities: QuotaFunction = unlimited
    list_scope: ListScope = owned_by_viewer

    def check_for(self, action: Action) -> CapabilityCheck:
        return {
            Action.VIEW: self.can_view,
            Action.EDIT: self.can_edit,
            Action.DELETE: self.can_delete,
        }[action]
