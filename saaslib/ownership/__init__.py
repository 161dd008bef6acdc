"""
Ownership - owner-scoped resources with pluggable access rules.

- policy: capability strategies (who may view/edit/delete) and plan quotas
- projector: viewer-aware field allow-lists for API output
- service: guarded CRUD enforcing the policy
- routes: FastAPI router for one resource type
"""

from saaslib.ownership.policy import (
    Action,
    OwnershipPolicy,
    owner_only,
    public_read,
    deny_all,
    admin_override,
    unlimited,
    plan_quota,
    owned_by_viewer,
    all_resources,
)
from saaslib.ownership.projector import ApiProjector
from saaslib.ownership.service import OwnedResourceService, ResourceHooks
from saaslib.ownership.routes import build_resource_router

__all__ = [
    "Action",
    "OwnershipPolicy",
    "owner_only",
    "public_read",
    "deny_all",
    "admin_override",
    "unlimited",
    "plan_quota",
    "owned_by_viewer",
    "all_resources",
    "ApiProjector",
    "OwnedResourceService",
    "ResourceHooks",
    "build_resource_router",
]
