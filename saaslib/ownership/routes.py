# =============================================================================
# Owned Resource Routes
# =============================================================================
#
# build_resource_router(service) produces:
#   GET    /{name}       - List the viewer's resources (projected)
#   GET    /{name}/{id}  - Get one resource
#   POST   /{name}       - Create (201); owner is the caller
#   PATCH  /{name}/{id}  - Update
#   DELETE /{name}/{id}  - Delete (204)
#
# Every response body is a projection for the calling viewer.
#
# =============================================================================

from typing import Any, Callable

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel

from saaslib.auth.context import AuthContext
from saaslib.auth.dependencies import get_optional_context
from saaslib.ownership.service import OwnedResourceService


def build_resource_router(
    service: OwnedResourceService,
    create_model: type[BaseModel] | None = None,
    update_model: type[BaseModel] | None = None,
    get_identity: Callable = get_optional_context,
    prefix: str | None = None,
) -> APIRouter:
    """
    Build CRUD routes for one owned resource type.

    ``create_model``/``update_model`` validate request bodies; without them
    a plain JSON object is accepted and validated by the service.
    ``get_identity`` resolves the viewer (None for anonymous requests).
    """
    router = APIRouter(prefix=prefix or f"/{service.name}", tags=[service.name])
    CreateBody = create_model or dict[str, Any]
    UpdateBody = update_model or dict[str, Any]

    def _payload(data: Any, partial: bool) -> dict[str, Any]:
        if isinstance(data, BaseModel):
            return data.model_dump(exclude_unset=partial)
        return dict(data)

    @router.get("")
    async def list_resources(
        limit: int = Query(100, ge=1, le=500),
        offset: int = Query(0, ge=0),
        viewer: AuthContext | None = Depends(get_identity),
    ) -> list[dict[str, Any]]:
        resources = await service.list(viewer, limit=limit, offset=offset)
        return service.projector.project_many(resources, viewer)

    @router.get("/{resource_id}")
    async def get_resource(
        resource_id: str,
        viewer: AuthContext | None = Depends(get_identity),
    ) -> dict[str, Any]:
        resource = await service.get(resource_id, viewer)
        return service.project(resource, viewer)

    @router.post("", status_code=201)
    async def create_resource(
        data: CreateBody,
        viewer: AuthContext | None = Depends(get_identity),
    ) -> dict[str, Any]:
        resource = await service.create(viewer, _payload(data, partial=False))
        return service.project(resource, viewer)

    @router.patch("/{resource_id}")
    async def update_resource(
        resource_id: str,
        data: UpdateBody,
        viewer: AuthContext | None = Depends(get_identity),
    ) -> dict[str, Any]:
        resource = await service.update(resource_id, viewer, _payload(data, partial=True))
        return service.project(resource, viewer)

    @router.delete("/{resource_id}", status_code=204)
    async def delete_resource(
        resource_id: str,
        viewer: AuthContext | None = Depends(get_identity),
    ):
        await service.delete(resource_id, viewer)
        return Response(status_code=204)

    return router
