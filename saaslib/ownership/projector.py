"""
API projection - viewer-aware public representation of a resource.

Only fields named in an allow-list ever leave the service. Non-owners
see ``public_fields``; the owner additionally sees ``owner_fields``.
Every projection carries ``is_owner``.
"""

from __future__ import annotations

from typing import Any, Callable, Generic, Iterable, TypeVar

from saaslib.auth.context import AuthContext
from saaslib.core.models import OwnedResource

R = TypeVar("R", bound=OwnedResource)

ComputedField = Callable[[Any, "AuthContext | None"], Any]


class ApiProjector(Generic[R]):
    """Maps an internal resource to its external shape."""

    def __init__(
        self,
        public_fields: Iterable[str] = ("id",),
        owner_fields: Iterable[str] = (),
        computed: dict[str, ComputedField] | None = None,
    ):
        self.public_fields = tuple(public_fields)
        self.owner_fields = tuple(f for f in owner_fields if f not in self.public_fields)
        self.computed = dict(computed or {})

    @classmethod
    def owner_sees_all(cls, model: type[R], public_fields: Iterable[str] = ("id",)) -> ApiProjector[R]:
        """Owner sees every model field; everyone else only ``public_fields``."""
        return cls(public_fields=public_fields, owner_fields=model.model_fields.keys())

    @staticmethod
    def is_owner(resource: R, viewer: AuthContext | None) -> bool:
        return viewer is not None and viewer.user_id is not None and viewer.user_id == resource.owner_id

    def project(self, resource: R, viewer: AuthContext | None) -> dict[str, Any]:
        """Pure: no I/O, no mutation of ``resource``."""
        data = resource.model_dump(mode="json")
        is_owner = self.is_owner(resource, viewer)

        fields = self.public_fields + (self.owner_fields if is_owner else ())
        result = {name: data[name] for name in fields if name in data}
        for name, compute in self.computed.items():
            result[name] = compute(resource, viewer)
        result["is_owner"] = is_owner
        return result

    def project_many(self, resources: Iterable[R], viewer: AuthContext | None) -> list[dict[str, Any]]:
        return [self.project(r, viewer) for r in resources]
