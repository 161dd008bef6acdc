"""
Auth context - the "who is asking" for each request.

This is the lightweight viewer object passed to route handlers and to
the ownership policy engine. It is built from a verified access token
plus the current user record.
"""

from __future__ import annotations

from dataclasses import dataclass

from saaslib.core.models import AccessIdentity, UserIdentity, UserRole


@dataclass(frozen=True)
class AuthContext:
    """
    Identity of the caller.

    Usage in routes:
        async def my_route(ctx: AuthContext = Depends(require())):
            print(f"User {ctx.user_id} on plan {ctx.plan}")
    """

    # Who
    user_id: str | None = None
    email: str | None = None
    plan: str = "free"
    role: UserRole = UserRole.USER
    email_verified: bool = False

    # Which session
    family_id: str | None = None

    @property
    def id(self) -> str | None:
        return self.user_id

    @property
    def is_authenticated(self) -> bool:
        """Is there a signed-in user?"""
        return self.user_id is not None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @classmethod
    def anonymous(cls) -> AuthContext:
        """Create an anonymous context (no user)."""
        return cls()

    @classmethod
    def from_user(
        cls, user: UserIdentity, identity: AccessIdentity | None = None
    ) -> AuthContext:
        return cls(
            user_id=user.id,
            email=user.email,
            plan=user.plan,
            role=user.role,
            email_verified=user.email_verified,
            family_id=identity.family_id if identity else None,
        )
