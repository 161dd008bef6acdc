"""
Request authentication - FastAPI dependencies.

Just use: `ctx: AuthContext = Depends(require())`

Design:
- The bearer access token is verified by the TokenService
  (signature + expiry, plus a family revocation check)
- The current user record is loaded to build the AuthContext
- Extra requirements (verified email, admin role, plan) are checked
  by a small composable Policy; failures raise Forbidden
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from saaslib.auth.context import AuthContext
from saaslib.auth.flows import AuthFlowController
from saaslib.auth.tokens import TokenService
from saaslib.core.errors import Forbidden, InvalidToken
from saaslib.core.models import AccessIdentity, UserRole
from saaslib.integrations.sentry import set_user


# Optional bearer (doesn't fail if no token, so we can raise our own error)
optional_bearer = HTTPBearer(auto_error=False)


def get_token_service(request: Request) -> TokenService:
    return request.app.state.tokens


def get_auth_flows(request: Request) -> AuthFlowController:
    return request.app.state.auth


# =============================================================================
# Identity resolution
# =============================================================================


async def get_access_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_bearer),
    tokens: TokenService = Depends(get_token_service),
) -> AccessIdentity:
    """Verify the bearer access token."""
    if not credentials:
        raise InvalidToken("Authentication required")
    return await tokens.authenticate(credentials.credentials)


async def get_current_context(
    identity: AccessIdentity = Depends(get_access_identity),
    flows: AuthFlowController = Depends(get_auth_flows),
) -> AuthContext:
    user = await flows.get_user(identity.user_id)
    set_user(user.id)
    return AuthContext.from_user(user, identity)


async def get_optional_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_bearer),
    tokens: TokenService = Depends(get_token_service),
    flows: AuthFlowController = Depends(get_auth_flows),
) -> AuthContext | None:
    """Like get_current_context, but anonymous requests yield None."""
    if not credentials:
        return None
    identity = await tokens.authenticate(credentials.credentials)
    user = await flows.get_user(identity.user_id)
    set_user(user.id)
    return AuthContext.from_user(user, identity)


# =============================================================================
# Policy
# =============================================================================


class Policy:
    """
    Extra requirements on an authenticated caller.

    Policies are composable:
        require()                            # any signed-in user
        require(verified=True)               # verified email
        require(roles=[UserRole.ADMIN])      # admins only
        require(plans=["pro", "enterprise"]) # paid plans
        require(custom_check=lambda ctx: ...) # anything else
    """

    def __init__(
        self,
        verified: bool = False,
        roles: list[UserRole] | None = None,
        plans: list[str] | None = None,
        custom_check: Callable[[AuthContext], bool] | None = None,
    ):
        self.verified = verified
        self.roles = roles or []
        self.plans = plans or []
        self.custom_check = custom_check

    def check(self, ctx: AuthContext) -> tuple[bool, str | None]:
        """
        Check if context satisfies this policy.

        Returns: (allowed, error_message)
        """
        if self.verified and not ctx.email_verified:
            return False, "Email verification required"
        if self.roles and ctx.role not in self.roles:
            return False, "Insufficient role"
        if self.plans and ctx.plan not in self.plans:
            return False, "Not available on your plan"
        if self.custom_check and not self.custom_check(ctx):
            return False, "Custom policy check failed"
        return True, None


def require(
    verified: bool = False,
    roles: list[UserRole] | None = None,
    plans: list[str] | None = None,
    custom_check: Callable[[AuthContext], bool] | None = None,
) -> Callable:
    """
    Require an authenticated caller meeting a policy.

    Usage:
        @router.get("/reports")
        async def reports(ctx: AuthContext = Depends(require(verified=True))):
            ...

    Returns:
        FastAPI dependency that resolves to AuthContext
    """
    policy = Policy(verified=verified, roles=roles, plans=plans, custom_check=custom_check)

    async def dependency(ctx: AuthContext = Depends(get_current_context)) -> AuthContext:
        allowed, error = policy.check(ctx)
        if not allowed:
            raise Forbidden(error)
        return ctx

    return dependency


def require_verified() -> Callable:
    """Just require a verified email."""
    return require(verified=True)


def require_admin() -> Callable:
    return require(roles=[UserRole.ADMIN])
