"""
Authentication - sessions, flows and request dependencies.

Design principles:
1. Short-lived signed access tokens, opaque rotating refresh tokens
2. Refresh token reuse revokes the whole session family
3. One dependency for route handlers: Depends(require(...))
"""

from saaslib.auth.context import AuthContext
from saaslib.auth.tokens import TokenService
from saaslib.auth.flows import AuthFlowController
from saaslib.auth.passwords import hash_password, verify_password
from saaslib.auth.dependencies import (
    Policy,
    require,
    require_admin,
    require_verified,
    get_current_context,
    get_optional_context,
)
from saaslib.auth.routes import router as auth_router

__all__ = [
    # Main interface
    "require",
    "require_admin",
    "require_verified",
    "get_current_context",
    "get_optional_context",
    "AuthContext",
    "Policy",
    # Services
    "TokenService",
    "AuthFlowController",
    "hash_password",
    "verify_password",
    # Router
    "auth_router",
]
