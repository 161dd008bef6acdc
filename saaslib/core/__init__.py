"""
Core module - shared models, errors and helpers.

This module contains:
- models: Users, linked identities, refresh token records, one-time codes
- errors: Error taxonomy mapped onto HTTP status codes
- utils: Id/secret generation, hashing, time
"""

from saaslib.core.models import (
    UserRole,
    CodePurpose,
    LinkedIdentity,
    UserIdentity,
    UserResponse,
    RefreshTokenRecord,
    TokenPair,
    AccessIdentity,
    OneTimeCode,
    OwnedResource,
)
from saaslib.core.errors import (
    SaaslibError,
    AuthError,
    InvalidCredentials,
    InvalidToken,
    UnknownToken,
    TokenExpired,
    ReuseDetected,
    InvalidCode,
    CodeExpired,
    CodeAlreadyUsed,
    CaptchaFailed,
    Forbidden,
    QuotaExceeded,
    Conflict,
    ValidationFailed,
    TransientStoreError,
)

__all__ = [
    # Models
    "UserRole",
    "CodePurpose",
    "LinkedIdentity",
    "UserIdentity",
    "UserResponse",
    "RefreshTokenRecord",
    "TokenPair",
    "AccessIdentity",
    "OneTimeCode",
    "OwnedResource",
    # Errors
    "SaaslibError",
    "AuthError",
    "InvalidCredentials",
    "InvalidToken",
    "UnknownToken",
    "TokenExpired",
    "ReuseDetected",
    "InvalidCode",
    "CodeExpired",
    "CodeAlreadyUsed",
    "CaptchaFailed",
    "Forbidden",
    "QuotaExceeded",
    "Conflict",
    "ValidationFailed",
    "TransientStoreError",
]
