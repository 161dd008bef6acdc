"""
Error taxonomy for the identity and ownership core.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API layer maps it to. Messages are deliberately generic: nothing here
may reveal whether a particular email address or resource exists.
"""

from __future__ import annotations


class SaaslibError(Exception):
    """Base exception for all saaslib errors."""

    code: str = "error"
    status_code: int = 400
    retryable: bool = False
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# =============================================================================
# Authentication
# =============================================================================


class AuthError(SaaslibError):
    """Base class for authentication failures."""

    code = "auth_error"
    status_code = 401
    default_message = "Authentication failed"


class InvalidCredentials(AuthError):
    """Email/password did not match. Same error whether or not the email exists."""

    code = "invalid_credentials"
    default_message = "Invalid email or password"


class InvalidToken(AuthError):
    """Token is malformed, has a bad signature, or is the wrong type."""

    code = "invalid_token"
    default_message = "Invalid token"


class UnknownToken(InvalidToken):
    """Refresh token does not resolve to any stored record."""

    code = "unknown_token"
    default_message = "Invalid token"


class TokenExpired(AuthError):
    """Token has expired. The client must re-authenticate."""

    code = "token_expired"
    default_message = "Token has expired, please sign in again"


class ReuseDetected(AuthError):
    """
    A non-live refresh token was presented.

    Raised only after the whole token family has been revoked.
    """

    code = "reuse_detected"
    default_message = "Session is no longer valid, please sign in again"


class InvalidCode(SaaslibError):
    """Verification or reset code is unknown."""

    code = "invalid_code"
    status_code = 400
    default_message = "Invalid or expired code"


class CodeExpired(InvalidCode):
    code = "code_expired"
    default_message = "Code has expired"


class CodeAlreadyUsed(InvalidCode):
    code = "code_already_used"
    default_message = "Code has already been used"


class CaptchaFailed(SaaslibError):
    """CAPTCHA verification rejected the request."""

    code = "captcha_failed"
    status_code = 400
    default_message = "CAPTCHA verification failed"

    def __init__(self, message: str | None = None, reason: str | None = None):
        super().__init__(message)
        self.reason = reason


# =============================================================================
# Authorization / resources
# =============================================================================


class Forbidden(SaaslibError):
    """
    Ownership check failed.

    Also used for resources that do not exist, so callers cannot test
    for existence.
    """

    code = "forbidden"
    status_code = 403
    default_message = "You do not have access to this resource"


class QuotaExceeded(SaaslibError):
    """Owner already has the maximum number of resources for their plan."""

    code = "quota_exceeded"
    status_code = 403
    default_message = "Resource limit reached for your plan"


class Conflict(SaaslibError):
    """A unique key collided."""

    code = "conflict"
    status_code = 409
    default_message = "Unable to complete request"


class ValidationFailed(SaaslibError):
    code = "validation_failed"
    status_code = 422
    default_message = "Invalid request"


# =============================================================================
# Infrastructure
# =============================================================================


class TransientStoreError(SaaslibError):
    """Store was unreachable or timed out. Safe to retry with backoff."""

    code = "temporarily_unavailable"
    status_code = 503
    retryable = True
    default_message = "Service temporarily unavailable, please retry"
