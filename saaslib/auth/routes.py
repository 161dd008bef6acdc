# =============================================================================
# Auth API Routes
# =============================================================================
#
# Endpoints:
#   POST   /auth/sign-up              - Create account (201 + tokens)
#   POST   /auth/sign-in              - Get tokens
#   POST   /auth/refresh              - Rotate refresh token (cookie or body)
#   POST   /auth/sign-out             - Revoke the presented session
#   POST   /auth/sign-out-all         - Revoke every session of the caller
#   GET    /auth/me                   - Get current user
#   PATCH  /auth/me                   - Update profile
#   DELETE /auth/me                   - Delete account
#   POST   /auth/request-verification - Email a new verification code
#   POST   /auth/verify-email         - Verify email address
#   POST   /auth/forgot-password      - Request password reset
#   POST   /auth/reset-password       - Reset password with code
#   POST   /auth/change-password      - Change password (signed in)
#
# OAuth:
#   GET  /auth/oauth/providers            - List configured providers
#   GET  /auth/oauth/{provider}/authorize - Redirect to the provider
#   GET  /auth/oauth/{provider}/callback  - Complete sign-in, set cookie, redirect
#
# The refresh token travels in an httpOnly cookie scoped to /auth. It is
# also returned in the body for non-browser clients.
#
# =============================================================================

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, EmailStr

from saaslib.api.errors import error_response
from saaslib.auth.context import AuthContext
from saaslib.auth.dependencies import get_auth_flows, get_token_service, require
from saaslib.auth.flows import AuthFlowController
from saaslib.auth.tokens import TokenService
from saaslib.config import Settings
from saaslib.core.errors import AuthError, InvalidToken, SaaslibError
from saaslib.core.models import TokenPair, UserResponse
from saaslib.integrations.oauth import OAuthError, OAuthManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

OAUTH_STATE_COOKIE = "oauth_state"


# =============================================================================
# Request/Response Models
# =============================================================================

class SignUpRequest(BaseModel):
    email: EmailStr
    password: str
    name: str | None = None
    captcha_token: str | None = None


class SignInRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str | None = None


class CodeRequest(BaseModel):
    code: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    code: str
    new_password: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class UpdateProfileRequest(BaseModel):
    name: str | None = None


class MessageResponse(BaseModel):
    message: str


# =============================================================================
# Helpers
# =============================================================================

def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_oauth_manager(request: Request) -> OAuthManager:
    return request.app.state.oauth


def set_refresh_cookie(response: Response, settings: Settings, refresh_token: str) -> None:
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        max_age=settings.refresh_token_expire_days * 24 * 3600,
        path=settings.refresh_cookie_path,
        domain=settings.refresh_cookie_domain,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )


def clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        domain=settings.refresh_cookie_domain,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )


def _presented_refresh_token(
    request: Request, settings: Settings, body: RefreshRequest | None
) -> str | None:
    return request.cookies.get(settings.refresh_cookie_name) or (body.refresh_token if body else None)


def _client_ip(request: Request) -> str | None:
    return (
        request.headers.get("cf-connecting-ip")
        or request.headers.get("x-forwarded-for", "").split(",")[0].strip()
        or (request.client.host if request.client else None)
    )


# =============================================================================
# Public Endpoints
# =============================================================================

@router.post("/sign-up", response_model=TokenPair, status_code=201)
async def sign_up(
    data: SignUpRequest,
    request: Request,
    response: Response,
    flows: AuthFlowController = Depends(get_auth_flows),
    settings: Settings = Depends(get_settings_dep),
):
    """
    Create a new account.

    Returns access and refresh tokens on success. The email starts
    unverified; a verification code is emailed.
    """
    _, pair = await flows.sign_up(
        data.email,
        data.password,
        name=data.name,
        captcha_token=data.captcha_token,
        client_ip=_client_ip(request),
    )
    set_refresh_cookie(response, settings, pair.refresh_token)
    return pair


@router.post("/sign-in", response_model=TokenPair)
async def sign_in(
    data: SignInRequest,
    response: Response,
    flows: AuthFlowController = Depends(get_auth_flows),
    settings: Settings = Depends(get_settings_dep),
):
    pair = await flows.sign_in(data.email, data.password)
    set_refresh_cookie(response, settings, pair.refresh_token)
    return pair


@router.post("/refresh", response_model=TokenPair)
async def refresh(
    request: Request,
    response: Response,
    data: RefreshRequest | None = None,
    tokens: TokenService = Depends(get_token_service),
    settings: Settings = Depends(get_settings_dep),
):
    """
    Rotate the refresh token.

    Any authentication failure clears the cookie so the client re-authenticates.
    """
    presented = _presented_refresh_token(request, settings, data)
    try:
        if not presented:
            raise InvalidToken("Refresh token required")
        pair = await tokens.refresh(presented)
    except AuthError as e:
        failure = error_response(e)
        clear_refresh_cookie(failure, settings)
        return failure

    set_refresh_cookie(response, settings, pair.refresh_token)
    return pair


@router.post("/sign-out", response_model=MessageResponse)
async def sign_out(
    request: Request,
    response: Response,
    data: RefreshRequest | None = None,
    flows: AuthFlowController = Depends(get_auth_flows),
    settings: Settings = Depends(get_settings_dep),
):
    presented = _presented_refresh_token(request, settings, data)
    if presented:
        await flows.sign_out(presented)
    clear_refresh_cookie(response, settings)
    return MessageResponse(message="Signed out")


@router.post("/verify-email", response_model=UserResponse)
async def verify_email(
    data: CodeRequest,
    flows: AuthFlowController = Depends(get_auth_flows),
):
    user = await flows.verify_email(data.code)
    return UserResponse.from_user(user)


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    data: ForgotPasswordRequest,
    flows: AuthFlowController = Depends(get_auth_flows),
):
    """
    Request password reset email.

    Always returns success to prevent email enumeration.
    """
    await flows.request_password_reset(data.email)
    return MessageResponse(message="If an account exists with this email, a reset link has been sent")


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    data: ResetPasswordRequest,
    response: Response,
    flows: AuthFlowController = Depends(get_auth_flows),
    settings: Settings = Depends(get_settings_dep),
):
    """Reset password using a code from email. Signs out every session."""
    await flows.reset_password(data.code, data.new_password)
    clear_refresh_cookie(response, settings)
    return MessageResponse(message="Password reset successfully")


# =============================================================================
# Protected Endpoints
# =============================================================================

@router.get("/me", response_model=UserResponse)
async def get_current_user(
    ctx: AuthContext = Depends(require()),
    flows: AuthFlowController = Depends(get_auth_flows),
):
    user = await flows.get_user(ctx.user_id)
    return UserResponse.from_user(user)


@router.patch("/me", response_model=UserResponse)
async def update_current_user(
    data: UpdateProfileRequest,
    ctx: AuthContext = Depends(require()),
    flows: AuthFlowController = Depends(get_auth_flows),
):
    user = await flows.update_profile(ctx.user_id, name=data.name)
    return UserResponse.from_user(user)


@router.delete("/me", status_code=204)
async def delete_current_user(
    ctx: AuthContext = Depends(require()),
    flows: AuthFlowController = Depends(get_auth_flows),
    settings: Settings = Depends(get_settings_dep),
):
    await flows.delete_account(ctx.user_id)
    response = Response(status_code=204)
    clear_refresh_cookie(response, settings)
    return response


@router.post("/request-verification", response_model=MessageResponse)
async def request_verification(
    ctx: AuthContext = Depends(require()),
    flows: AuthFlowController = Depends(get_auth_flows),
):
    await flows.request_email_verification(ctx.user_id)
    return MessageResponse(message="If your email is unverified, a new code has been sent")


@router.post("/change-password", response_model=TokenPair)
async def change_password(
    data: ChangePasswordRequest,
    response: Response,
    ctx: AuthContext = Depends(require()),
    flows: AuthFlowController = Depends(get_auth_flows),
    settings: Settings = Depends(get_settings_dep),
):
    pair = await flows.change_password(ctx.user_id, data.current_password, data.new_password)
    set_refresh_cookie(response, settings, pair.refresh_token)
    return pair


@router.post("/sign-out-all", response_model=MessageResponse)
async def sign_out_all(
    response: Response,
    ctx: AuthContext = Depends(require()),
    flows: AuthFlowController = Depends(get_auth_flows),
    settings: Settings = Depends(get_settings_dep),
):
    await flows.sign_out_everywhere(ctx.user_id)
    clear_refresh_cookie(response, settings)
    return MessageResponse(message="Signed out everywhere")


# =============================================================================
# OAuth Endpoints
# =============================================================================

@router.get("/oauth/providers")
async def list_oauth_providers(oauth: OAuthManager = Depends(get_oauth_manager)):
    """List OAuth providers that are properly configured."""
    return {"providers": oauth.get_available_providers()}


@router.get("/oauth/{provider}/authorize")
async def oauth_authorize(
    provider: str,
    oauth: OAuthManager = Depends(get_oauth_manager),
    settings: Settings = Depends(get_settings_dep),
):
    """Redirect the user to the provider to start the OAuth flow."""
    if provider not in oauth.get_available_providers():
        return JSONResponse(
            status_code=400,
            content={"error": "oauth_error", "detail": f"Provider '{provider}' not available"},
        )

    state = oauth.create_state(provider)
    response = RedirectResponse(oauth.get_authorize_url(provider, state), status_code=302)
    response.set_cookie(
        key=OAUTH_STATE_COOKIE,
        value=state,
        max_age=600,
        path="/auth/oauth",
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite="lax",
    )
    return response


@router.get("/oauth/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    oauth: OAuthManager = Depends(get_oauth_manager),
    flows: AuthFlowController = Depends(get_auth_flows),
    settings: Settings = Depends(get_settings_dep),
):
    """
    Complete the OAuth flow.

    Links or creates the user, sets the refresh cookie and redirects to
    the frontend, which obtains an access token via /auth/refresh.
    """
    frontend = settings.frontend_url.rstrip("/")

    if error or not code:
        logger.info(f"OAuth sign-in with {provider} cancelled: {error or 'no code'}")
        return RedirectResponse(f"{frontend}/sign-in?error=oauth_denied", status_code=302)

    expected_state = request.cookies.get(OAUTH_STATE_COOKIE)
    if not expected_state or expected_state != state or oauth.validate_state(state) != provider:
        logger.warning(f"OAuth callback for {provider} with invalid state")
        return RedirectResponse(f"{frontend}/sign-in?error=oauth_state", status_code=302)

    try:
        info = await oauth.authenticate(provider, code)
    except OAuthError as e:
        logger.warning(f"OAuth handshake with {provider} failed: {e}")
        return RedirectResponse(f"{frontend}/sign-in?error=oauth_failed", status_code=302)

    try:
        _, pair = await flows.oauth_sign_in(
            info.provider,
            info.provider_user_id,
            info.email,
            name=info.name,
            email_verified=info.email_verified,
        )
    except SaaslibError as e:
        logger.warning(f"OAuth sign-in with {provider} refused: {e.code}")
        return RedirectResponse(f"{frontend}/sign-in?error=oauth_link", status_code=302)

    response = RedirectResponse(f"{frontend}/oauth/complete", status_code=302)
    set_refresh_cookie(response, settings, pair.refresh_token)
    response.delete_cookie(OAUTH_STATE_COOKIE, path="/auth/oauth")
    return response
