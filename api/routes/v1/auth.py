"""
api/routes/v1/auth.py -- Account and session REST endpoints.

Routes:
  POST  /api/v1/auth/register               -- create account; emails verification link
  POST  /api/v1/auth/login                  -- password login; sets token cookies
  GET   /api/v1/auth/google/login           -- redirect to Google
  GET   /api/v1/auth/google/callback        -- Google sign-in; sets cookies, redirects to frontend
  GET   /api/v1/auth/verify-email/{token}   -- confirm email; signs the user in
  POST  /api/v1/auth/resend-verification    -- new verification link
  POST  /api/v1/auth/forgot-password        -- email a reset link
  POST  /api/v1/auth/reset-password/{token} -- set new password; signs the user in
  PATCH /api/v1/auth/change-password        -- requires auth + verified email
  POST  /api/v1/auth/logout                 -- revokes refresh tokens, clears cookies
  POST  /api/v1/auth/refresh-token          -- rotate refresh token
  GET   /api/v1/auth/me                     -- current user (requires auth)
  POST  /api/v1/auth/check-email            -- is the address free to register

Every handler is a thin adapter over AuthSessionManager (app.state.session).
ServiceError from the manager propagates to the exception handler in
api/main.py, which renders the error envelope.

Security:
  Rate limits on register/login/resend/forgot/reset/change come from Settings.
  Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

import logging
from typing import Optional

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    EmailAvailabilityResponse,
    EmailRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_current_user, require_verified_email, try_get_current_user
from auth.models import User
from auth.oauth import get_google_profile, google_enabled
from auth.session import AuthResult, AuthSessionManager
from auth.tokens import REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies
from core.config import get_settings
from core.errors import ErrorKind, ServiceError

logger = logging.getLogger("teampass.api")

_settings = get_settings()

# Auth policy:
# - register, login, google/*, verify-email, resend-verification,
#   forgot-password, reset-password, refresh-token, check-email: public
# - logout: public -- clearing cookies must work with an expired token
# - me: requires auth (get_current_user)
# - change-password: requires auth + verified email (require_verified_email)
router = APIRouter()


def _session(request: Request) -> AuthSessionManager:
    return request.app.state.session


def _respond(request: Request, result: AuthResult, message: str, status_code: int = 200) -> JSONResponse:
    """Render an AuthResult; when it carries tokens, also set the cookies."""
    body = AuthResponse(
        message=message,
        user=UserResponse.from_user(result.user),
        tokens=TokenResponse.from_pair(result.tokens) if result.tokens is not None else None,
        warnings=result.warnings,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    if result.tokens is not None:
        set_auth_cookies(resp, result.tokens, request.app.state.token_service, _settings.secure_cookies)
        resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Registration and sign-in
# ---------------------------------------------------------------------------


@limiter.limit(_settings.register_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    result = _session(request).register(
        body.email,
        body.password,
        {"name": body.name, "username": body.username, "company": body.company, "position": body.position},
    )
    return _respond(
        request,
        result,
        "Registration successful. Please check your email to verify your account.",
        status_code=201,
    )


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set token cookies.

    Unknown email and wrong password return the same invalid_credentials
    error with equal bcrypt cost, so the response does not reveal whether the
    address has an account.
    """
    return _respond(request, _session(request).login(body.email, body.password), "Login successful")


@router.get("/auth/google/login")
async def google_login(request: Request):
    """Redirect the browser to Google's consent page."""
    if not google_enabled(_settings):
        raise ServiceError(ErrorKind.not_found, "Google sign-in is not configured")
    client = request.app.state.oauth.create_client("google")
    redirect_uri = str(request.url_for("google_callback"))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/google/callback", name="google_callback")
async def google_callback(request: Request) -> RedirectResponse:
    """Finish Google sign-in and hand the browser back to the frontend.

    Flow:
      1. Exchange the authorization code (authlib checks state via the session).
      2. Extract the verified Google identity -- ValueError if unverified.
      3. AuthSessionManager.google_auth() finds, links or creates the account.
      4. Set cookies and redirect to the dashboard.
    Failures redirect to the frontend login page with ?error=oauth_failed.
    """
    failure = RedirectResponse(f"{_settings.frontend_url}/login?error=oauth_failed", status_code=302)
    if not google_enabled(_settings):
        return failure

    client = request.app.state.oauth.create_client("google")
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("Google token exchange failed")
        return failure

    try:
        profile = get_google_profile(token)
    except ValueError:
        logger.warning("Google sign-in rejected: unverified or missing email")
        return failure

    try:
        result = _session(request).google_auth(profile.google_id, profile.email, profile.name, profile.picture)
    except ServiceError as exc:
        logger.info("Google sign-in refused: %s", exc.kind.value)
        return failure

    resp = RedirectResponse(f"{_settings.frontend_url}/dashboard", status_code=302)
    set_auth_cookies(resp, result.tokens, request.app.state.token_service, _settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.get("/auth/verify-email/{token}", response_model=AuthResponse)
def verify_email(request: Request, token: str) -> JSONResponse:
    return _respond(request, _session(request).verify_email(token), "Email verified successfully")


@limiter.limit(_settings.resend_verification_rate_limit)
@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    result = _session(request).resend_verification(body.email)
    return MessageResponse(message="Verification email sent", warnings=result.warnings)


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@limiter.limit(_settings.forgot_password_rate_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    result = _session(request).forgot_password(body.email)
    return MessageResponse(message="Password reset instructions sent to your email", warnings=result.warnings)


@limiter.limit(_settings.reset_password_rate_limit)
@router.post("/auth/reset-password/{token}", response_model=AuthResponse)
def reset_password(request: Request, token: str, body: ResetPasswordRequest) -> JSONResponse:
    return _respond(request, _session(request).reset_password(token, body.password), "Password reset successful")


@limiter.limit(_settings.change_password_rate_limit)
@router.patch("/auth/change-password", response_model=AuthResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(require_verified_email),
) -> JSONResponse:
    result = _session(request).change_password(current_user.id, body.current_password, body.new_password)
    return _respond(request, result, "Password changed successfully")


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the caller's refresh tokens (if the caller is known) and clear cookies."""
    user: Optional[User] = try_get_current_user(request)
    if user is not None:
        _session(request).logout(user.id)
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully").model_dump())
    clear_auth_cookies(resp)
    return resp


@router.post("/auth/refresh-token", response_model=AuthResponse)
def refresh_token(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    raw = (body.refresh_token if body is not None else None) or request.cookies.get(REFRESH_COOKIE)
    if not raw:
        raise ServiceError(ErrorKind.invalid_credentials, "Refresh token is required")
    return _respond(request, _session(request).refresh(raw), "Token refreshed")


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(_session(request).get_current_user(current_user.id))


@router.post("/auth/check-email", response_model=EmailAvailabilityResponse)
def check_email(request: Request, body: EmailRequest) -> EmailAvailabilityResponse:
    return EmailAvailabilityResponse(email=body.email, available=_session(request).check_email(body.email))
