"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two places a token can come from, checked in priority order:
  1. JWT cookie ("access_token") -- set by the login/verify/reset responses.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on TokenService.authenticate(), which owns every rule about
whether a token still identifies a live user (signature, type, expiry,
password-change checkpoint, is_active). Nothing here re-checks any of those.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() raises the ServiceError from authenticate(), which the
app's exception handler renders as a 401/404 envelope.
require_tier(), require_admin() and require_verified_email() wrap
get_current_user() and raise forbidden / email_not_verified.

Layer rule: no imports from api/, teams/, or notify/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Request

from auth.models import User
from auth.roles import Role, has_tier
from auth.tokens import ACCESS_COOKIE, TokenService
from core.errors import ErrorKind, ServiceError


def _token_from_request(request: Request) -> Optional[str]:
    # 1. Cookie
    token: Optional[str] = request.cookies.get(ACCESS_COOKIE)

    # 2. Authorization: Bearer header
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = _token_from_request(request)
    if token is None:
        raise ServiceError(ErrorKind.invalid_token, "Authentication required")
    tokens: TokenService = request.app.state.token_service
    return tokens.authenticate(token)


def try_get_current_user(request: Request) -> Optional[User]:
    """Return the authenticated user, or None. Never raises ServiceError."""
    try:
        return get_current_user(request)
    except ServiceError:
        return None


def require_tier(minimum: str) -> Callable[..., User]:
    """Build a dependency that admits users at or above a role tier.

    Admin passes every tier:
        @router.post("/invites")
        def route(user: User = Depends(require_tier("business"))): ...
    """

    def dependency(user: User = Depends(get_current_user)) -> User:
        if not has_tier(user.role, minimum):
            raise ServiceError(
                ErrorKind.forbidden,
                "Your plan does not include this feature",
                {"required_tier": minimum},
            )
        return user

    return dependency


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != Role.admin.value:
        raise ServiceError(ErrorKind.forbidden, "Admin access required")
    return user


def require_verified_email(user: User = Depends(get_current_user)) -> User:
    if not user.is_email_verified:
        raise ServiceError(ErrorKind.email_not_verified, "Please verify your email address first")
    return user
