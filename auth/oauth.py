"""
auth/oauth.py -- Authlib OAuth configuration for Google sign-in.

build_oauth() registers the Google client only when both GOOGLE_CLIENT_ID and
GOOGLE_CLIENT_SECRET are configured. The API lifespan stores the registry on
app.state.oauth; routes ask google_enabled() before using it.

Security notes:
  Email verification is mandatory. get_google_profile() raises ValueError
  unless the id_token says email_verified. An unverified address could belong
  to someone else, and google_auth() links accounts by email.

  The OAuth state parameter (CSRF protection) is handled by authlib through
  Starlette SessionMiddleware. The profile is read only from the token authlib
  obtained in the server-side code exchange, never from client-supplied
  fields.

Layer rule: no imports from api/, teams/, or notify/. Import from core/ is
allowed -- core/ is the kernel layer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from authlib.integrations.starlette_client import OAuth

from core.config import Settings

logger = logging.getLogger("teampass.auth.oauth")

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"


@dataclass
class GoogleProfile:
    google_id: str
    email: str
    name: str = ""
    picture: Optional[str] = None


def google_enabled(settings: Settings) -> bool:
    return bool(settings.google_client_id and settings.google_client_secret)


def build_oauth(settings: Settings) -> OAuth:
    """Return an authlib registry with every configured provider registered."""
    oauth = OAuth()
    if google_enabled(settings):
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")
    return oauth


def get_google_profile(token: dict) -> GoogleProfile:
    """Extract the Google identity from the token authlib returned.

    Google is an OIDC provider, so authlib parses the id_token into
    token["userinfo"]. A missing email_verified claim counts as unverified.

    Raises:
        ValueError: no userinfo, unverified email, or missing sub/email.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("Google OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            "Google OAuth: email is not verified. "
            "Google must confirm email ownership before sign-in is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError("Google OAuth: missing email or sub claim in userinfo")

    return GoogleProfile(
        google_id=str(subject_id),
        email=email,
        name=userinfo.get("name") or "",
        picture=userinfo.get("picture"),
    )
