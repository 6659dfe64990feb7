"""
auth/tokens.py -- JWT issuance/verification and one-time token utilities.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with
       SECRET_KEY and carry sub (user id as a string), typ ("access" or
       "refresh"), iat and exp. iat is a float with microsecond precision so
       a token minted in the same second as a password change can still be
       ordered against password_changed_at.

  Expiry is checked against the injected Clock, not jose's wall clock, so
       tests can move time. jose's own exp check is switched off and the
       comparison happens in verify(): a token whose exp equals now is expired.

  Refresh tokens carry a random jti that is persisted in the store's
       allow-list when issued. A refresh token is only honoured while its
       jti is live there (see auth/session.py for rotation).

  One-time tokens (email verification, password reset, invites):
       secrets.token_hex(32) gives 256 bits of entropy. Reset tokens are stored
       as sha256 hex so a leaked DB row cannot be replayed; sha256 is enough
       because the input is already high-entropy and lookup must be O(1).

Layer rule: no imports from api/, teams/, or notify/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional

from jose import JWTError, jwt

from auth.models import RefreshTokenRecord, TokenClaims, TokenPair
from core.clock import Clock, SystemClock
from core.config import Settings
from core.errors import ErrorKind, ServiceError

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("teampass.auth")

ACCESS = "access"
REFRESH = "refresh"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
# The refresh cookie is only sent to the auth routes that consume it.
REFRESH_COOKIE_PATH = "/api/v1/auth"


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and verifies session tokens, and resolves them to users.

    authenticate() is the only place that turns a bearer token into a User.
    The FastAPI dependencies and the session manager both go through it, so
    the password-change checkpoint and the is_active check cannot drift apart.
    """

    def __init__(
        self,
        store: UserStore,
        secret_key: str,
        access_ttl: int = 3600,
        refresh_ttl: int = 30 * 24 * 3600,
        clock: Optional[Clock] = None,
        algorithm: str = "HS256",
    ) -> None:
        self.store = store
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock: Clock = clock or SystemClock()
        self.algorithm = algorithm

    @classmethod
    def from_settings(cls, store: UserStore, settings: Settings, clock: Optional[Clock] = None) -> "TokenService":
        return cls(
            store,
            settings.secret_key,
            access_ttl=settings.access_token_expire_seconds,
            refresh_ttl=settings.refresh_token_expire_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_pair(self, user: User, now: Optional[datetime] = None) -> TokenPair:
        """Mint an access + refresh token pair and allow-list the refresh jti.

        now defaults to the clock. Callers that just moved a checkpoint
        (password reset/change) pass the same instant so the new tokens are
        not older than password_changed_at.
        """
        now = now or self.clock.now()
        access_exp = now + timedelta(seconds=self.access_ttl)
        refresh_exp = now + timedelta(seconds=self.refresh_ttl)
        jti = secrets.token_hex(16)

        access = self._encode(
            {
                "sub": str(user.id),
                "typ": ACCESS,
                "iat": now.timestamp(),
                "exp": access_exp.timestamp(),
            }
        )
        refresh = self._encode(
            {
                "sub": str(user.id),
                "typ": REFRESH,
                "jti": jti,
                "iat": now.timestamp(),
                "exp": refresh_exp.timestamp(),
            }
        )
        self.store.add_refresh_token(
            RefreshTokenRecord(jti=jti, user_id=user.id, issued_at=now, expires_at=refresh_exp)
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            refresh_jti=jti,
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        return jwt.encode(payload, self._secret_key, algorithm=self.algorithm)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, expected_type: str = ACCESS) -> TokenClaims:
        """Decode a token and check signature, type and expiry.

        Raises ServiceError(invalid_token) for anything malformed, badly
        signed or of the wrong type, and ServiceError(token_expired) when
        exp <= now.
        """
        if not token:
            raise ServiceError(ErrorKind.invalid_token, "Invalid token")
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            logger.debug("JWT rejected: %s", exc)
            raise ServiceError(ErrorKind.invalid_token, "Invalid token") from exc

        if payload.get("typ") != expected_type:
            raise ServiceError(ErrorKind.invalid_token, "Invalid token")
        try:
            claims = TokenClaims(
                subject_id=int(payload["sub"]),
                issued_at=float(payload["iat"]),
                expires_at=float(payload["exp"]),
                token_type=payload["typ"],
                jti=payload.get("jti"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ServiceError(ErrorKind.invalid_token, "Invalid token") from exc
        if expected_type == REFRESH and not claims.jti:
            raise ServiceError(ErrorKind.invalid_token, "Invalid token")

        if claims.expires_at <= self.clock.now().timestamp():
            raise ServiceError(ErrorKind.token_expired, "Token has expired")
        return claims

    def authenticate(self, token: str, expected_type: str = ACCESS) -> User:
        """Resolve a token to a live user or raise ServiceError.

        Order of checks: token validity, user exists (not_found), token not
        older than the last password change (password_changed), user active
        (inactive).
        """
        claims = self.verify(token, expected_type)
        return self.user_for_claims(claims)

    def user_for_claims(self, claims: TokenClaims) -> User:
        user = self.store.find_by_id(claims.subject_id)
        if user is None:
            raise ServiceError(ErrorKind.not_found, "User not found")
        if user.password_changed_at is not None and claims.issued_at < user.password_changed_at.timestamp():
            raise ServiceError(ErrorKind.password_changed, "Password recently changed. Please log in again.")
        if not user.is_active:
            raise ServiceError(ErrorKind.inactive, "This account has been deactivated")
        return user


# ---------------------------------------------------------------------------
# One-time tokens
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """32 random bytes as 64 hex characters."""
    return secrets.token_hex(32)


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, pair: TokenPair, tokens: TokenService, secure: bool = False) -> None:
    """Write both tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: the TTLs of the TokenService that minted the pair, so cookie and
    JWT expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=pair.access_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=tokens.access_ttl,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=pair.refresh_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=tokens.refresh_ttl,
        path=REFRESH_COOKIE_PATH,
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
