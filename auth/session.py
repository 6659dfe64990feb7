"""
auth/session.py -- Account and session lifecycle.

AuthSessionManager owns every flow that creates a user, proves who they are,
or changes their credentials: register, login, Google sign-in, email
verification, password reset and change, refresh-token rotation and logout.

Collaborators are injected (store, token service, email sender, clock,
settings) so the API lifespan, the CLI and the tests each wire their own.
Nothing here knows about HTTP; failures are ServiceError and the API layer
renders them.

Email is sent after the state change is committed. A delivery failure never
rolls the change back: it is logged and returned in the result's warnings.

Layer rule: may import from core/ and notify/ (protocol only). Never from api/
or teams/.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from auth.models import TokenPair, User
from auth.store import UserStore, normalize_email
from auth.tokens import REFRESH, TokenService, generate_token, hash_token
from core.clock import Clock, SystemClock
from core.config import Settings
from core.errors import DuplicateKey, EmailDeliveryError, ErrorKind, ServiceError
from notify.email import EmailSender, base_template_data

logger = logging.getLogger("teampass.auth.session")

# Profile fields a caller may set at registration.
_PROFILE_FIELDS = ("name", "username", "company", "position")


@dataclass
class AuthResult:
    """What a session operation hands back to the boundary.

    user is always the credential-free copy from User.public().
    """

    user: User
    tokens: Optional[TokenPair] = None
    warnings: list[str] = field(default_factory=list)


class AuthSessionManager:
    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        email_sender: EmailSender,
        settings: Settings,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.email_sender = email_sender
        self.settings = settings
        self.clock: Clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Registration and sign-in
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, profile: Optional[dict[str, Any]] = None) -> AuthResult:
        """Create an unverified account and send the verification link.

        The existence check gives a friendly error for the common case; the
        UNIQUE constraint on email catches the race where two registrations
        for the same address pass the check together.
        """
        email = normalize_email(email)
        if not email or not password:
            raise ServiceError(ErrorKind.invalid_input, "Email and password are required")
        if self.store.email_exists(email):
            raise ServiceError(ErrorKind.conflict, "User with this email already exists")

        profile = profile or {}
        now = self.clock.now()
        user = User(
            email=email,
            hashed_password=self.store.hash_password(password),
            is_email_verified=False,
            email_verification_token=generate_token(),
            email_verification_expires=now + timedelta(hours=self.settings.email_verification_ttl_hours),
            **{k: profile[k] for k in _PROFILE_FIELDS if profile.get(k) is not None},
        )
        user.name = user.name or ""
        try:
            user = self.store.create(user)
        except DuplicateKey as exc:
            raise ServiceError(
                ErrorKind.conflict,
                f"User with this {exc.field} already exists",
                {"field": exc.field},
            ) from exc
        logger.info("Registered user id=%s", user.id)

        warnings = self._send_verification(user)
        return AuthResult(user=user.public(), warnings=warnings)

    def login(self, email: str, password: str) -> AuthResult:
        """Check credentials and issue a token pair.

        Unknown email and wrong password produce the same error, and both run
        one bcrypt comparison (see UserStore.verify_password).
        """
        user = self.store.find_by_email(email)
        if not self.store.verify_password(user, password or ""):
            logger.info("Failed login for email=%s", normalize_email(email))
            raise ServiceError(ErrorKind.invalid_credentials, "Invalid email or password")
        if not user.is_active:
            raise ServiceError(ErrorKind.inactive, "This account has been deactivated")
        if not user.is_email_verified:
            raise ServiceError(ErrorKind.email_not_verified, "Please verify your email before logging in")

        now = self.clock.now()
        user.last_login = now
        self.store.save(user)
        return AuthResult(user=user.public(), tokens=self.tokens.issue_pair(user, now))

    def google_auth(
        self,
        google_id: str,
        email: str,
        name: str = "",
        picture: Optional[str] = None,
    ) -> AuthResult:
        """Sign in with a verified Google identity.

        Lookup order: linked google_id, then email (linking the identity and
        marking the address verified), then a brand-new verified account with
        an unguessable random password.
        """
        if not google_id or not email:
            raise ServiceError(ErrorKind.invalid_input, "Google profile is missing an id or email")

        user = self.store.find_by_google_id(google_id)
        if user is None:
            user = self.store.find_by_email(email)
            if user is not None:
                user.google_id = google_id
                user.profile_picture = picture or user.profile_picture
                user.is_email_verified = True
                logger.info("Linked Google identity to user id=%s", user.id)
            else:
                user = self.store.create(
                    User(
                        email=email,
                        name=name or "",
                        google_id=google_id,
                        profile_picture=picture,
                        hashed_password=self.store.hash_password(secrets.token_hex(16)),
                        is_email_verified=True,
                    )
                )
                logger.info("Created user id=%s from Google sign-in", user.id)

        if not user.is_active:
            raise ServiceError(ErrorKind.inactive, "This account has been deactivated")
        now = self.clock.now()
        user.last_login = now
        self.store.save(user)
        return AuthResult(user=user.public(), tokens=self.tokens.issue_pair(user, now))

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, raw_token: str) -> AuthResult:
        now = self.clock.now()
        user = self.store.find_by_verification_token(raw_token, now)
        if user is None:
            raise ServiceError(ErrorKind.invalid_or_expired, "Invalid or expired verification token")

        user.is_email_verified = True
        user.email_verification_token = None
        user.email_verification_expires = None
        self.store.save(user)
        logger.info("Verified email for user id=%s", user.id)
        return AuthResult(user=user.public(), tokens=self.tokens.issue_pair(user, now))

    def resend_verification(self, email: str) -> AuthResult:
        """Rotate the verification token and send a fresh link.

        The previous link stops working because the stored token is replaced.
        """
        user = self.store.find_by_email(email)
        if user is None:
            if self.settings.conceal_unknown_email:
                logger.info("Resend verification for unknown email concealed")
                return AuthResult(user=User(email=normalize_email(email)))
            raise ServiceError(ErrorKind.not_found, "No user found with this email")
        if user.is_email_verified:
            raise ServiceError(ErrorKind.already_verified, "Email already verified")

        user.email_verification_token = generate_token()
        user.email_verification_expires = self.clock.now() + timedelta(
            hours=self.settings.email_verification_ttl_hours
        )
        self.store.save(user)
        return AuthResult(user=user.public(), warnings=self._send_verification(user))

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> AuthResult:
        """Store sha256(reset token) with a short expiry and email the raw token."""
        user = self.store.find_by_email(email)
        if user is None:
            if self.settings.conceal_unknown_email:
                logger.info("Password reset for unknown email concealed")
                return AuthResult(user=User(email=normalize_email(email)))
            raise ServiceError(ErrorKind.not_found, "No user found with this email")

        raw = generate_token()
        user.password_reset_token = hash_token(raw)
        user.password_reset_expires = self.clock.now() + timedelta(hours=self.settings.password_reset_ttl_hours)
        self.store.save(user)

        data = {
            **base_template_data(self.settings),
            "name": user.name,
            "resetUrl": f"{self.settings.frontend_url}/reset-password/{raw}",
            "currentYear": self.clock.now().year,
        }
        warnings = self._send(user.email, "Password Reset Instructions", "password-reset", data)
        return AuthResult(user=user.public(), warnings=warnings)

    def reset_password(self, raw_token: str, new_password: str) -> AuthResult:
        """Set a new password from an emailed reset token.

        Moves the password_changed_at checkpoint, which invalidates every
        access token minted before now, and revokes all refresh tokens. The
        returned pair is minted at the same instant as the checkpoint so it
        passes the iat >= password_changed_at check.
        """
        if not new_password:
            raise ServiceError(ErrorKind.invalid_input, "A new password is required")
        now = self.clock.now()
        user = self.store.find_by_reset_token(hash_token(raw_token or ""), now)
        if user is None:
            raise ServiceError(ErrorKind.invalid_or_expired, "Invalid or expired reset token")

        user.hashed_password = self.store.hash_password(new_password)
        user.password_reset_token = None
        user.password_reset_expires = None
        return self._rotate_credentials(user, now)

    def change_password(self, user_id: int, current_password: str, new_password: str) -> AuthResult:
        if not new_password:
            raise ServiceError(ErrorKind.invalid_input, "A new password is required")
        user = self.store.find_by_id(user_id)
        if user is None:
            raise ServiceError(ErrorKind.not_found, "User not found")
        if not self.store.verify_password(user, current_password or ""):
            raise ServiceError(ErrorKind.invalid_credentials, "Current password is incorrect")

        user.hashed_password = self.store.hash_password(new_password)
        return self._rotate_credentials(user, self.clock.now())

    def _rotate_credentials(self, user: User, now) -> AuthResult:
        user.password_changed_at = now
        self.store.save(user)
        revoked = self.store.revoke_all_refresh_tokens(user.id)
        logger.info("Password changed for user id=%s; revoked %d refresh token(s)", user.id, revoked)
        return AuthResult(user=user.public(), tokens=self.tokens.issue_pair(user, now))

    # ------------------------------------------------------------------
    # Refresh and logout
    # ------------------------------------------------------------------

    def refresh(self, raw_refresh_token: str) -> AuthResult:
        """Exchange a live refresh token for a new pair, revoking the old one.

        A refresh token that was already rotated or revoked being presented
        again means it leaked; every refresh token of that user is revoked so
        whoever holds the newer one has to sign in again too.
        """
        try:
            claims = self.tokens.verify(raw_refresh_token, REFRESH)
        except ServiceError as exc:
            raise ServiceError(ErrorKind.invalid_credentials, "Invalid refresh token") from exc

        record = self.store.get_refresh_token(claims.jti)
        if record is None or record.user_id != claims.subject_id:
            raise ServiceError(ErrorKind.invalid_credentials, "Invalid refresh token")
        if record.revoked_at is not None:
            # Only a rotated token (replaced_by set) counts as a replay. Tokens
            # revoked by logout or a password change are simply dead.
            if record.replaced_by is not None:
                revoked = self.store.revoke_all_refresh_tokens(record.user_id)
                logger.warning(
                    "Refresh token replay for user id=%s; revoked %d remaining token(s)", record.user_id, revoked
                )
            raise ServiceError(ErrorKind.invalid_credentials, "Invalid refresh token")

        try:
            user = self.tokens.user_for_claims(claims)
        except ServiceError as exc:
            raise ServiceError(ErrorKind.invalid_credentials, "Invalid refresh token") from exc

        now = self.clock.now()
        pair = self.tokens.issue_pair(user, now)
        if not self.store.revoke_refresh_token(claims.jti, replaced_by=pair.refresh_jti):
            # Lost a race with a concurrent refresh of the same token.
            self.store.revoke_all_refresh_tokens(user.id)
            raise ServiceError(ErrorKind.invalid_credentials, "Invalid refresh token")
        return AuthResult(user=user.public(), tokens=pair)

    def logout(self, user_id: int) -> int:
        """Revoke every refresh token of the user. Returns how many were live."""
        revoked = self.store.revoke_all_refresh_tokens(user_id)
        logger.info("Logout user id=%s; revoked %d refresh token(s)", user_id, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_current_user(self, user_id: int) -> User:
        user = self.store.find_by_id(user_id)
        if user is None:
            raise ServiceError(ErrorKind.not_found, "User not found")
        return user.public()

    def check_email(self, email: str) -> bool:
        """True when the address is free to register."""
        return not self.store.email_exists(email)

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    def _send_verification(self, user: User) -> list[str]:
        data = {
            **base_template_data(self.settings),
            "name": user.name,
            "verificationUrl": f"{self.settings.frontend_url}/verify-email/{user.email_verification_token}",
            "currentYear": self.clock.now().year,
        }
        return self._send(user.email, "Verify Your Email Address", "email-verification", data)

    def _send(self, to: str, subject: str, template_key: str, data: dict[str, Any]) -> list[str]:
        try:
            self.email_sender.send(to, subject, template_key, data)
        except EmailDeliveryError as exc:
            logger.warning("Email %s to %s not delivered: %s", template_key, to, exc)
            return [f"The {template_key} email could not be delivered"]
        return []
