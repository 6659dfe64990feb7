"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and managers do
the work; these classes only own the shape.

Timestamps are aware UTC datetimes here. The store converts them to and from
ISO strings at the boundary (see core/clock.py).

Layer rule: no imports from api/, teams/, or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional


@dataclass
class User:
    """A person who can sign in, and optionally a team owner or team member.

    email is always stored lowercased and stripped so lookups are
    case-insensitive without a functional index.

    hashed_password is a bcrypt hash. It never leaves the auth layer: API
    response models are built field by field and do not include it, and
    public() returns a copy with every credential field blanked.

    parent_account_id points at the team owner when this user is a member.
    child_account_ids is filled by the store from team_members and is only
    non-empty for team owners.
    """

    email: str
    name: str = ""
    id: Optional[int] = None
    username: Optional[str] = None
    hashed_password: Optional[str] = None
    role: str = "free"
    company: Optional[str] = None
    position: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None  # sha256 hex of the emailed token
    password_reset_expires: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    parent_account_id: Optional[int] = None
    child_account_ids: list[int] = field(default_factory=list)
    google_id: Optional[str] = None
    profile_picture: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def public(self) -> "User":
        """Return a copy safe to hand to the boundary layer."""
        return replace(
            self,
            hashed_password=None,
            email_verification_token=None,
            email_verification_expires=None,
            password_reset_token=None,
            password_reset_expires=None,
            child_account_ids=list(self.child_account_ids),
        )


@dataclass
class Subscription:
    """A team owner's plan and seat allocation.

    seats_used mirrors active members + pending invites. The invite manager
    recomputes it on every membership change; it is informational and the
    seat check always recounts from the source tables.

    status is stored for billing and reporting only. Invites are gated on a
    subscription existing and on its plan, never on status.
    """

    user_id: int
    plan: str
    status: str = "active"  # "active" | "canceled" | "expired" | "past_due"
    seats_total: int = 1
    seats_used: int = 1
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    auto_renew: bool = True
    id: Optional[int] = None


@dataclass
class RefreshTokenRecord:
    """One issued refresh token in the allow-list.

    A token is usable only while revoked_at is None and expires_at is in the
    future. Rotation sets revoked_at and links replaced_by to the successor.
    """

    jti: str
    user_id: int
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    id: Optional[int] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"
    refresh_jti: Optional[str] = None


@dataclass
class TokenClaims:
    """Verified contents of a session token."""

    subject_id: int
    issued_at: float  # POSIX seconds with microsecond precision
    expires_at: float
    token_type: str  # "access" | "refresh"
    jti: Optional[str] = None
