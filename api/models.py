"""
API request and response models for TeamPass REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
teams/models.py, which own the internal domain representation. Route handlers
map between the two with the from_* factory methods below.

No response model has a password, password hash, verification token or reset
token field, so none of them can leak through serialization.
"""

from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import TokenPair, User
from teams.invites import InviteEligibility, SeatUsage
from teams.models import MAX_MESSAGE_LENGTH, Invite

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one @, no whitespace, a dot in the domain. Deliverability
# is proven by the verification email, not by a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
USERNAME_PATTERN = r"^[A-Za-z0-9_.-]{3,50}$"

_Email = Annotated[str, Field(pattern=EMAIL_PATTERN, max_length=254)]
_Password = Annotated[str, Field(min_length=8, max_length=128)]


# ---------------------------------------------------------------------------
# Request models -- auth
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    password: _Password
    name: str = Field(min_length=1, max_length=100)
    username: Optional[str] = Field(default=None, pattern=USERNAME_PATTERN)
    company: Optional[str] = Field(default=None, max_length=200)
    position: Optional[str] = Field(default=None, max_length=200)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    password: str = Field(min_length=1, max_length=128)


class EmailRequest(BaseModel):
    """Body for resend-verification, forgot-password and check-email."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email


class ResetPasswordRequest(BaseModel):
    password: _Password


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: _Password


class RefreshRequest(BaseModel):
    """Body for POST /api/v1/auth/refresh-token. Falls back to the refresh cookie."""

    refresh_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Request models -- invites
# ---------------------------------------------------------------------------


class InviteCreate(BaseModel):
    """Request body for POST /api/v1/invites.

    team_id defaults to the caller's team (their owner's id for members,
    their own id for owners).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    role: str = "business"
    message: Optional[str] = Field(default=None, max_length=MAX_MESSAGE_LENGTH)
    team_id: Optional[int] = None


class AcceptInviteRequest(BaseModel):
    """Only needed when the invitee has no account yet."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)


# ---------------------------------------------------------------------------
# Response models -- auth
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    email: str
    username: Optional[str] = None
    name: str = ""
    company: Optional[str] = None
    position: Optional[str] = None
    role: str
    is_active: bool
    is_email_verified: bool
    parent_account_id: Optional[int] = None
    child_account_ids: list[int] = []
    profile_picture: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            name=user.name,
            company=user.company,
            position=user.position,
            role=user.role,
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            parent_account_id=user.parent_account_id,
            child_account_ids=list(user.child_account_ids),
            profile_picture=user.profile_picture,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class AuthResponse(BaseModel):
    """Envelope for every session operation.

    warnings lists emails that could not be delivered; the operation itself
    succeeded.
    """

    message: str
    user: Optional[UserResponse] = None
    tokens: Optional[TokenResponse] = None
    warnings: list[str] = []


class MessageResponse(BaseModel):
    message: str
    warnings: list[str] = []


class EmailAvailabilityResponse(BaseModel):
    email: str
    available: bool


# ---------------------------------------------------------------------------
# Response models -- invites
# ---------------------------------------------------------------------------


class InviteResponse(BaseModel):
    """An invite as shown to the team. The token is never included."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    email: str
    invited_by: int
    team_id: int
    role: str
    message: Optional[str] = None
    status: str
    expires_at: datetime
    resend_count: int
    last_resent: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_invite(cls, invite: Invite) -> "InviteResponse":
        return cls(
            id=invite.id,
            email=invite.email,
            invited_by=invite.invited_by,
            team_id=invite.team_id,
            role=invite.role,
            message=invite.message,
            status=invite.status,
            expires_at=invite.expires_at,
            resend_count=invite.resend_count,
            last_resent=invite.last_resent,
            cancelled_at=invite.cancelled_at,
            cancelled_by=invite.cancelled_by,
            created_at=invite.created_at,
        )


class InviteActionResponse(BaseModel):
    message: str
    invite: InviteResponse
    warnings: list[str] = []


class InviteListResponse(BaseModel):
    invites: list[InviteResponse]
    total: int
    limit: int
    skip: int


class TeamSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    name: str
    company: Optional[str] = None

    @classmethod
    def from_user(cls, owner: User) -> "TeamSummary":
        return cls(id=owner.id, name=owner.name, company=owner.company)


class AcceptInviteResponse(BaseModel):
    message: str
    user: UserResponse
    team: TeamSummary
    is_new_user: bool
    warnings: list[str] = []


class SeatUsageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan: str
    total: int
    used: int
    available: int

    @classmethod
    def from_usage(cls, usage: SeatUsage) -> "SeatUsageResponse":
        return cls(plan=usage.plan, total=usage.total, used=usage.used, available=usage.available)


class CanInviteResponse(BaseModel):
    can_invite: bool
    reason: Optional[str] = None
    seats: Optional[SeatUsageResponse] = None

    @classmethod
    def from_eligibility(cls, result: InviteEligibility) -> "CanInviteResponse":
        return cls(
            can_invite=result.can_invite,
            reason=result.reason,
            seats=SeatUsageResponse.from_usage(result.seats) if result.seats is not None else None,
        )


class SweepResponse(BaseModel):
    expired: int


# ---------------------------------------------------------------------------
# Shared response models
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    code is the ErrorKind value for business errors, so clients can branch on
    it without parsing message.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = {}
