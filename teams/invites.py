"""
teams/invites.py -- Invite lifecycle: create, resend, cancel, accept, decline, sweep.

State machine:

    pending --accept--> accepted
    pending --decline--> declined
    pending --cancel / lazy expiry / sweep--> expired

Every transition is a compare-and-set on status (InviteStore.update_if_pending),
so two racing requests on one invite cannot both win.

Seat accounting (business plan only): active members + pending invites must
stay <= seats_total. create() checks before inserting and recounts after; if
a concurrent create pushed the team over, the new invite is deleted again and
the call fails with seat_limit_reached. Subscription.seats_used is rewritten
after every change that moves the count.

Emails are sent after the state change is stored. A delivery failure becomes a
warning on the result; the invite stays as it is.

Layer rule: may import from auth/, core/ and notify/. Never from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from auth.models import User
from auth.roles import TEAM_PLANS, Plan, Role, eligible_to_invite
from auth.store import UserStore, normalize_email
from auth.tokens import generate_token
from core.clock import Clock, SystemClock
from core.config import Settings
from core.errors import DuplicateKey, EmailDeliveryError, ErrorKind, ServiceError
from notify.email import EmailSender, base_template_data
from teams.models import MAX_MESSAGE_LENGTH, Invite, InvitePage, InviteStatus
from teams.store import InviteStore

logger = logging.getLogger("teampass.teams")

# Roles an invite may grant. admin is never handed out through an invite.
_GRANTABLE_ROLES = frozenset(r.value for r in Role if r is not Role.admin)


@dataclass
class InviteResult:
    invite: Invite
    warnings: list[str] = field(default_factory=list)


@dataclass
class AcceptResult:
    user: User
    team: User
    invite: Invite
    is_new_user: bool
    warnings: list[str] = field(default_factory=list)


@dataclass
class SeatUsage:
    plan: str
    total: int
    used: int

    @property
    def available(self) -> int:
        return max(self.total - self.used, 0)


@dataclass
class InviteEligibility:
    can_invite: bool
    reason: Optional[str] = None
    seats: Optional[SeatUsage] = None


def team_id_for(user: User) -> int:
    """A member acts for its owner's team; everyone else is their own team."""
    return user.parent_account_id or user.id


class InviteManager:
    def __init__(
        self,
        invites: InviteStore,
        users: UserStore,
        email_sender: EmailSender,
        settings: Settings,
        clock: Optional[Clock] = None,
    ) -> None:
        self.invites = invites
        self.users = users
        self.email_sender = email_sender
        self.settings = settings
        self.clock: Clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Create / resend / cancel
    # ------------------------------------------------------------------

    def create(
        self,
        email: str,
        invited_by: int,
        team_id: int,
        role: str = Role.business.value,
        message: Optional[str] = None,
    ) -> InviteResult:
        email = normalize_email(email)
        if not email:
            raise ServiceError(ErrorKind.invalid_input, "An email address is required")
        if role not in _GRANTABLE_ROLES:
            raise ServiceError(ErrorKind.invalid_input, f"Role {role!r} cannot be granted by invitation")
        if message is not None and len(message) > MAX_MESSAGE_LENGTH:
            raise ServiceError(
                ErrorKind.invalid_input, f"Message must be at most {MAX_MESSAGE_LENGTH} characters"
            )

        inviter = self.users.find_by_id(invited_by)
        if inviter is None:
            raise ServiceError(ErrorKind.not_found, "Inviter not found")
        if inviter.id != team_id and inviter.parent_account_id != team_id:
            raise ServiceError(ErrorKind.forbidden, "You do not have permission to invite users to this team")

        subscription = self.users.get_subscription(team_id)
        if subscription is None:
            raise ServiceError(ErrorKind.no_subscription, "Team owner does not have a subscription")
        if subscription.plan not in TEAM_PLANS:
            raise ServiceError(ErrorKind.plan_not_eligible, "Your current plan does not support team members")
        seat_limited = subscription.plan == Plan.business.value
        if seat_limited and self._seats_in_use(team_id) >= subscription.seats_total:
            raise ServiceError(
                ErrorKind.seat_limit_reached,
                "You have reached the maximum number of team members for your plan",
                {"seats_total": subscription.seats_total},
            )

        existing = self.users.find_by_email(email)
        if existing is not None and (existing.id == team_id or existing.parent_account_id == team_id):
            raise ServiceError(ErrorKind.already_member, "This user is already a member of your team")

        if self.invites.find_pending(email, team_id) is not None:
            raise ServiceError(ErrorKind.duplicate_pending, "An invitation has already been sent to this email")

        now = self.clock.now()
        try:
            invite = self.invites.create(
                Invite(
                    email=email,
                    invited_by=invited_by,
                    team_id=team_id,
                    role=role,
                    message=message,
                    token=generate_token(),
                    expires_at=now + timedelta(days=self.settings.invite_ttl_days),
                )
            )
        except DuplicateKey as exc:
            if exc.field == "pending":
                raise ServiceError(
                    ErrorKind.duplicate_pending, "An invitation has already been sent to this email"
                ) from exc
            raise

        if seat_limited and self._seats_in_use(team_id) > subscription.seats_total:
            # A concurrent create took the last seat between our check and insert.
            self.invites.delete(invite.id)
            logger.info("Seat overshoot on team id=%s; withdrew invite id=%s", team_id, invite.id)
            raise ServiceError(
                ErrorKind.seat_limit_reached,
                "You have reached the maximum number of team members for your plan",
                {"seats_total": subscription.seats_total},
            )

        logger.info("Invite id=%s created for team id=%s by user id=%s", invite.id, team_id, invited_by)
        self._refresh_seats_used(team_id)
        return InviteResult(invite=invite, warnings=self._send_invitation(invite, inviter))

    def resend(self, invite_id: int, acting_user_id: int) -> InviteResult:
        """Send the invitation again, extending it first if it already lapsed."""
        invite = self._get_for_actor(invite_id, acting_user_id, "resend")
        actor = self.users.find_by_id(acting_user_id)
        if actor is None:
            raise ServiceError(ErrorKind.not_found, "User not found")

        now = self.clock.now()
        updates: dict[str, Any] = {"resend_count": invite.resend_count + 1, "last_resent": now}
        if invite.expires_at <= now:
            updates["expires_at"] = now + timedelta(days=self.settings.invite_ttl_days)
        if not self.invites.update_if_pending(invite.id, **updates):
            raise self._already_processed(invite.id)

        invite = self.invites.get(invite.id)
        return InviteResult(invite=invite, warnings=self._send_invitation(invite, actor))

    def cancel(self, invite_id: int, acting_user_id: int) -> Invite:
        invite = self._get_for_actor(invite_id, acting_user_id, "cancel")
        now = self.clock.now()
        if not self.invites.update_if_pending(
            invite.id,
            status=InviteStatus.expired.value,
            cancelled_at=now,
            cancelled_by=acting_user_id,
        ):
            raise self._already_processed(invite.id)
        logger.info("Invite id=%s cancelled by user id=%s", invite.id, acting_user_id)
        self._refresh_seats_used(invite.team_id)
        return self.invites.get(invite.id)

    def _get_for_actor(self, invite_id: int, acting_user_id: int, action: str) -> Invite:
        invite = self.invites.get(invite_id)
        if invite is None:
            raise ServiceError(ErrorKind.not_found, "Invitation not found")
        if acting_user_id not in (invite.invited_by, invite.team_id):
            raise ServiceError(ErrorKind.forbidden, f"You do not have permission to {action} this invitation")
        if not invite.is_pending:
            raise ServiceError(
                ErrorKind.already_processed,
                "This invitation has already been processed",
                {"status": invite.status},
            )
        return invite

    def _already_processed(self, invite_id: int) -> ServiceError:
        current = self.invites.get(invite_id)
        status = current.status if current is not None else None
        return ServiceError(
            ErrorKind.already_processed, "This invitation has already been processed", {"status": status}
        )

    # ------------------------------------------------------------------
    # Invitee side
    # ------------------------------------------------------------------

    def get_by_token(self, token: str) -> Invite:
        """Return a live pending invite or explain why it is not one.

        A pending invite whose expires_at <= now is flipped to expired here.
        Expired invites (timed out or cancelled) always fail with expired, so
        asking twice gives the same answer. Accepted and declined invites fail
        with already_processed.
        """
        invite = self.invites.find_by_token(token) if token else None
        if invite is None:
            raise ServiceError(ErrorKind.not_found, "Invalid or expired invitation")

        if invite.is_pending and invite.expires_at <= self.clock.now():
            if self.invites.update_if_pending(invite.id, status=InviteStatus.expired.value):
                logger.info("Invite id=%s expired on read", invite.id)
                self._refresh_seats_used(invite.team_id)
            invite = self.invites.get(invite.id)

        if invite.status == InviteStatus.expired.value:
            raise ServiceError(ErrorKind.expired, "This invitation has expired", {"status": invite.status})
        if not invite.is_pending:
            raise ServiceError(
                ErrorKind.already_processed,
                f"This invitation has already been {invite.status}",
                {"status": invite.status},
            )
        return invite

    def accept(self, token: str, user_data: Optional[dict[str, Any]] = None) -> AcceptResult:
        """Join the team, creating the invitee's account if needed.

        The invite is claimed (pending -> accepted) before the account write.
        Joining the team is a compare-and-set on parent_account_id, so of two
        concurrent accepts for one user only the first attaches. If any write
        after the claim fails, the user is detached again (previous role
        restored) and the invite reopened so the link still works.
        """
        user_data = user_data or {}
        invite = self.get_by_token(token)
        team = self.users.find_by_id(invite.team_id)
        if team is None:
            raise ServiceError(ErrorKind.not_found, "Team not found")

        user = self.users.find_by_email(invite.email)
        is_new_user = user is None
        if is_new_user:
            if not user_data.get("name") or not user_data.get("password"):
                raise ServiceError(ErrorKind.invalid_input, "Name and password are required to create an account")
        elif user.id == invite.team_id:
            raise ServiceError(ErrorKind.already_member, "You already own this team")
        elif user.parent_account_id is not None or user.child_account_ids:
            raise ServiceError(
                ErrorKind.already_on_team,
                "You already belong to a team. Please contact support to change teams.",
            )

        if not self.invites.update_if_pending(invite.id, status=InviteStatus.accepted.value):
            raise self._already_processed(invite.id)

        # (user id, role before joining) once the user is attached.
        joined: Optional[tuple[int, str]] = None
        try:
            if is_new_user:
                # Created teamless, then attached below like any existing user.
                user = self.users.create(
                    User(
                        email=invite.email,
                        name=user_data["name"],
                        hashed_password=self.users.hash_password(user_data["password"]),
                        role=Role.free.value,
                        is_email_verified=True,
                        is_active=True,
                    )
                )
            if not self.users.attach_to_team(user.id, invite.team_id, invite.role):
                raise DuplicateKey("member_id")
            joined = (user.id, user.role)
            user.parent_account_id = invite.team_id
            user.role = invite.role
            self.users.add_child_account(invite.team_id, user.id)
        except DuplicateKey as exc:
            self._undo_accept(invite, joined)
            if exc.field == "member_id":
                raise ServiceError(ErrorKind.already_on_team, "You already belong to a team") from exc
            raise ServiceError(ErrorKind.conflict, f"User with this {exc.field} already exists") from exc
        except Exception:
            self._undo_accept(invite, joined)
            raise

        logger.info("User id=%s joined team id=%s via invite id=%s", user.id, invite.team_id, invite.id)
        self._refresh_seats_used(invite.team_id)
        invite = self.invites.get(invite.id)

        warnings = self._send_welcome(user, team, is_new_user)
        warnings += self._send_member_joined(user, team)
        return AcceptResult(
            user=user.public(),
            team=team.public(),
            invite=invite,
            is_new_user=is_new_user,
            warnings=warnings,
        )

    def _undo_accept(self, invite: Invite, joined: Optional[tuple[int, str]]) -> None:
        if joined is not None:
            user_id, previous_role = joined
            self.users.detach_from_team(user_id, invite.team_id, previous_role)
        self.invites.reopen(invite.id)
        logger.info("Accept of invite id=%s rolled back", invite.id)

    def decline(self, token: str) -> InviteResult:
        invite = self.get_by_token(token)
        if not self.invites.update_if_pending(invite.id, status=InviteStatus.declined.value):
            raise self._already_processed(invite.id)
        logger.info("Invite id=%s declined", invite.id)
        self._refresh_seats_used(invite.team_id)

        invite = self.invites.get(invite.id)
        warnings: list[str] = []
        team = self.users.find_by_id(invite.team_id)
        if team is not None:
            warnings = self._send_declined(invite, team)
        return InviteResult(invite=invite, warnings=warnings)

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def list_for_team(
        self,
        team_id: int,
        status: Optional[str] = None,
        limit: int = 20,
        skip: int = 0,
    ) -> InvitePage:
        if status is not None and status not in {s.value for s in InviteStatus}:
            raise ServiceError(ErrorKind.invalid_input, f"Unknown invite status {status!r}")
        return self.invites.list_for_team(team_id, status=status, limit=limit, skip=skip)

    def sweep_expired(self) -> int:
        """Expire every pending invite whose expires_at <= now. Returns the count."""
        now = self.clock.now()
        teams = self.invites.teams_with_expirable(now)
        count = self.invites.expire_pending(now)
        for team_id in teams:
            self._refresh_seats_used(team_id)
        if count:
            logger.info("Sweep expired %d invite(s) across %d team(s)", count, len(teams))
        return count

    def seat_usage(self, team_id: int) -> Optional[SeatUsage]:
        subscription = self.users.get_subscription(team_id)
        if subscription is None:
            return None
        return SeatUsage(plan=subscription.plan, total=subscription.seats_total, used=self._seats_in_use(team_id))

    def can_invite(self, user: User) -> InviteEligibility:
        """Whether the user may send an invite right now, and if not, why."""
        if not eligible_to_invite(user.role):
            return InviteEligibility(False, "Your role cannot send invitations")
        seats = self.seat_usage(team_id_for(user))
        if seats is None:
            return InviteEligibility(False, "Team owner does not have a subscription")
        if seats.plan not in TEAM_PLANS:
            return InviteEligibility(False, "Your current plan does not support team members", seats)
        if seats.plan == Plan.business.value and seats.used >= seats.total:
            return InviteEligibility(False, "All seats on your plan are in use", seats)
        return InviteEligibility(True, None, seats)

    def _seats_in_use(self, team_id: int) -> int:
        return self.users.count_active_child_accounts(team_id) + self.invites.count_pending(team_id)

    def _refresh_seats_used(self, team_id: int) -> None:
        self.users.update_seats_used(team_id, self._seats_in_use(team_id))

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    def _template_data(self, **extra: Any) -> dict[str, Any]:
        return {**base_template_data(self.settings), "currentYear": self.clock.now().year, **extra}

    def _send_invitation(self, invite: Invite, inviter: User) -> list[str]:
        team = self.users.find_by_id(invite.team_id)
        team_name = (team.company if team is not None else None) or "their team"
        data = self._template_data(
            inviterName=inviter.name,
            teamName=team_name,
            message=invite.message or "",
            inviteUrl=f"{self.settings.frontend_url}/invite/accept/{invite.token}",
            expiryDate=invite.expires_at.strftime("%Y-%m-%d"),
        )
        subject = f"{inviter.name} has invited you to join {team_name} on {self.settings.app_name}"
        return self._send(invite.email, subject, "team-invitation", data)

    def _send_welcome(self, user: User, team: User, is_new_user: bool) -> list[str]:
        team_name = team.company or "the team"
        data = self._template_data(
            name=user.name,
            teamName=team_name,
            ownerName=team.name,
            role=user.role,
            dashboardUrl=f"{self.settings.frontend_url}/dashboard",
        )
        template_key = "team-welcome-new" if is_new_user else "team-welcome-existing"
        return self._send(user.email, f"Welcome to {team_name} on {self.settings.app_name}", template_key, data)

    def _send_member_joined(self, user: User, team: User) -> list[str]:
        data = self._template_data(
            ownerName=team.name,
            memberName=user.name,
            memberEmail=user.email,
            teamName=team.company or "your team",
            teamUrl=f"{self.settings.frontend_url}/team",
        )
        subject = f"{user.name} has joined your team on {self.settings.app_name}"
        return self._send(team.email, subject, "team-member-joined", data)

    def _send_declined(self, invite: Invite, team: User) -> list[str]:
        team_name = team.company or "your team"
        data = self._template_data(
            ownerName=team.name,
            inviteeEmail=invite.email,
            teamName=team_name,
            teamUrl=f"{self.settings.frontend_url}/team",
        )
        return self._send(team.email, f"Invitation to join {team_name} was declined", "team-invite-declined", data)

    def _send(self, to: str, subject: str, template_key: str, data: dict[str, Any]) -> list[str]:
        try:
            self.email_sender.send(to, subject, template_key, data)
        except EmailDeliveryError as exc:
            logger.warning("Email %s to %s not delivered: %s", template_key, to, exc)
            return [f"The {template_key} email could not be delivered"]
        return []
