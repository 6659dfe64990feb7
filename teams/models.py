"""
teams/models.py -- Domain dataclasses for team invitations.

Pattern: Data class (pure data container, zero logic).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class InviteStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    declined = "declined"
    expired = "expired"


MAX_MESSAGE_LENGTH = 500


@dataclass
class Invite:
    """An invitation for an email address to join a team.

    pending is the only live state. accepted, declined and expired are sinks;
    the one way back to pending is InviteStore.reopen(), which undoes an
    accept whose account write failed.

    Cancelling an invite also lands in expired; cancelled_at/cancelled_by tell
    a withdrawn invite apart from one that timed out.
    """

    email: str
    invited_by: int
    team_id: int
    token: str
    expires_at: datetime
    role: str = "business"
    message: Optional[str] = None
    status: str = InviteStatus.pending.value
    resend_count: int = 0
    last_resent: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        return self.status == InviteStatus.pending.value


@dataclass
class InvitePage:
    invites: list[Invite]
    total: int
