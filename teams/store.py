"""
teams/store.py -- SQLAlchemy Core persistence layer for team invitations.

Pattern: Repository + Data Mapper (same as auth/store.py).
InviteStore is the repository; _row_to_invite is the mapper.

Race safety lives here, not in the manager:
  - invites.token is UNIQUE.
  - A partial unique index on (email, team_id) WHERE status = 'pending' makes
    a second pending invite for the same address and team impossible, even
    when two creates pass the manager's pre-check together. Expired, declined
    and accepted rows are outside the index, so re-inviting after a cancel
    works.
  - Every status change goes through update_if_pending(), an
    UPDATE ... WHERE status = 'pending'. Of two concurrent accept/decline/
    cancel calls on the same invite exactly one sees rowcount 1.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.store import build_engine, normalize_email
from core.clock import Clock, SystemClock, from_iso, to_iso
from core.config import get_settings
from core.errors import DuplicateKey
from teams.models import Invite, InvitePage, InviteStatus

logger = logging.getLogger("teampass.teams")

_PENDING = InviteStatus.pending.value
_PENDING_INDEX = "uq_invites_pending_email_team"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_invites = Table(
    "invites",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("invited_by", Integer, nullable=False),
    Column("team_id", Integer, nullable=False, index=True),
    Column("role", String(30), nullable=False, server_default="business"),
    Column("message", Text),
    Column("token", String(64), nullable=False, unique=True),
    Column("status", String(20), nullable=False, server_default=_PENDING),
    Column("expires_at", String(32), nullable=False),
    Column("resend_count", Integer, nullable=False, server_default="0"),
    Column("last_resent", String(32)),
    Column("cancelled_at", String(32)),
    Column("cancelled_by", Integer),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

Index(
    _PENDING_INDEX,
    _invites.c.email,
    _invites.c.team_id,
    unique=True,
    sqlite_where=_invites.c.status == _PENDING,
    postgresql_where=_invites.c.status == _PENDING,
)

# Fields update_if_pending() may touch. Column names in .values() come from
# this list, never from caller input.
_MUTABLE_FIELDS = frozenset(
    {"status", "expires_at", "resend_count", "last_resent", "cancelled_at", "cancelled_by"}
)
_TIMESTAMP_FIELDS = frozenset({"expires_at", "last_resent", "cancelled_at"})


def _duplicate_field(exc: IntegrityError) -> str:
    """"pending" for the (email, team_id) partial index, "token" otherwise.

    SQLite names the columns ("invites.email, invites.team_id"); PostgreSQL
    names the index.
    """
    message = str(exc.orig).lower()
    if _PENDING_INDEX in message or "invites.email" in message:
        return "pending"
    return "token"


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class InviteStore:
    """Repository for Invite entities.

    Usage:
        store = InviteStore("sqlite:///teampass.db")
        invite = store.create(Invite(email="a@b.co", invited_by=1, team_id=1, token=t, expires_at=exp))
        store.update_if_pending(invite.id, status="accepted")
        store.close()
    """

    def __init__(self, db_url: Optional[str] = None, clock: Optional[Clock] = None) -> None:
        self.engine: Engine = build_engine(db_url or get_settings().database_url)
        self.clock: Clock = clock or SystemClock()
        _metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, invite: Invite) -> Invite:
        """Insert a pending invite.

        Raises DuplicateKey("pending") when the team already has a pending
        invite for this email, DuplicateKey("token") on a token collision.
        """
        now = self.clock.now()
        invite.email = normalize_email(invite.email)
        invite.created_at = now
        invite.updated_at = now
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _invites.insert().values(
                        email=invite.email,
                        invited_by=invite.invited_by,
                        team_id=invite.team_id,
                        role=invite.role,
                        message=invite.message,
                        token=invite.token,
                        status=invite.status,
                        expires_at=to_iso(invite.expires_at),
                        resend_count=invite.resend_count,
                        created_at=to_iso(now),
                        updated_at=to_iso(now),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateKey(_duplicate_field(exc)) from exc
        invite.id = result.inserted_primary_key[0]
        return invite

    def update_if_pending(self, invite_id: int, **fields) -> bool:
        """Apply fields only while the invite is still pending.

        Returns False when the invite does not exist or already left pending,
        which is how callers detect that a concurrent request got there first.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown invite fields: {unknown!r}")
        values = {k: (to_iso(v) if k in _TIMESTAMP_FIELDS and v is not None else v) for k, v in fields.items()}
        values["updated_at"] = to_iso(self.clock.now())
        with self.engine.connect() as conn:
            result = conn.execute(
                _invites.update()
                .where((_invites.c.id == invite_id) & (_invites.c.status == _PENDING))
                .values(**values)
            )
            conn.commit()
        return result.rowcount > 0

    def reopen(self, invite_id: int) -> bool:
        """Put a just-accepted invite back to pending.

        Only used to undo a claim when the follow-up write fails, so the
        invitee can try again with the same link. Returns False unless the
        invite was accepted.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _invites.update()
                .where((_invites.c.id == invite_id) & (_invites.c.status == InviteStatus.accepted.value))
                .values(status=_PENDING, updated_at=to_iso(self.clock.now()))
            )
            conn.commit()
        return result.rowcount > 0

    def delete(self, invite_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_invites.delete().where(_invites.c.id == invite_id))
            conn.commit()
        return result.rowcount > 0

    def expire_pending(self, now) -> int:
        """Bulk-expire pending invites whose expires_at <= now. Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _invites.update()
                .where((_invites.c.status == _PENDING) & (_invites.c.expires_at <= to_iso(now)))
                .values(status=InviteStatus.expired.value, updated_at=to_iso(self.clock.now()))
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, invite_id: int) -> Optional[Invite]:
        with self.engine.connect() as conn:
            row = conn.execute(_invites.select().where(_invites.c.id == invite_id)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def find_by_token(self, token: str) -> Optional[Invite]:
        with self.engine.connect() as conn:
            row = conn.execute(_invites.select().where(_invites.c.token == token)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def find_pending(self, email: str, team_id: int) -> Optional[Invite]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _invites.select().where(
                    (_invites.c.email == normalize_email(email))
                    & (_invites.c.team_id == team_id)
                    & (_invites.c.status == _PENDING)
                )
            ).fetchone()
        return _row_to_invite(row) if row is not None else None

    def count_pending(self, team_id: int) -> int:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_invites)
                .where((_invites.c.team_id == team_id) & (_invites.c.status == _PENDING))
            ).scalar()
        return count or 0

    def teams_with_expirable(self, now) -> list[int]:
        """Team ids that have pending invites with expires_at <= now."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_invites.c.team_id)
                .where((_invites.c.status == _PENDING) & (_invites.c.expires_at <= to_iso(now)))
                .distinct()
            ).fetchall()
        return [r.team_id for r in rows]

    def list_for_team(
        self,
        team_id: int,
        status: Optional[str] = None,
        limit: int = 20,
        skip: int = 0,
    ) -> InvitePage:
        """Newest first. total counts every match, ignoring limit/skip."""
        where = _invites.c.team_id == team_id
        if status:
            where = where & (_invites.c.status == status)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _invites.select()
                .where(where)
                .order_by(_invites.c.created_at.desc(), _invites.c.id.desc())
                .offset(skip)
                .limit(limit)
            ).fetchall()
            total = conn.execute(select(func.count()).select_from(_invites).where(where)).scalar()
        return InvitePage(invites=[_row_to_invite(r) for r in rows], total=total or 0)


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_invite(row) -> Invite:
    return Invite(
        id=row.id,
        email=row.email,
        invited_by=row.invited_by,
        team_id=row.team_id,
        role=row.role,
        message=row.message,
        token=row.token,
        status=row.status,
        expires_at=from_iso(row.expires_at),
        resend_count=row.resend_count,
        last_resent=from_iso(row.last_resent),
        cancelled_at=from_iso(row.cancelled_at),
        cancelled_by=row.cancelled_by,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
