"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_subscription /
_row_to_refresh_token are the mappers. Manager and route code never touches
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The store owns password hashing. Managers hand it plaintext through
  hash_password() / verify_password() and never see the bcrypt call.

Uniqueness is enforced by the database, not by check-then-insert:
  users.email, users.username, users.google_id, team_members.member_id,
  subscriptions.user_id and refresh_tokens.jti all carry UNIQUE constraints.
  An IntegrityError on insert/update is translated into DuplicateKey(field) so
  callers can map it to a business error without importing SQLAlchemy.
  SQLite and PostgreSQL both treat NULLs as distinct in UNIQUE constraints, so
  nullable username/google_id columns do not collide for users without one.

Timestamps are ISO 8601 strings from core.clock.to_iso(). Expiry filters
compare those strings directly in SQL.

DB URL: Settings.database_url (shared with teams/store.py).

Layer rule: no imports from api/, teams/, or notify/.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import RefreshTokenRecord, Subscription, User
from auth.passwords import DEFAULT_ROUNDS, dummy_hash
from auth.passwords import hash_password as _bcrypt_hash
from auth.passwords import verify_password as _bcrypt_verify
from core.clock import Clock, SystemClock, from_iso, to_iso
from core.config import get_settings
from core.errors import DuplicateKey

logger = logging.getLogger("teampass.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lowercased
    Column("username", String(50), unique=True),
    Column("hashed_password", Text),
    Column("name", String(255), nullable=False, server_default=""),
    Column("company", String(255)),
    Column("position", String(255)),
    Column("role", String(30), nullable=False, server_default="free"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verification_token", String(64), index=True),
    Column("email_verification_expires", String(32)),
    Column("password_reset_token", String(64), index=True),  # sha256 hex
    Column("password_reset_expires", String(32)),
    Column("password_changed_at", String(32)),
    Column("parent_account_id", Integer, index=True),
    Column("google_id", String(255), unique=True),
    Column("profile_picture", Text),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

# One row per (owner, member). member_id is UNIQUE: a user belongs to at most
# one team.
_team_members = Table(
    "team_members",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("member_id", Integer, nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_subscriptions = Table(
    "subscriptions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, unique=True),
    Column("plan", String(30), nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("seats_total", Integer, nullable=False, server_default="1"),
    Column("seats_used", Integer, nullable=False, server_default="1"),
    Column("start_date", String(32), nullable=False),
    Column("end_date", String(32)),
    Column("auto_renew", Integer, nullable=False, server_default="1"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("jti", String(64), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("replaced_by", String(64)),
)

# Columns that can collide, in the order they are checked against the driver's
# error message.
_UNIQUE_USER_FIELDS = ("email", "username", "google_id")


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases answer "memory" and keep
    their journal mode, which is harmless.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def build_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite tweaks every store needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    """Emails are compared case-insensitively; store and look up this form."""
    return (email or "").strip().lower()


def _iso(value) -> Optional[str]:
    return to_iso(value) if value is not None else None


def _duplicate_field(exc: IntegrityError, candidates: tuple[str, ...]) -> str:
    """Name the unique column an IntegrityError complained about.

    SQLite reports "UNIQUE constraint failed: users.email"; PostgreSQL reports
    the constraint name, e.g. "users_email_key". Both contain the column name.
    """
    message = str(exc.orig).lower()
    for field_name in candidates:
        if field_name in message:
            return field_name
    return candidates[0]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, team membership, Subscription and refresh tokens.

    Usage:
        store = UserStore("sqlite:///teampass.db")
        user = store.create(User(email="a@b.co", hashed_password=store.hash_password("secret")))
        same = store.find_by_email("A@B.co")
        store.close()
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        bcrypt_rounds: int = DEFAULT_ROUNDS,
        clock: Optional[Clock] = None,
    ) -> None:
        self.engine: Engine = build_engine(db_url or get_settings().database_url)
        self.bcrypt_rounds = bcrypt_rounds
        self.clock: Clock = clock or SystemClock()
        _metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def ping(self) -> bool:
        """Round-trip to the database. Raises if it is unreachable."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def hash_password(self, plain: str) -> str:
        return _bcrypt_hash(plain, self.bcrypt_rounds)

    def verify_password(self, user: Optional[User], candidate: str) -> bool:
        """Check candidate against the user's hash with equal cost either way.

        When the user is missing (or has no password, e.g. a Google-only
        account created before one was set) bcrypt still runs against a dummy
        hash so response time does not reveal whether the email exists.
        """
        if user is None or not user.hashed_password:
            _bcrypt_verify(candidate, dummy_hash(self.bcrypt_rounds))
            return False
        return _bcrypt_verify(candidate, user.hashed_password)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> Optional[User]:
        return self._find_one(_users.c.email == normalize_email(email))

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self._find_one(_users.c.id == user_id)

    def find_by_google_id(self, google_id: str) -> Optional[User]:
        return self._find_one(_users.c.google_id == google_id)

    def find_by_verification_token(self, token: str, now) -> Optional[User]:
        """Exact token match whose expiry is still in the future."""
        if not token:
            return None
        return self._find_one(
            (_users.c.email_verification_token == token) & (_users.c.email_verification_expires > to_iso(now))
        )

    def find_by_reset_token(self, token_hash: str, now) -> Optional[User]:
        """Look up by the sha256 of the emailed reset token, unexpired only."""
        if not token_hash:
            return None
        return self._find_one(
            (_users.c.password_reset_token == token_hash) & (_users.c.password_reset_expires > to_iso(now))
        )

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.email == normalize_email(email))
            ).scalar()
        return (count or 0) > 0

    def create(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises DuplicateKey("email" | "username" | "google_id") when a unique
        column is already taken, including when a concurrent request won the
        race between the caller's existence check and this insert.
        """
        now = self.clock.now()
        user.email = normalize_email(user.email)
        user.created_at = user.created_at or now
        user.updated_at = now
        values = _user_values(user)
        values["created_at"] = to_iso(user.created_at)
        try:
            with self.engine.connect() as conn:
                result = conn.execute(_users.insert().values(**values))
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateKey(_duplicate_field(exc, _UNIQUE_USER_FIELDS)) from exc
        user.id = result.inserted_primary_key[0]
        logger.debug("Created user id=%s", user.id)
        return user

    def save(self, user: User) -> User:
        """Persist every mutable field of an existing user.

        child_account_ids is not written here; membership goes through
        add_child_account(). Raises DuplicateKey like create().
        """
        if user.id is None:
            raise ValueError("save() requires a persisted user; use create()")
        user.email = normalize_email(user.email)
        user.updated_at = self.clock.now()
        try:
            with self.engine.connect() as conn:
                conn.execute(_users.update().where(_users.c.id == user.id).values(**_user_values(user)))
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateKey(_duplicate_field(exc, _UNIQUE_USER_FIELDS)) from exc
        return user

    def _find_one(self, where) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(where)).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._child_ids(conn, row.id))

    @staticmethod
    def _child_ids(conn: Connection, owner_id: int) -> list[int]:
        rows = conn.execute(
            select(_team_members.c.member_id)
            .where(_team_members.c.owner_id == owner_id)
            .order_by(_team_members.c.id)
        ).fetchall()
        return [r.member_id for r in rows]

    # ------------------------------------------------------------------
    # Team membership
    # ------------------------------------------------------------------

    def count_active_child_accounts(self, parent_id: int) -> int:
        """Active users whose parent_account_id points at this team owner."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.parent_account_id == parent_id) & (_users.c.is_active == 1))
            ).scalar()
        return count or 0

    def attach_to_team(self, user_id: int, team_id: int, role: str) -> bool:
        """Point a teamless user at team_id and give them role, atomically.

        Compare-and-set: only applies while parent_account_id IS NULL and the
        user owns no members. Returns False when another team got there first
        (or the user is an owner), so two concurrent accepts cannot both win.
        """
        owns_members = (
            select(_team_members.c.id).where(_team_members.c.owner_id == _users.c.id).exists()
        )
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.parent_account_id.is_(None) & ~owns_members)
                .values(parent_account_id=team_id, role=role, updated_at=to_iso(self.clock.now()))
            )
            conn.commit()
        return result.rowcount > 0

    def detach_from_team(self, user_id: int, team_id: int, role: str) -> bool:
        """Undo attach_to_team(): clear the parent and restore role.

        Only applies while the user still points at team_id.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.parent_account_id == team_id))
                .values(parent_account_id=None, role=role, updated_at=to_iso(self.clock.now()))
            )
            conn.commit()
        return result.rowcount > 0

    def add_child_account(self, owner_id: int, member_id: int) -> bool:
        """Record member_id as belonging to owner_id's team.

        Idempotent: returns False when the pair already exists. Raises
        DuplicateKey("member_id") when the member is on a different team.
        """
        with self.engine.connect() as conn:
            existing = conn.execute(
                select(_team_members.c.owner_id).where(_team_members.c.member_id == member_id)
            ).fetchone()
            if existing is not None:
                if existing.owner_id == owner_id:
                    return False
                raise DuplicateKey("member_id")
            try:
                conn.execute(
                    _team_members.insert().values(
                        owner_id=owner_id, member_id=member_id, created_at=to_iso(self.clock.now())
                    )
                )
                conn.commit()
            except IntegrityError as exc:
                # A concurrent accept inserted the same member first.
                conn.rollback()
                winner = conn.execute(
                    select(_team_members.c.owner_id).where(_team_members.c.member_id == member_id)
                ).fetchone()
                if winner is not None and winner.owner_id == owner_id:
                    return False
                raise DuplicateKey("member_id") from exc
        return True

    def list_child_accounts(self, owner_id: int) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select()
                .select_from(_users.join(_team_members, _team_members.c.member_id == _users.c.id))
                .where(_team_members.c.owner_id == owner_id)
                .order_by(_team_members.c.id)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def get_subscription(self, user_id: int) -> Optional[Subscription]:
        with self.engine.connect() as conn:
            row = conn.execute(_subscriptions.select().where(_subscriptions.c.user_id == user_id)).fetchone()
        return _row_to_subscription(row) if row is not None else None

    def upsert_subscription(self, sub: Subscription) -> Subscription:
        """Create the owner's subscription or overwrite the existing one."""
        sub.start_date = sub.start_date or self.clock.now()
        values = {
            "plan": sub.plan,
            "status": sub.status,
            "seats_total": sub.seats_total,
            "seats_used": sub.seats_used,
            "start_date": to_iso(sub.start_date),
            "end_date": _iso(sub.end_date),
            "auto_renew": 1 if sub.auto_renew else 0,
        }
        with self.engine.connect() as conn:
            existing = conn.execute(
                select(_subscriptions.c.id).where(_subscriptions.c.user_id == sub.user_id)
            ).fetchone()
            if existing is None:
                result = conn.execute(_subscriptions.insert().values(user_id=sub.user_id, **values))
                sub.id = result.inserted_primary_key[0]
            else:
                conn.execute(_subscriptions.update().where(_subscriptions.c.id == existing.id).values(**values))
                sub.id = existing.id
            conn.commit()
        return sub

    def update_seats_used(self, user_id: int, seats_used: int) -> bool:
        """Returns False when the user has no subscription row."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _subscriptions.update().where(_subscriptions.c.user_id == user_id).values(seats_used=seats_used)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh-token allow-list
    # ------------------------------------------------------------------

    def add_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    jti=record.jti,
                    user_id=record.user_id,
                    issued_at=to_iso(record.issued_at),
                    expires_at=to_iso(record.expires_at),
                )
            )
            conn.commit()
        record.id = result.inserted_primary_key[0]
        return record

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.jti == jti)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def revoke_refresh_token(self, jti: str, replaced_by: Optional[str] = None) -> bool:
        """Revoke one token if it is still live.

        The WHERE revoked_at IS NULL guard makes this a compare-and-set: when
        two refreshes race on the same token exactly one gets True.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.jti == jti) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_iso(self.clock.now()), replaced_by=replaced_by)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, user_id: int) -> int:
        """Revoke every live refresh token of a user. Returns how many."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_iso(self.clock.now()))
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_values(user: User) -> dict:
    return {
        "email": user.email,
        "username": user.username,
        "hashed_password": user.hashed_password,
        "name": user.name or "",
        "company": user.company,
        "position": user.position,
        "role": user.role,
        "is_active": 1 if user.is_active else 0,
        "is_email_verified": 1 if user.is_email_verified else 0,
        "email_verification_token": user.email_verification_token,
        "email_verification_expires": _iso(user.email_verification_expires),
        "password_reset_token": user.password_reset_token,
        "password_reset_expires": _iso(user.password_reset_expires),
        "password_changed_at": _iso(user.password_changed_at),
        "parent_account_id": user.parent_account_id,
        "google_id": user.google_id,
        "profile_picture": user.profile_picture,
        "last_login": _iso(user.last_login),
        "updated_at": to_iso(user.updated_at),
    }


def _row_to_user(row, child_ids: Optional[list[int]] = None) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        hashed_password=row.hashed_password,
        name=row.name or "",
        company=row.company,
        position=row.position,
        role=row.role,
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        email_verification_token=row.email_verification_token,
        email_verification_expires=from_iso(row.email_verification_expires),
        password_reset_token=row.password_reset_token,
        password_reset_expires=from_iso(row.password_reset_expires),
        password_changed_at=from_iso(row.password_changed_at),
        parent_account_id=row.parent_account_id,
        child_account_ids=child_ids or [],
        google_id=row.google_id,
        profile_picture=row.profile_picture,
        last_login=from_iso(row.last_login),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan=row.plan,
        status=row.status,
        seats_total=row.seats_total,
        seats_used=row.seats_used,
        start_date=from_iso(row.start_date),
        end_date=from_iso(row.end_date),
        auto_renew=bool(row.auto_renew),
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        jti=row.jti,
        user_id=row.user_id,
        issued_at=from_iso(row.issued_at),
        expires_at=from_iso(row.expires_at),
        revoked_at=from_iso(row.revoked_at),
        replaced_by=row.replaced_by,
    )
