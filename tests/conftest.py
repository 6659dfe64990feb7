"""
tests/conftest.py -- Shared test fixtures for TeamPass.

This module provides:
  - clock: FrozenClock pinned to START; tests move it with clock.advance()
  - emails: RecordingEmailSender that renders every template and keeps the result
  - user_store / invite_store: isolated named shared-memory SQLite stores
  - session / invites: AuthSessionManager and InviteManager wired to the above
  - make_user / make_team: factories for verified users and subscribed owners
  - client: TestClient on the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Each test gets its own database name, so nothing leaks between tests.

DEBUG and RATE_LIMIT_ENABLED must be set before any project import:
get_settings() is cached on first call and the limiter reads it at import.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# CRITICAL: Set these before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode and the limiter starts disabled.
os.environ.setdefault("DEBUG", "true")
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Subscription, User
from auth.oauth import build_oauth
from auth.session import AuthSessionManager
from auth.store import UserStore
from auth.tokens import TokenService
from core.clock import FrozenClock
from core.config import Settings, get_settings
from core.errors import EmailDeliveryError
from notify.email import render_template
from teams.invites import InviteManager
from teams.store import InviteStore

START = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
PASSWORD = "correct-horse-battery"

# ---------------------------------------------------------------------------
# Email fake
# ---------------------------------------------------------------------------


@dataclass
class SentEmail:
    to: str
    subject: str
    template_key: str
    data: dict[str, Any]
    html: str

    def link_token(self) -> str:
        """The trailing path segment of the first *Url field -- the emailed token."""
        for key in ("verificationUrl", "resetUrl", "inviteUrl"):
            if key in self.data:
                return self.data[key].rsplit("/", 1)[1]
        raise KeyError(f"{self.template_key} carries no token link")


class RecordingEmailSender:
    """Renders like a real backend, then records instead of delivering.

    Templates listed in failing (or every template when fail_all is set)
    raise EmailDeliveryError, the same way a refused SMTP send would.
    """

    def __init__(self) -> None:
        self.sent: list[SentEmail] = []
        self.failing: set[str] = set()
        self.fail_all = False

    def send(self, to: str, subject: str, template_key: str, data: dict[str, Any]) -> None:
        html = render_template(template_key, data)
        if self.fail_all or template_key in self.failing:
            raise EmailDeliveryError(f"refused {template_key}")
        self.sent.append(SentEmail(to, subject, template_key, data, html))

    def of(self, template_key: str) -> list[SentEmail]:
        return [m for m in self.sent if m.template_key == template_key]

    def last(self, template_key: str) -> SentEmail:
        matches = self.of(template_key)
        assert matches, f"no {template_key} email was sent"
        return matches[-1]


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def emails() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def db_url() -> str:
    return f"sqlite:///file:teampass_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def user_store(db_url: str, clock: FrozenClock) -> Generator[UserStore, None, None]:
    # bcrypt's minimum cost keeps the suite fast.
    store = UserStore(db_url, bcrypt_rounds=4, clock=clock)
    yield store
    store.close()


@pytest.fixture
def invite_store(db_url: str, clock: FrozenClock) -> Generator[InviteStore, None, None]:
    store = InviteStore(db_url, clock=clock)
    yield store
    store.close()


@pytest.fixture
def token_service(user_store: UserStore, settings: Settings, clock: FrozenClock) -> TokenService:
    return TokenService.from_settings(user_store, settings, clock)


@pytest.fixture
def session(
    user_store: UserStore,
    token_service: TokenService,
    emails: RecordingEmailSender,
    settings: Settings,
    clock: FrozenClock,
) -> AuthSessionManager:
    return AuthSessionManager(user_store, token_service, emails, settings, clock)


@pytest.fixture
def invites(
    invite_store: InviteStore,
    user_store: UserStore,
    emails: RecordingEmailSender,
    settings: Settings,
    clock: FrozenClock,
) -> InviteManager:
    return InviteManager(invite_store, user_store, emails, settings, clock)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(user_store: UserStore) -> Callable[..., User]:
    """Create a verified, active user. Keyword arguments override User fields."""

    def _make(email: str, password: str = PASSWORD, **fields: Any) -> User:
        fields.setdefault("name", email.split("@")[0].title())
        fields.setdefault("is_email_verified", True)
        return user_store.create(User(email=email, hashed_password=user_store.hash_password(password), **fields))

    return _make


@pytest.fixture
def make_team(make_user: Callable[..., User], user_store: UserStore) -> Callable[..., User]:
    """Create a team owner with a subscription on the given plan."""

    def _make(
        email: str = "owner@acme.test",
        plan: str = "business",
        seats: int = 2,
        company: Optional[str] = "Acme",
    ) -> User:
        owner = make_user(email, role=plan, company=company)
        user_store.upsert_subscription(Subscription(user_id=owner.id, plan=plan, seats_total=seats))
        return owner

    return _make


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def _patch_lifespan(
    user_store: UserStore,
    invite_store: InviteStore,
    token_service: TokenService,
    session: AuthSessionManager,
    invites: InviteManager,
    settings: Settings,
):
    """Return an async context manager that replaces the real lifespan.

    Wires the test's stores and managers into app.state so routes see the
    isolated database, the frozen clock and the recording email sender.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.invite_store = invite_store
        app.state.token_service = token_service
        app.state.session = session
        app.state.invites = invites
        app.state.oauth = build_oauth(settings)
        yield

    return test_lifespan


@pytest.fixture
def client(
    user_store: UserStore,
    invite_store: InviteStore,
    token_service: TokenService,
    session: AuthSessionManager,
    invites: InviteManager,
    settings: Settings,
) -> Generator[TestClient, None, None]:
    """TestClient on the real app. Cookies persist across requests in one test."""
    app.router.lifespan_context = _patch_lifespan(user_store, invite_store, token_service, session, invites, settings)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
