"""Tests for the operator command line in main.py."""

from __future__ import annotations

import pytest

import main as cli
from teams.models import Invite


@pytest.fixture
def cli_settings(monkeypatch, settings, db_url, user_store, clock):
    # user_store holds a connection open, which keeps the shared in-memory
    # database alive while the command opens and closes its own stores.
    configured = settings.model_copy(update={"database_url": db_url, "bcrypt_rounds": 4})
    monkeypatch.setattr(cli, "get_settings", lambda: configured)
    monkeypatch.setattr(cli, "SystemClock", lambda: clock)
    monkeypatch.setattr(cli, "build_email_sender", lambda _settings: None)
    return configured


class TestParser:
    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_unknown_plan_rejected(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["set-subscription", "a@example.test", "--plan", "gold"])


class TestSweepInvites:
    def test_expires_lapsed_invites(self, cli_settings, make_team, invite_store, clock, capsys) -> None:
        owner = make_team()
        invite_store.create(
            Invite(
                email="late@example.test",
                invited_by=owner.id,
                team_id=owner.id,
                role="business",
                token="tok-late",
                expires_at=clock.now(),
            )
        )
        assert cli.main(["sweep-invites"]) == 0
        assert "Expired 1 invitation(s)." in capsys.readouterr().out
        assert invite_store.find_by_token("tok-late").status == "expired"

        assert cli.main(["sweep-invites"]) == 0
        assert "Expired 0 invitation(s)." in capsys.readouterr().out


class TestSetSubscription:
    def test_creates_subscription_with_plan_default_seats(self, cli_settings, make_user, user_store) -> None:
        owner = make_user("owner@example.test", role="free")
        assert cli.main(["set-subscription", "owner@example.test", "--plan", "business"]) == 0

        sub = user_store.get_subscription(owner.id)
        assert sub.plan == "business"
        assert sub.status == "active"
        assert sub.seats_total == 10
        assert user_store.find_by_id(owner.id).role == "business"

    def test_updates_existing_subscription(self, cli_settings, make_team, user_store) -> None:
        owner = make_team(seats=2)
        before = user_store.get_subscription(owner.id)
        args = ["set-subscription", owner.email, "--plan", "enterprise", "--seats", "25", "--status", "past_due"]
        assert cli.main(args) == 0

        after = user_store.get_subscription(owner.id)
        assert after.id == before.id
        assert after.plan == "enterprise"
        assert after.status == "past_due"
        assert after.seats_total == 25
        assert user_store.find_by_id(owner.id).role == "enterprise"

    def test_admin_keeps_admin_role(self, cli_settings, make_user, user_store) -> None:
        admin = make_user("root@example.test", role="admin")
        assert cli.main(["set-subscription", admin.email, "--plan", "business"]) == 0
        assert user_store.find_by_id(admin.id).role == "admin"

    def test_unknown_email(self, cli_settings, capsys) -> None:
        assert cli.main(["set-subscription", "ghost@example.test", "--plan", "business"]) == 1
        assert "No user with email" in capsys.readouterr().err


class TestCreateAdmin:
    def test_creates_verified_admin(self, cli_settings, user_store) -> None:
        assert cli.main(["create-admin", "admin@example.test", "--password", "long-enough-password"]) == 0
        admin = user_store.find_by_email("admin@example.test")
        assert admin.role == "admin"
        assert admin.is_email_verified is True
        assert user_store.verify_password(admin, "long-enough-password")

    def test_short_password(self, cli_settings, user_store) -> None:
        assert cli.main(["create-admin", "admin@example.test", "--password", "short"]) == 1
        assert user_store.find_by_email("admin@example.test") is None

    def test_duplicate_email(self, cli_settings, make_user, capsys) -> None:
        make_user("admin@example.test")
        assert cli.main(["create-admin", "admin@example.test", "--password", "long-enough-password"]) == 1
        assert "already exists" in capsys.readouterr().err
