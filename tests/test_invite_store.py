"""Unit tests for teams/store.py -- InviteStore.

Covers:
- create() fills id/timestamps; the partial unique index rejects a second
  pending invite for the same (email, team) but not for another team
- a non-pending row leaves the index, so re-inviting works
- update_if_pending() is a compare-and-set and whitelists its fields
- expire_pending() uses expires_at <= now and is idempotent
- list_for_team() order, status filter, paging and unpaged total
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from core.errors import DuplicateKey
from teams.models import Invite
from teams.store import InviteStore


def _invite(clock, email: str = "x@y.test", team_id: int = 1, token: str = "t1", days: int = 7) -> Invite:
    return Invite(
        email=email,
        invited_by=team_id,
        team_id=team_id,
        token=token,
        expires_at=clock.now() + timedelta(days=days),
    )


class TestCreate:
    def test_create(self, invite_store: InviteStore, clock) -> None:
        invite = invite_store.create(_invite(clock, email="Mixed@Y.test"))
        assert invite.id is not None
        assert invite.email == "mixed@y.test"
        assert invite.status == "pending"
        loaded = invite_store.find_by_token("t1")
        assert loaded.id == invite.id
        assert loaded.expires_at == clock.now() + timedelta(days=7)

    def test_second_pending_for_same_team_rejected(self, invite_store: InviteStore, clock) -> None:
        invite_store.create(_invite(clock, token="t1"))
        with pytest.raises(DuplicateKey) as exc:
            invite_store.create(_invite(clock, token="t2"))
        assert exc.value.field == "pending"

    def test_other_team_may_invite_same_email(self, invite_store: InviteStore, clock) -> None:
        invite_store.create(_invite(clock, team_id=1, token="t1"))
        invite_store.create(_invite(clock, team_id=2, token="t2"))
        assert invite_store.count_pending(1) == 1
        assert invite_store.count_pending(2) == 1

    def test_token_collision(self, invite_store: InviteStore, clock) -> None:
        invite_store.create(_invite(clock, email="a@y.test", token="same"))
        with pytest.raises(DuplicateKey) as exc:
            invite_store.create(_invite(clock, email="b@y.test", token="same"))
        assert exc.value.field == "token"

    def test_reinvite_after_leaving_pending(self, invite_store: InviteStore, clock) -> None:
        first = invite_store.create(_invite(clock, token="t1"))
        assert invite_store.update_if_pending(first.id, status="expired")
        second = invite_store.create(_invite(clock, token="t2"))
        assert invite_store.find_pending("x@y.test", 1).id == second.id


class TestUpdateIfPending:
    def test_only_first_transition_wins(self, invite_store: InviteStore, clock) -> None:
        invite = invite_store.create(_invite(clock))
        assert invite_store.update_if_pending(invite.id, status="accepted") is True
        assert invite_store.update_if_pending(invite.id, status="declined") is False
        assert invite_store.get(invite.id).status == "accepted"

    def test_timestamps_are_converted(self, invite_store: InviteStore, clock) -> None:
        invite = invite_store.create(_invite(clock))
        invite_store.update_if_pending(invite.id, cancelled_at=clock.now(), cancelled_by=1, status="expired")
        loaded = invite_store.get(invite.id)
        assert loaded.cancelled_at == clock.now()
        assert loaded.cancelled_by == 1

    def test_unknown_field_rejected(self, invite_store: InviteStore, clock) -> None:
        invite = invite_store.create(_invite(clock))
        with pytest.raises(ValueError):
            invite_store.update_if_pending(invite.id, token="stolen")

    def test_reopen(self, invite_store: InviteStore, clock) -> None:
        invite = invite_store.create(_invite(clock))
        invite_store.update_if_pending(invite.id, status="accepted")
        assert invite_store.reopen(invite.id) is True
        assert invite_store.get(invite.id).is_pending

    def test_reopen_only_undoes_accepted(self, invite_store: InviteStore, clock) -> None:
        invite = invite_store.create(_invite(clock))
        invite_store.update_if_pending(invite.id, status="declined")
        assert invite_store.reopen(invite.id) is False
        assert invite_store.get(invite.id).status == "declined"


class TestExpirePending:
    def test_boundary_and_idempotence(self, invite_store: InviteStore, clock) -> None:
        invite_store.create(_invite(clock, email="a@y.test", token="a", days=1))
        invite_store.create(_invite(clock, email="b@y.test", token="b", days=2))
        at = clock.now() + timedelta(days=1)
        assert invite_store.teams_with_expirable(at) == [1]
        assert invite_store.expire_pending(at) == 1
        assert invite_store.expire_pending(at) == 0
        assert invite_store.find_by_token("a").status == "expired"
        assert invite_store.find_by_token("b").status == "pending"


class TestListForTeam:
    def test_newest_first_with_total(self, invite_store: InviteStore, clock) -> None:
        for i in range(5):
            invite_store.create(_invite(clock, email=f"u{i}@y.test", token=f"t{i}"))
            clock.advance(minutes=1)
        invite_store.create(_invite(clock, email="other@y.test", team_id=2, token="o"))

        page = invite_store.list_for_team(1, limit=2, skip=1)
        assert page.total == 5
        assert [i.email for i in page.invites] == ["u3@y.test", "u2@y.test"]

    def test_status_filter(self, invite_store: InviteStore, clock) -> None:
        a = invite_store.create(_invite(clock, email="a@y.test", token="a"))
        invite_store.create(_invite(clock, email="b@y.test", token="b"))
        invite_store.update_if_pending(a.id, status="declined")
        page = invite_store.list_for_team(1, status="declined")
        assert page.total == 1
        assert page.invites[0].email == "a@y.test"
