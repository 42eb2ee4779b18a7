"""
Tests for the capacity arbiter's two-phase promotion protocol.
"""

from datetime import datetime, timedelta
from unittest.mock import patch

from sqlalchemy import update
from sqlmodel import Session

from waitlist_billing.config import Settings
from waitlist_billing.models import Tournament, WaitlistEntry
from waitlist_billing.services import capacity_arbiter
from waitlist_billing.services.capacity_arbiter import (
    NeedsConfirmation,
    PromotionFailure,
    PromotionSuccess,
    count_reserved_participants,
    promote_entry,
    read_capacity,
    release_seat,
)

from tests.factories import make_entry, make_profile, make_reservation, make_tournament


def _reload(session: Session, row):
    session.expire_all()
    return session.get(type(row), row.id)


class TestProbeAndConfirm:
    def test_full_tournament_needs_confirmation_then_bypass_raises_cap_by_one(self, session):
        """maxParticipants=20, currentParticipants=20, nothing reserved."""
        tournament = make_tournament(session, max_participants=20, current_participants=20)
        entry = make_entry(session, tournament, make_profile(session))

        probe = promote_entry(session, entry.id, bypass_capacity=False)
        assert isinstance(probe, NeedsConfirmation)
        assert probe.needs_confirmation is True
        assert probe.max_participants == 20
        assert probe.current_participants == 20
        assert probe.reserved_participants == 0

        # Probe writes nothing
        assert _reload(session, entry).status == "waiting"
        assert _reload(session, tournament).max_participants == 20

        confirmed = promote_entry(session, entry.id, bypass_capacity=True)
        assert isinstance(confirmed, PromotionSuccess)
        assert confirmed.bypassed is True
        assert confirmed.max_participants == 21

        t = _reload(session, tournament)
        assert t.max_participants == 21
        assert t.current_participants == 21
        e = _reload(session, entry)
        assert e.status == "promoted"
        assert e.promoted_at is not None

    def test_room_available_promotes_without_cap_change(self, session):
        tournament = make_tournament(session, max_participants=20, current_participants=18)
        entry = make_entry(session, tournament, make_profile(session))

        outcome = promote_entry(session, entry.id)
        assert isinstance(outcome, PromotionSuccess)
        assert outcome.success is True
        assert outcome.bypassed is False

        t = _reload(session, tournament)
        assert t.max_participants == 20
        assert t.current_participants == 19
        assert _reload(session, entry).status == "promoted"

    def test_bypass_when_room_available_does_not_raise_cap(self, session):
        tournament = make_tournament(session, max_participants=20, current_participants=5)
        entry = make_entry(session, tournament, make_profile(session))

        outcome = promote_entry(session, entry.id, bypass_capacity=True)
        assert isinstance(outcome, PromotionSuccess)
        assert outcome.bypassed is False
        assert _reload(session, tournament).max_participants == 20

    def test_reserved_seats_count_against_capacity(self, session):
        tournament = make_tournament(session, max_participants=20, current_participants=18)
        make_reservation(session, tournament, quantity=2)
        entry = make_entry(session, tournament, make_profile(session))

        outcome = promote_entry(session, entry.id)
        assert isinstance(outcome, NeedsConfirmation)
        assert outcome.reserved_participants == 2
        assert outcome.current_participants == 18


class TestNonBypassNeverOverbooks:
    def test_sequential_promotions_stop_at_capacity(self, session):
        tournament = make_tournament(session, max_participants=3, current_participants=1)
        make_reservation(session, tournament, quantity=1)
        entries = [
            make_entry(session, tournament, make_profile(session, email=f"p{i}@example.com"), position=i)
            for i in range(1, 5)
        ]

        outcomes = [promote_entry(session, e.id) for e in entries]

        assert isinstance(outcomes[0], PromotionSuccess)
        assert all(isinstance(o, NeedsConfirmation) for o in outcomes[1:])

        snapshot = read_capacity(session, tournament.id)
        assert snapshot.current_participants + snapshot.reserved_participants <= snapshot.max_participants


def _change_behind_arbiter(session: Session, tournament_id: int, take_seat: bool) -> None:
    """Another writer commits between the arbiter's read and its compare-and-swap."""
    values = {"capacity_version": Tournament.capacity_version + 1}
    if take_seat:
        values["current_participants"] = Tournament.current_participants + 1
    session.exec(update(Tournament).where(Tournament.id == tournament_id).values(**values))
    session.commit()


def _stale_reads(session: Session, times: int, take_seat: bool):
    """read_capacity replacement whose first `times` results are already out of date."""
    calls = []

    def read(db, tournament_id, now=None):
        snapshot = read_capacity(db, tournament_id, now)
        calls.append(snapshot)
        if len(calls) <= times:
            _change_behind_arbiter(session, tournament_id, take_seat)
        return snapshot

    return read, calls


class TestConcurrentCapacityChanges:
    def test_lost_race_rereads_and_promotes_into_remaining_room(self, session):
        tournament = make_tournament(session, max_participants=20, current_participants=17)
        entry = make_entry(session, tournament, make_profile(session))
        read, calls = _stale_reads(session, times=1, take_seat=True)

        with patch.object(capacity_arbiter, "read_capacity", side_effect=read):
            outcome = promote_entry(session, entry.id)

        assert isinstance(outcome, PromotionSuccess)
        assert [c.current_participants for c in calls] == [17, 18]
        assert outcome.current_participants == 19
        t = _reload(session, tournament)
        assert (t.current_participants, t.max_participants) == (19, 20)
        assert t.capacity_version == calls[1].version + 1

    def test_last_seat_taken_concurrently_is_not_double_booked(self, session):
        tournament = make_tournament(session, max_participants=20, current_participants=19)
        entry = make_entry(session, tournament, make_profile(session))
        read, calls = _stale_reads(session, times=1, take_seat=True)

        with patch.object(capacity_arbiter, "read_capacity", side_effect=read):
            outcome = promote_entry(session, entry.id)

        assert len(calls) == 2
        assert isinstance(outcome, NeedsConfirmation)
        assert (outcome.current_participants, outcome.max_participants) == (20, 20)
        t = _reload(session, tournament)
        assert (t.current_participants, t.max_participants) == (20, 20)
        assert _reload(session, entry).status == "waiting"

    def test_gives_up_after_retries_run_out(self, session):
        tournament = make_tournament(session, max_participants=20, current_participants=5)
        entry = make_entry(session, tournament, make_profile(session))
        read, calls = _stale_reads(session, times=99, take_seat=False)

        with patch.object(capacity_arbiter, "read_capacity", side_effect=read):
            outcome = promote_entry(session, entry.id, settings=Settings(capacity_max_retries=3))

        assert len(calls) == 3
        assert isinstance(outcome, PromotionFailure)
        assert outcome.error_kind == "CapacityCheckFailed"
        assert _reload(session, tournament).current_participants == 5
        assert _reload(session, entry).status == "waiting"


class TestFailures:
    def test_missing_entry(self, session):
        outcome = promote_entry(session, 9999)
        assert isinstance(outcome, PromotionFailure)
        assert outcome.error_kind == "EntryNotFound"

    def test_entry_not_waiting(self, session):
        tournament = make_tournament(session)
        entry = make_entry(session, tournament, make_profile(session), status="confirmed")

        outcome = promote_entry(session, entry.id)
        assert isinstance(outcome, PromotionFailure)
        assert outcome.error_kind == "InvalidStateForPromotion"
        assert _reload(session, tournament).current_participants == 0

    def test_promoting_twice_fails_second_time(self, session):
        tournament = make_tournament(session, max_participants=10)
        entry = make_entry(session, tournament, make_profile(session))

        assert isinstance(promote_entry(session, entry.id), PromotionSuccess)
        second = promote_entry(session, entry.id)
        assert isinstance(second, PromotionFailure)
        assert second.error_kind == "InvalidStateForPromotion"
        assert _reload(session, tournament).current_participants == 1


def test_promotion_compacts_remaining_positions(session):
    tournament = make_tournament(session, max_participants=10)
    entries = [
        make_entry(session, tournament, make_profile(session, email=f"q{i}@example.com"), position=i)
        for i in range(1, 4)
    ]

    promote_entry(session, entries[0].id)

    session.expire_all()
    remaining = [session.get(WaitlistEntry, e.id) for e in entries[1:]]
    assert [e.position for e in remaining] == [1, 2]


def test_expired_and_released_reservations_are_ignored(session):
    tournament = make_tournament(session)
    make_reservation(session, tournament, quantity=3, expires_in_minutes=-5)
    make_reservation(session, tournament, quantity=2, released_at=datetime.utcnow())
    make_reservation(session, tournament, quantity=1)

    assert count_reserved_participants(session, tournament.id, datetime.utcnow()) == 1


def test_release_seat_never_goes_below_zero(session):
    tournament = make_tournament(session, current_participants=1)

    assert release_seat(session, tournament.id) is True
    session.commit()
    assert release_seat(session, tournament.id) is False
    session.commit()

    assert _reload(session, tournament).current_participants == 0


def test_promote_endpoint_two_phase(client, session):
    tournament = make_tournament(session, max_participants=20, current_participants=20)
    entry = make_entry(session, tournament, make_profile(session))

    probe = client.post("/api/waitlist/promote", json={"waitlist_entry_id": entry.id, "bypass_capacity": False})
    assert probe.status_code == 200
    body = probe.json()
    assert body["success"] is False
    assert body["needs_confirmation"] is True
    assert body["current_participants"] == 20
    assert body["max_participants"] == 20
    assert body["reserved_participants"] == 0

    confirm = client.post("/api/waitlist/promote", json={"waitlist_entry_id": entry.id, "bypass_capacity": True})
    assert confirm.status_code == 200
    body = confirm.json()
    assert body["success"] is True
    assert body["max_participants"] == 21
    assert body["entry"]["status"] == "promoted"

    session.expire_all()
    assert session.get(Tournament, tournament.id).max_participants == 21


def test_promote_endpoint_reports_failure_kind(client, session):
    response = client.post("/api/waitlist/promote", json={"waitlist_entry_id": 12345})
    assert response.status_code == 404
    assert response.json()["error_kind"] == "EntryNotFound"
