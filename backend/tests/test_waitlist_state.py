"""Tests for the waitlist state machine: transitions, positions and bulk updates."""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from waitlist_billing.errors import (
    CapacityUnknown,
    InvalidStateError,
    PromotionPathRequired,
    ValidationFailed,
)
from waitlist_billing.models import Tournament, TournamentRegistration, WaitlistEntry
from waitlist_billing.services import waitlist_service
from waitlist_billing.services.capacity_arbiter import promote_entry
from waitlist_billing.services.waitlist_service import validate_transition

from tests.factories import add, make_entry, make_profile, make_tournament


def _positions(session: Session, tournament_id: int):
    session.expire_all()
    entries = waitlist_service.list_entries(session, tournament_id=tournament_id, status="waiting")
    return [(e.id, e.position) for e in entries]


def _queue(session: Session, tournament: Tournament, n: int):
    return [
        make_entry(session, tournament, make_profile(session, email=f"user{i}@example.com"), position=i)
        for i in range(1, n + 1)
    ]


class TestTransitions:
    @pytest.mark.parametrize(
        "current,new",
        [
            ("waiting", "confirmed"),
            ("waiting", "cancelled"),
            ("waiting", "expired"),
            ("promoted", "invoiced"),
            ("promoted", "confirmed"),
            ("promoted", "cancelled"),
            ("invoiced", "confirmed"),
            ("invoiced", "expired"),
        ],
    )
    def test_allowed(self, current, new):
        validate_transition(current, new)

    @pytest.mark.parametrize("terminal", ["confirmed", "cancelled", "expired"])
    def test_terminal_states_are_final(self, terminal):
        with pytest.raises(InvalidStateError) as exc:
            validate_transition(terminal, "waiting")
        assert exc.value.kind == "InvalidState"

    def test_cannot_go_backwards(self):
        with pytest.raises(InvalidStateError):
            validate_transition("invoiced", "promoted")

    def test_promotion_must_use_capacity_check(self):
        with pytest.raises(PromotionPathRequired):
            validate_transition("waiting", "promoted")

    def test_unknown_status(self):
        with pytest.raises(ValidationFailed):
            validate_transition("waiting", "approved")


class TestCreate:
    def test_appends_after_last_waiting_position(self, session):
        tournament = make_tournament(session)
        _queue(session, tournament, 2)
        newcomer = make_profile(session, email="new@example.com", first="Sam", last="Lee")

        entry = waitlist_service.create_entry(session, tournament.id, newcomer.id)

        assert entry.position == 3
        assert entry.status == "waiting"
        assert entry.email == "new@example.com"
        assert entry.full_name == "Sam Lee"

    def test_unknown_tournament(self, session):
        profile = make_profile(session)
        with pytest.raises(CapacityUnknown):
            waitlist_service.create_entry(session, 404, profile.id)

    def test_requires_an_email(self, session):
        tournament = make_tournament(session)
        with pytest.raises(ValidationFailed):
            waitlist_service.create_entry(session, tournament.id, user_id=777)


class TestPositions:
    def test_move_up_resequences_others(self, session):
        tournament = make_tournament(session)
        a, b, c, d = _queue(session, tournament, 4)

        waitlist_service.update_entry(session, d.id, position=1)

        assert _positions(session, tournament.id) == [(d.id, 1), (a.id, 2), (b.id, 3), (c.id, 4)]

    def test_move_past_end_is_clamped(self, session):
        tournament = make_tournament(session)
        a, b, c = _queue(session, tournament, 3)

        waitlist_service.update_entry(session, a.id, position=10)

        assert _positions(session, tournament.id) == [(b.id, 1), (c.id, 2), (a.id, 3)]

    def test_leaving_waiting_compacts(self, session):
        tournament = make_tournament(session)
        a, b, c = _queue(session, tournament, 3)

        waitlist_service.update_entry(session, b.id, status="cancelled")

        assert _positions(session, tournament.id) == [(a.id, 1), (c.id, 2)]

    def test_delete_compacts(self, session):
        tournament = make_tournament(session)
        a, b, c = _queue(session, tournament, 3)

        waitlist_service.delete_entry(session, a.id)

        assert _positions(session, tournament.id) == [(b.id, 1), (c.id, 2)]

    def test_only_waiting_entries_can_move(self, session):
        tournament = make_tournament(session)
        entry = make_entry(session, tournament, make_profile(session), status="promoted")
        with pytest.raises(InvalidStateError):
            waitlist_service.update_entry(session, entry.id, position=2)


class TestSeatRelease:
    def test_cancelling_promoted_entry_releases_seat(self, session):
        tournament = make_tournament(session, max_participants=10, current_participants=3)
        entry = make_entry(session, tournament, make_profile(session))
        promote_entry(session, entry.id)

        waitlist_service.update_entry(session, entry.id, status="cancelled")

        session.expire_all()
        assert session.get(Tournament, tournament.id).current_participants == 3

    def test_cancelling_waiting_entry_keeps_counts(self, session):
        tournament = make_tournament(session, current_participants=3)
        entry = make_entry(session, tournament, make_profile(session))

        waitlist_service.update_entry(session, entry.id, status="expired")

        session.expire_all()
        assert session.get(Tournament, tournament.id).current_participants == 3

    def test_cancel_clears_combined_invoice_reference(self, session):
        tournament = make_tournament(session, current_participants=1)
        entry = make_entry(session, tournament, make_profile(session), status="invoiced")
        entry.combined_invoice_id = 42
        session.add(entry)
        session.commit()

        updated = waitlist_service.update_entry(session, entry.id, status="cancelled")
        assert updated.combined_invoice_id is None


def test_timestamps_are_set_once(session):
    tournament = make_tournament(session)
    entry = make_entry(session, tournament, make_profile(session), status="promoted")

    invoiced = waitlist_service.update_entry(session, entry.id, status="invoiced")
    first_sent = invoiced.invoice_sent_at
    assert first_sent is not None

    confirmed = waitlist_service.update_entry(session, entry.id, status="confirmed")
    assert confirmed.confirmed_at is not None
    assert confirmed.invoice_sent_at == first_sent
    assert confirmed.confirmed_at >= first_sent


def test_direct_promotion_is_rejected(session):
    tournament = make_tournament(session)
    entry = make_entry(session, tournament, make_profile(session))
    with pytest.raises(PromotionPathRequired):
        waitlist_service.update_entry(session, entry.id, status="promoted")
    session.expire_all()
    assert session.get(WaitlistEntry, entry.id).status == "waiting"


class TestBulkStatus:
    def test_one_terminal_entry_does_not_abort_the_batch(self, session):
        tournament = make_tournament(session)
        entries = _queue(session, tournament, 5)
        entries[2].status = "confirmed"
        session.add(entries[2])
        session.commit()
        ids = [e.id for e in entries]

        result = waitlist_service.bulk_update_status(session, ids, "cancelled")

        assert result.succeeded == [ids[0], ids[1], ids[3], ids[4]]
        assert len(result.failed) == 1
        assert result.failed[0].id == ids[2]
        assert result.failed[0].reason == "InvalidState"
        assert result.status == "PartialBatchFailure"

    def test_bulk_promotion_goes_through_capacity_check(self, session):
        tournament = make_tournament(session, max_participants=2, current_participants=1)
        entries = _queue(session, tournament, 3)
        ids = [e.id for e in entries]

        result = waitlist_service.bulk_update_status(session, ids, "promoted")

        assert result.succeeded == [ids[0]]
        assert [f.reason for f in result.failed] == ["CapacityExceeded", "CapacityExceeded"]
        session.expire_all()
        t = session.get(Tournament, tournament.id)
        assert (t.current_participants, t.max_participants) == (2, 2)

    def test_missing_ids_are_reported(self, session):
        result = waitlist_service.bulk_update_status(session, [555], "cancelled")
        assert result.succeeded == []
        assert result.failed[0].reason == "EntryNotFound"
        assert result.status == "failed"

    def test_repeating_a_terminal_status_is_rejected(self, session):
        tournament = make_tournament(session)
        entries = _queue(session, tournament, 5)
        entries[2].status = "cancelled"
        session.add(entries[2])
        session.commit()
        ids = [e.id for e in entries]

        result = waitlist_service.bulk_update_status(session, ids, "cancelled")

        assert result.succeeded == [ids[0], ids[1], ids[3], ids[4]]
        assert [(f.id, f.reason) for f in result.failed] == [(ids[2], "InvalidState")]

    def test_store_failure_on_one_entry_keeps_the_partition(self, session):
        tournament = make_tournament(session)
        entries = _queue(session, tournament, 3)
        ids = [e.id for e in entries]
        real_apply_status = waitlist_service.apply_status

        def flaky_apply_status(db, entry, new_status, now):
            if entry.id == ids[1]:
                raise OperationalError("UPDATE waitlist_entry", {}, Exception("database is locked"))
            return real_apply_status(db, entry, new_status, now)

        with patch.object(waitlist_service, "apply_status", side_effect=flaky_apply_status):
            result = waitlist_service.bulk_update_status(session, ids, "expired")

        assert result.succeeded == [ids[0], ids[2]]
        assert [(f.id, f.reason) for f in result.failed] == [(ids[1], "StoreError")]
        session.expire_all()
        assert session.get(WaitlistEntry, ids[1]).status == "waiting"
        assert session.get(WaitlistEntry, ids[2]).status == "expired"


class TestDuplicates:
    def test_finds_waitlisted_user_with_paid_registration(self, session):
        tournament = make_tournament(session)
        paid = make_profile(session, email="paid@example.com")
        unpaid = make_profile(session, email="unpaid@example.com")
        dup = make_entry(session, tournament, paid, position=1)
        make_entry(session, tournament, unpaid, position=2)
        add(session, TournamentRegistration(user_id=paid.id, tournament_id=tournament.id, payment_status="paid"))
        add(session, TournamentRegistration(user_id=unpaid.id, tournament_id=tournament.id, payment_status="pending"))

        report = waitlist_service.find_duplicate_registrations(session)

        assert report.total_waitlist_checked == 2
        assert [d.entry.id for d in report.duplicates] == [dup.id]

    def test_confirm_promoted_duplicate_gives_seat_back(self, session):
        tournament = make_tournament(session, max_participants=10, current_participants=4)
        profile = make_profile(session)
        entry = make_entry(session, tournament, profile)
        promote_entry(session, entry.id)
        add(session, TournamentRegistration(user_id=profile.id, tournament_id=tournament.id, payment_status="paid"))

        confirmed = waitlist_service.confirm_duplicate(session, entry.id)

        assert confirmed.status == "confirmed"
        assert confirmed.confirmed_at is not None
        session.expire_all()
        assert session.get(Tournament, tournament.id).current_participants == 4

    def test_confirm_requires_paid_registration(self, session):
        tournament = make_tournament(session)
        entry = make_entry(session, tournament, make_profile(session))
        with pytest.raises(InvalidStateError):
            waitlist_service.confirm_duplicate(session, entry.id)


def test_bulk_status_endpoint(client, session):
    tournament = make_tournament(session)
    entries = _queue(session, tournament, 5)
    entries[2].status = "cancelled"
    session.add(entries[2])
    session.commit()
    ids = [e.id for e in entries]

    response = client.post("/api/waitlist/bulk-status", json={"waitlist_entry_ids": ids, "status": "expired"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "PartialBatchFailure"
    assert len(body["succeeded"]) == 4
    assert [(f["id"], f["reason"]) for f in body["failed"]] == [(ids[2], "InvalidState")]


def test_waitlist_endpoints_require_admin(client):
    response = client.get("/api/waitlist", headers={"X-User-Role": "member"})
    assert response.status_code == 403


def test_create_list_and_count_endpoints(client, session):
    tournament = make_tournament(session, name="Rapier Open")
    first = make_profile(session, email="one@example.com")
    second = make_profile(session, email="two@example.com")

    r1 = client.post("/api/waitlist", json={"tournament_id": tournament.id, "user_id": first.id})
    r2 = client.post("/api/waitlist", json={"tournament_id": tournament.id, "user_id": second.id})
    assert r1.status_code == 201
    assert [r1.json()["position"], r2.json()["position"]] == [1, 2]

    listed = client.get("/api/waitlist", params={"tournament_id": tournament.id}).json()
    assert [e["email"] for e in listed] == ["one@example.com", "two@example.com"]

    counts = client.get("/api/waitlist/counts").json()
    assert counts == [{"tournament_id": tournament.id, "tournament_name": "Rapier Open", "count": 2}]


def test_patch_promoted_status_is_conflict(client, session):
    tournament = make_tournament(session)
    entry = make_entry(session, tournament, make_profile(session))

    response = client.patch(f"/api/waitlist/{entry.id}", json={"status": "promoted"})

    assert response.status_code == 409
    assert response.json()["detail"]["kind"] == "PromotionPathRequired"
