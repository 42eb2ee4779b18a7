"""Tests for the registration-link auditor."""

import pytest

from waitlist_billing.models import (
    ActivityRegistration,
    EventRegistration,
    LinkKind,
    SpecialEventRegistration,
    TournamentRegistration,
)
from waitlist_billing.services.registration_auditor import audit_registration_links, expected_link_kind

from tests.factories import add, make_item, make_order, make_profile, make_tournament


@pytest.mark.parametrize(
    "item_type,kind",
    [
        ("tournament", LinkKind.tournament),
        ("Tournament Entry", LinkKind.tournament),
        ("workshop", LinkKind.activity),
        ("class", LinkKind.activity),
        ("supporter", LinkKind.event_registration),
        ("event_registration", LinkKind.event_registration),
        ("banquet", LinkKind.special_event),
        ("special_event", LinkKind.special_event),
        ("special_event_registration", LinkKind.special_event),
        ("merchandise", LinkKind.addon),
        ("donation", None),
        (None, None),
    ],
)
def test_expected_link_kind(item_type, kind):
    assert expected_link_kind(item_type) == kind


def test_tournament_item_without_registration_id(session):
    profile = make_profile(session)
    order = make_order(session, profile, total=4500)
    item = make_item(session, order, "Open Longsword", "tournament", total=4500)

    report = audit_registration_links(session)

    assert report.summary.total_missing_registrations == 1
    assert report.summary.total_users_with_issues == 1
    [user] = report.users
    [finding] = user.issues
    assert finding.kind == "missing_registration"
    assert finding.order_id == order.id
    assert finding.order_item_id == item.id
    assert finding.user_id == profile.id
    assert finding.amount == 4500


def test_linked_items_are_clean(session):
    profile = make_profile(session)
    tournament = make_tournament(session)
    order = make_order(session, profile, total=9500)
    reg = add(session, TournamentRegistration(user_id=profile.id, tournament_id=tournament.id, payment_status="paid"))
    event = add(session, EventRegistration(user_id=profile.id, event_year=2026, payment_status="completed"))
    make_item(session, order, "Open Longsword", "tournament", total=4500, tournament_registration_id=reg.id)
    make_item(session, order, "Supporter Entry", "supporter", total=5000, event_registration_id=event.id)

    report = audit_registration_links(session)

    assert report.summary.total_order_items == 2
    assert report.summary.total_registrations == 2
    assert report.summary.total_registrations_by_kind["tournament"] == 1
    assert report.summary.total_registrations_by_kind["event_registration"] == 1
    assert report.summary.total_users_with_issues == 0
    assert report.users[0].has_issues is False


def test_link_to_cancelled_or_missing_registration_is_missing(session):
    profile = make_profile(session)
    order = make_order(session, profile, total=6000)
    cancelled = add(session, ActivityRegistration(user_id=profile.id, activity_id=1, payment_status="cancelled"))
    make_item(session, order, "Cutting Workshop", "workshop", total=3000, activity_registration_id=cancelled.id)
    make_item(session, order, "Gala Dinner", "dinner", total=3000, special_event_registration_id=999)

    report = audit_registration_links(session)

    kinds = sorted(f.registration_kind for f in report.users[0].issues)
    assert kinds == ["activity", "special_event"]
    assert report.summary.total_missing_registrations == 2


def test_orphaned_paid_registrations(session):
    profile = make_profile(session)
    tournament = make_tournament(session)
    orphan = add(session, TournamentRegistration(user_id=profile.id, tournament_id=tournament.id, payment_status="paid"))
    add(session, SpecialEventRegistration(user_id=profile.id, event_id=1, payment_status="pending"))
    add(session, EventRegistration(user_id=profile.id, event_year=2026, payment_status="completed"))

    report = audit_registration_links(session)

    orphaned = [f for f in report.users[0].issues if f.kind == "orphaned_registration"]
    assert ("tournament", orphan.id) in {(f.registration_kind, f.registration_id) for f in orphaned}
    assert report.summary.total_orphaned_registrations == 2


def test_addon_without_addon_id(session):
    profile = make_profile(session)
    order = make_order(session, profile, total=2500)
    make_item(session, order, "Event T-Shirt", "apparel", total=2500)
    make_item(session, order, "Patch", "addon", total=500, addon_id=7)

    report = audit_registration_links(session)

    assert report.summary.total_addon_purchases == 1
    assert report.summary.total_missing_addon_links == 1
    [finding] = report.users[0].issues
    assert finding.kind == "missing_addon_link"


def test_special_event_registration_item_linked_correctly_is_clean(session):
    profile = make_profile(session)
    order = make_order(session, profile, total=6000)
    gala = add(session, SpecialEventRegistration(user_id=profile.id, event_id=1, payment_status="paid"))
    make_item(
        session, order, "Gala Dinner", "special_event_registration", total=6000, special_event_registration_id=gala.id
    )

    report = audit_registration_links(session)

    assert report.users[0].issues == []
    assert report.summary.total_registrations_by_kind["special_event"] == 1


def test_addon_purchases_are_counted_by_addon_id(session):
    profile = make_profile(session)
    order = make_order(session, profile, total=3000)
    make_item(session, order, "Supporter Bundle Patch", "bundle", total=500, addon_id=3)
    make_item(session, order, "Event T-Shirt", "apparel", total=2500, addon_id=4)

    report = audit_registration_links(session)

    assert report.summary.total_addon_purchases == 2
    assert report.users[0].addon_count == 2
    assert report.summary.total_missing_addon_links == 0


def test_unpaid_orders_are_ignored(session):
    profile = make_profile(session)
    order = make_order(session, profile, total=4500, payment_status="pending")
    make_item(session, order, "Open Longsword", "tournament", total=4500)

    report = audit_registration_links(session)

    assert report.summary.total_order_items == 0
    assert report.summary.total_missing_registrations == 0


def test_users_with_most_issues_come_first(session):
    clean = make_profile(session, email="a@example.com", first="Aaron", last="Clean")
    few = make_profile(session, email="b@example.com", first="Bea", last="Few")
    many = make_profile(session, email="c@example.com", first="Cy", last="Many")
    tournament = make_tournament(session)

    reg = add(session, TournamentRegistration(user_id=clean.id, tournament_id=tournament.id, payment_status="paid"))
    make_item(session, make_order(session, clean, 4500, "ORD-A"), "Open", "tournament", 4500, tournament_registration_id=reg.id)
    make_item(session, make_order(session, few, 4500, "ORD-B"), "Open", "tournament", 4500)
    many_order = make_order(session, many, 9000, "ORD-C")
    make_item(session, many_order, "Open", "tournament", 4500)
    make_item(session, many_order, "Sabre", "tournament", 4500)

    report = audit_registration_links(session)

    assert [u.user_id for u in report.users] == [many.id, few.id, clean.id]
    assert report.users[0].name == "Cy Many"


def test_scope_to_one_user(session):
    first = make_profile(session, email="first@example.com")
    second = make_profile(session, email="second@example.com")
    make_item(session, make_order(session, first, 4500, "ORD-1"), "Open", "tournament", 4500)
    make_item(session, make_order(session, second, 4500, "ORD-2"), "Open", "tournament", 4500)

    report = audit_registration_links(session, user_id=second.id)

    assert [u.user_id for u in report.users] == [second.id]
    assert report.summary.total_missing_registrations == 1


def test_audit_endpoint(client, session):
    profile = make_profile(session)
    make_item(session, make_order(session, profile, 4500), "Open Longsword", "tournament", 4500)

    response = client.get("/api/audit/registration-links")

    assert response.status_code == 200
    body = response.json()
    assert body["summary"]["total_missing_registrations"] == 1
    assert body["users"][0]["issue_count"] == 1
    assert body["users"][0]["issues"][0]["kind"] == "missing_registration"
