"""
Registration-Link Auditor.

Read-only pass over paid orders and the canonical registration tables.
Each paid OrderItem is expected to carry the foreign key implied by its
item type, and that key must resolve to a live registration:

    missing_registration   expected key absent, or not resolvable to a live row
    orphaned_registration  paid registration that no order item points at
    missing_addon_link     addon-type item without an addon id

Findings are data: the audit only raises for infrastructure failures.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple, Type

from sqlmodel import Session, SQLModel, select

from waitlist_billing.models.order import LinkKind, Order, OrderItem
from waitlist_billing.models.profile import Profile
from waitlist_billing.models.registration import (
    DEAD_REGISTRATION_STATUSES,
    ActivityRegistration,
    EventRegistration,
    SpecialEventRegistration,
    TournamentRegistration,
)
from waitlist_billing.services.findings import FindingKind, ReconciliationFinding

logger = logging.getLogger(__name__)

# Keywords in OrderItem.item_type implying a registration kind, first match wins.
# special_event precedes event_registration: "special_event_registration" contains both.
ITEM_TYPE_KEYWORDS: Tuple[Tuple[LinkKind, Tuple[str, ...]], ...] = (
    (LinkKind.tournament, ("tournament",)),
    (LinkKind.activity, ("activity", "class", "workshop")),
    (LinkKind.special_event, ("special_event", "banquet", "dinner")),
    (LinkKind.event_registration, ("event_registration", "supporter", "spectator")),
    (LinkKind.addon, ("addon", "merchandise", "apparel")),
)

REGISTRATION_TABLES: Dict[LinkKind, Type[SQLModel]] = {
    LinkKind.tournament: TournamentRegistration,
    LinkKind.activity: ActivityRegistration,
    LinkKind.event_registration: EventRegistration,
    LinkKind.special_event: SpecialEventRegistration,
}

# payment_status a registration of each kind has once it is paid for
PAID_REGISTRATION_STATUS: Dict[LinkKind, str] = {
    LinkKind.tournament: "paid",
    LinkKind.activity: "paid",
    LinkKind.event_registration: "completed",
    LinkKind.special_event: "paid",
}


def expected_link_kind(item_type: Optional[str]) -> Optional[LinkKind]:
    """Registration kind an item type implies, or None for untracked items."""
    if not item_type:
        return None
    normalized = item_type.strip().lower()
    for kind, keywords in ITEM_TYPE_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return kind
    return None


@dataclass
class UserAudit:
    user_id: int
    email: Optional[str] = None
    name: str = "Unknown"
    order_item_count: int = 0
    registration_counts: Dict[str, int] = field(default_factory=lambda: {k.value: 0 for k in REGISTRATION_TABLES})
    addon_count: int = 0
    issues: List[ReconciliationFinding] = field(default_factory=list)

    @property
    def has_issues(self) -> bool:
        return bool(self.issues)


@dataclass
class AuditSummary:
    total_users_checked: int = 0
    total_users_with_issues: int = 0
    total_order_items: int = 0
    total_registrations_by_kind: Dict[str, int] = field(default_factory=lambda: {k.value: 0 for k in REGISTRATION_TABLES})
    total_addon_purchases: int = 0
    total_registrations: int = 0
    total_missing_registrations: int = 0
    total_orphaned_registrations: int = 0
    total_missing_addon_links: int = 0


@dataclass
class AuditReport:
    summary: AuditSummary
    users: List[UserAudit]


def _live(registration) -> bool:
    return (registration.payment_status or "").lower() not in DEAD_REGISTRATION_STATUSES


def _load_registrations(session: Session, user_id: Optional[int]) -> Dict[LinkKind, Dict[int, SQLModel]]:
    loaded = {}
    for kind, table in REGISTRATION_TABLES.items():
        query = select(table)
        if user_id is not None:
            query = query.where(table.user_id == user_id)
        loaded[kind] = {row.id: row for row in session.exec(query).all()}
    return loaded


def _paid_items(session: Session, user_id: Optional[int]) -> Iterable[Tuple[Order, OrderItem]]:
    query = (
        select(Order, OrderItem)
        .join(OrderItem, OrderItem.order_id == Order.id)
        .where(Order.payment_status == "paid")
        .order_by(Order.id, OrderItem.id)
    )
    if user_id is not None:
        query = query.where(Order.user_id == user_id)
    return session.exec(query).all()


def _resolve_registration(
    registrations: Dict[LinkKind, Dict[int, SQLModel]], kind: LinkKind, item: OrderItem
) -> Optional[SQLModel]:
    """Registration the item links to for this kind, if it exists and is live."""
    link = item.link_for(kind)
    if link is None:
        return None
    row = registrations[kind].get(link.id)
    if row is None or not _live(row):
        return None
    return row


def audit_registration_links(session: Session, user_id: Optional[int] = None) -> AuditReport:
    """Run the exact-key audit, optionally scoped to one user."""
    registrations = _load_registrations(session, user_id)
    users: Dict[int, UserAudit] = {}

    def user_audit(uid: int) -> UserAudit:
        if uid not in users:
            users[uid] = UserAudit(user_id=uid)
        return users[uid]

    summary = AuditSummary()
    referenced: Dict[LinkKind, Set[int]] = {kind: set() for kind in REGISTRATION_TABLES}

    for order, item in _paid_items(session, user_id):
        summary.total_order_items += 1
        audit = user_audit(order.user_id)
        audit.order_item_count += 1

        for link in item.links:
            if link.kind in referenced:
                referenced[link.kind].add(link.id)

        if item.addon_id is not None:
            summary.total_addon_purchases += 1
            audit.addon_count += 1

        kind = expected_link_kind(item.item_type)
        if kind is None:
            continue
        amount = (item.total or 0) - (item.discount_amount or 0)

        if kind == LinkKind.addon:
            if item.addon_id is None:
                summary.total_missing_addon_links += 1
                audit.issues.append(
                    ReconciliationFinding(
                        kind=FindingKind.missing_addon_link,
                        user_id=order.user_id,
                        order_id=order.id,
                        order_number=order.order_number,
                        order_item_id=item.id,
                        registration_kind=kind.value,
                        amount=amount,
                        detail=f"Addon purchase '{item.item_name}' has no addon id",
                    )
                )
            continue

        if _resolve_registration(registrations, kind, item) is not None:
            continue

        link = item.link_for(kind)
        if link is None:
            detail = f"'{item.item_name}' ({item.item_type}) has no {kind.value} registration id"
        else:
            detail = f"'{item.item_name}' points at {kind.value} registration {link.id}, which is missing or not live"
        summary.total_missing_registrations += 1
        audit.issues.append(
            ReconciliationFinding(
                kind=FindingKind.missing_registration,
                user_id=order.user_id,
                order_id=order.id,
                order_number=order.order_number,
                order_item_id=item.id,
                registration_kind=kind.value,
                registration_id=link.id if link else None,
                amount=amount,
                detail=detail,
            )
        )

    for kind, rows in registrations.items():
        paid_status = PAID_REGISTRATION_STATUS[kind]
        for registration_id, row in rows.items():
            if (row.payment_status or "").lower() != paid_status:
                continue
            audit = user_audit(row.user_id)
            audit.registration_counts[kind.value] += 1
            summary.total_registrations_by_kind[kind.value] += 1
            summary.total_registrations += 1
            if registration_id in referenced[kind]:
                continue
            summary.total_orphaned_registrations += 1
            audit.issues.append(
                ReconciliationFinding(
                    kind=FindingKind.orphaned_registration,
                    user_id=row.user_id,
                    order_id=getattr(row, "order_id", None),
                    registration_kind=kind.value,
                    registration_id=registration_id,
                    detail=f"Paid {kind.value} registration {registration_id} is not referenced by any order item",
                )
            )

    if users:
        profiles = session.exec(select(Profile).where(Profile.id.in_(list(users)))).all()  # type: ignore
        for profile in profiles:
            users[profile.id].email = profile.email
            users[profile.id].name = profile.display_name

    ordered = sorted(
        users.values(),
        key=lambda u: (not u.has_issues, -len(u.issues), u.name.lower(), u.user_id),
    )
    summary.total_users_checked = len(ordered)
    summary.total_users_with_issues = sum(1 for u in ordered if u.has_issues)

    logger.info(
        f"Registration audit: {summary.total_users_checked} users, {summary.total_order_items} paid items, "
        f"{summary.total_missing_registrations} missing, {summary.total_orphaned_registrations} orphaned, "
        f"{summary.total_missing_addon_links} missing addon links"
    )
    return AuditReport(summary=summary, users=ordered)
