"""
Discovery report: fuzzy item-name reconciliation.

Looks for purchases the database may not know about, by keyword and
substring matching on item names. The matching is imprecise, so every
record is marked ``confidence="heuristic"`` and nothing here changes data.

Sources and finding kinds:

* database:  paid order items that look like tournament purchases by name
  or type but carry no tournament registration id (missing_registration);
* processor: paid checkout sessions with no order at all
  (session_without_order), and tournament-like line items with no matching
  order item or tournament registration for that user (unmatched_purchase);
* per payer: processor line items and paid order items aggregated by
  normalized name, compared for presence, quantity and amount
  (missing_in_database, missing_in_processor, quantity_mismatch,
  amount_mismatch). Only payers with at least one discrepancy are reported.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from sqlmodel import Session, select

from waitlist_billing.config import Settings, get_settings
from waitlist_billing.models.order import Order, OrderItem
from waitlist_billing.models.profile import Profile
from waitlist_billing.models.registration import TournamentRegistration
from waitlist_billing.models.tournament import Tournament
from waitlist_billing.services.findings import FindingKind
from waitlist_billing.services.stripe_service import ProcessorCustomer, ProcessorSession, StripeService

logger = logging.getLogger(__name__)

SOURCE_DATABASE = "database"
SOURCE_PROCESSOR = "processor"
CONFIDENCE = "heuristic"


@dataclass
class DiscoveryRecord:
    source: str
    kind: FindingKind
    item_name: str
    reason: str
    user_id: Optional[int] = None
    email: Optional[str] = None
    customer_id: Optional[str] = None
    session_id: Optional[str] = None
    order_id: Optional[int] = None
    order_item_id: Optional[int] = None
    amount: Optional[int] = None
    confidence: str = CONFIDENCE


@dataclass
class ItemDiscrepancy:
    kind: FindingKind
    item_name: str
    processor_quantity: int = 0
    processor_total: int = 0
    database_quantity: int = 0
    database_total: int = 0
    confidence: str = CONFIDENCE


@dataclass
class PayerComparison:
    user_id: Optional[int]
    email: Optional[str]
    customer_ids: List[str]
    processor_total: int
    database_total: int
    discrepancies: List[ItemDiscrepancy] = field(default_factory=list)
    confidence: str = CONFIDENCE


@dataclass
class DiscoveryReport:
    customers_scanned: int = 0
    sessions_scanned: int = 0
    items_checked: int = 0
    records: List[DiscoveryRecord] = field(default_factory=list)
    payers: List[PayerComparison] = field(default_factory=list)

    @property
    def database_count(self) -> int:
        return sum(1 for r in self.records if r.source == SOURCE_DATABASE)

    @property
    def processor_count(self) -> int:
        return sum(1 for r in self.records if r.source == SOURCE_PROCESSOR)

    @property
    def discrepancy_count(self) -> int:
        return sum(len(p.discrepancies) for p in self.payers)


def looks_like_tournament(text: Optional[str], keywords: Sequence[str]) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def names_match(a: str, b: str) -> bool:
    """Case-insensitive equality or containment either way."""
    a, b = a.strip().lower(), b.strip().lower()
    if not a or not b:
        return False
    return a == b or a in b or b in a


def _any_match(name: str, candidates: Iterable[str]) -> bool:
    return any(names_match(name, candidate) for candidate in candidates)


def _normalize(name: Optional[str]) -> str:
    return (name or "").strip().lower()


def scan_database_items(session: Session, keywords: Sequence[str], report: DiscoveryReport) -> None:
    rows = session.exec(
        select(Order, OrderItem)
        .join(OrderItem, OrderItem.order_id == Order.id)
        .where(
            Order.payment_status == "paid",
            OrderItem.tournament_registration_id.is_(None),  # type: ignore
        )
        .order_by(Order.id, OrderItem.id)
    ).all()
    for order, item in rows:
        report.items_checked += 1
        if not (looks_like_tournament(item.item_name, keywords) or looks_like_tournament(item.item_type, keywords)):
            continue
        report.records.append(
            DiscoveryRecord(
                source=SOURCE_DATABASE,
                kind=FindingKind.missing_registration,
                item_name=item.item_name,
                reason="Paid item looks like a tournament entry but has no tournament registration id",
                user_id=order.user_id,
                order_id=order.id,
                order_item_id=item.id,
                amount=(item.total or 0) - (item.discount_amount or 0),
            )
        )


class _UserIndex:
    """Lazily loaded per-user item names and tournament registration names."""

    def __init__(self, session: Session):
        self.session = session
        self._by_customer: Dict[str, Optional[Profile]] = {}
        self._by_email: Dict[str, Optional[Profile]] = {}
        self._item_names: Dict[int, List[str]] = {}
        self._tournament_names: Dict[int, List[str]] = {}

    def profile_for(self, customer: ProcessorCustomer) -> Optional[Profile]:
        if customer.id not in self._by_customer:
            self._by_customer[customer.id] = self.session.exec(
                select(Profile).where(Profile.stripe_customer_id == customer.id)
            ).first()
        profile = self._by_customer[customer.id]
        if profile is None and customer.email:
            email = customer.email.strip().lower()
            if email not in self._by_email:
                self._by_email[email] = self.session.exec(
                    select(Profile).where(Profile.email.ilike(email))  # type: ignore
                ).first()
            profile = self._by_email[email]
        return profile

    def order_for_session(self, session_id: str) -> Optional[Order]:
        return self.session.exec(select(Order).where(Order.stripe_session_id == session_id)).first()

    def order_item_names(self, order_id: int) -> List[str]:
        return list(self.session.exec(select(OrderItem.item_name).where(OrderItem.order_id == order_id)).all())

    def item_names(self, user_id: int) -> List[str]:
        if user_id not in self._item_names:
            self._item_names[user_id] = list(
                self.session.exec(
                    select(OrderItem.item_name)
                    .join(Order, Order.id == OrderItem.order_id)
                    .where(Order.user_id == user_id, Order.payment_status == "paid")
                ).all()
            )
        return self._item_names[user_id]

    def tournament_names(self, user_id: int) -> List[str]:
        if user_id not in self._tournament_names:
            self._tournament_names[user_id] = list(
                self.session.exec(
                    select(Tournament.name)
                    .join(TournamentRegistration, TournamentRegistration.tournament_id == Tournament.id)
                    .where(TournamentRegistration.user_id == user_id)
                ).all()
            )
        return self._tournament_names[user_id]

    def paid_items(self, user_id: int) -> List[OrderItem]:
        return list(
            self.session.exec(
                select(OrderItem)
                .join(Order, Order.id == OrderItem.order_id)
                .where(Order.user_id == user_id, Order.payment_status == "paid")
            ).all()
        )


# Aggregated (quantity, total) per normalized item name
ItemTotals = Dict[str, List[int]]


@dataclass
class _PayerPurchases:
    user_id: Optional[int]
    email: Optional[str]
    customer_ids: List[str] = field(default_factory=list)
    processor_items: ItemTotals = field(default_factory=dict)
    processor_total: int = 0

    def add_session(self, checkout: ProcessorSession) -> None:
        for line in checkout.line_items:
            totals = self.processor_items.setdefault(_normalize(line.description), [0, 0])
            totals[0] += line.quantity or 1
            totals[1] += line.amount_total or 0
        if checkout.amount_total is not None:
            self.processor_total += checkout.amount_total
        else:
            self.processor_total += sum(line.amount_total or 0 for line in checkout.line_items)


def compare_items(processor_items: ItemTotals, database_items: ItemTotals, tolerance: int) -> List[ItemDiscrepancy]:
    """Per-name presence, quantity and amount comparison of two aggregates."""
    discrepancies = []
    for name in sorted(set(processor_items) | set(database_items)):
        p_qty, p_total = processor_items.get(name, (0, 0))
        d_qty, d_total = database_items.get(name, (0, 0))
        if name not in database_items:
            kind = FindingKind.missing_in_database
        elif name not in processor_items:
            kind = FindingKind.missing_in_processor
        elif p_qty != d_qty:
            kind = FindingKind.quantity_mismatch
        elif abs(p_total - d_total) > tolerance:
            kind = FindingKind.amount_mismatch
        else:
            continue
        discrepancies.append(
            ItemDiscrepancy(
                kind=kind,
                item_name=name,
                processor_quantity=p_qty,
                processor_total=p_total,
                database_quantity=d_qty,
                database_total=d_total,
            )
        )
    return discrepancies


def _database_items(items: Iterable[OrderItem]) -> Tuple[ItemTotals, int]:
    aggregated: ItemTotals = {}
    grand_total = 0
    for item in items:
        net = (item.total or 0) - (item.discount_amount or 0)
        totals = aggregated.setdefault(_normalize(item.item_name), [0, 0])
        totals[0] += item.quantity or 1
        totals[1] += net
        grand_total += net
    return aggregated, grand_total


def compare_payers(
    index: _UserIndex, purchases: Iterable[_PayerPurchases], tolerance: int
) -> List[PayerComparison]:
    flagged = []
    for payer in purchases:
        if payer.user_id is not None:
            database_items, database_total = _database_items(index.paid_items(payer.user_id))
        else:
            database_items, database_total = {}, 0
        discrepancies = compare_items(payer.processor_items, database_items, tolerance)
        if not discrepancies and abs(payer.processor_total - database_total) <= tolerance:
            continue
        flagged.append(
            PayerComparison(
                user_id=payer.user_id,
                email=payer.email,
                customer_ids=payer.customer_ids,
                processor_total=payer.processor_total,
                database_total=database_total,
                discrepancies=discrepancies,
            )
        )
    return flagged


def scan_processor_sessions(
    session: Session,
    processor: StripeService,
    keywords: Sequence[str],
    report: DiscoveryReport,
    tolerance: int = 1,
) -> None:
    index = _UserIndex(session)
    seen_sessions: Set[str] = set()
    purchases: Dict[Union[int, str], _PayerPurchases] = {}

    for customer in processor.iter_customers():
        report.customers_scanned += 1
        profile = index.profile_for(customer)
        payer_key: Union[int, str] = profile.id if profile is not None else customer.id
        payer = purchases.setdefault(
            payer_key,
            _PayerPurchases(
                user_id=profile.id if profile is not None else None,
                email=profile.email if profile is not None else customer.email,
            ),
        )
        payer.customer_ids.append(customer.id)

        for checkout in processor.list_paid_checkout_sessions(customer.id):
            if checkout.id in seen_sessions:
                continue
            seen_sessions.add(checkout.id)
            report.sessions_scanned += 1
            payer.add_session(checkout)

            order = index.order_for_session(checkout.id)
            if order is None:
                report.records.append(
                    DiscoveryRecord(
                        source=SOURCE_PROCESSOR,
                        kind=FindingKind.session_without_order,
                        item_name=", ".join(line.description for line in checkout.line_items),
                        reason="Paid checkout session has no order",
                        user_id=profile.id if profile else None,
                        email=customer.email,
                        customer_id=customer.id,
                        session_id=checkout.id,
                        amount=checkout.amount_total,
                    )
                )
                session_names: List[str] = []
            else:
                session_names = index.order_item_names(order.id)

            for line in checkout.line_items:
                if not looks_like_tournament(line.description, keywords):
                    continue
                report.items_checked += 1
                if _any_match(line.description, session_names):
                    continue
                if profile is not None and (
                    _any_match(line.description, index.item_names(profile.id))
                    or _any_match(line.description, index.tournament_names(profile.id))
                ):
                    continue
                reason = (
                    "No order item or tournament registration matches this purchase"
                    if profile is not None
                    else "Processor customer does not match any user"
                )
                report.records.append(
                    DiscoveryRecord(
                        source=SOURCE_PROCESSOR,
                        kind=FindingKind.unmatched_purchase,
                        item_name=line.description,
                        reason=reason,
                        user_id=profile.id if profile else None,
                        email=customer.email,
                        customer_id=customer.id,
                        session_id=checkout.id,
                        amount=line.amount_total,
                    )
                )

    report.payers = compare_payers(index, purchases.values(), tolerance)


def build_discovery_report(
    session: Session,
    processor: StripeService,
    include_processor: bool = True,
    settings: Optional[Settings] = None,
) -> DiscoveryReport:
    """Run both scans. Processor failures propagate as ExternalServiceError."""
    settings = settings or get_settings()
    keywords = settings.tournament_keywords
    report = DiscoveryReport()

    scan_database_items(session, keywords, report)
    if include_processor:
        scan_processor_sessions(session, processor, keywords, report, tolerance=settings.reconcile_tolerance)

    logger.info(
        f"Discovery report: {report.customers_scanned} customers, {report.sessions_scanned} sessions, "
        f"{report.database_count} database and {report.processor_count} processor records, "
        f"{report.discrepancy_count} item discrepancies across {len(report.payers)} payers"
    )
    return report
