"""
Financial Reconciler.

Compares each order's recorded total, net of recorded discounts, with the
amount the payment processor holds for the same transaction (checkout
session first, payment intent otherwise).

    match             difference within the rounding tolerance
    mismatch          anything else
    pending           payment not complete on either side; not compared
    no_external_data  no processor reference, or the processor lost it
    error             processor call failed for any other reason

Two heuristic paths exist for historical data and are always labeled
``verification="heuristic"``:

* fully discounted orders are matched without a processor call;
* a stored payment intent that no longer exists is matched when the order
  total inflated by the configured tax rate is positive.

Database reads happen up front; only processor calls run in the worker pool.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from sqlmodel import Session, select

from waitlist_billing.config import Settings, get_settings
from waitlist_billing.errors import ExternalServiceError
from waitlist_billing.models.order import Order, OrderItem
from waitlist_billing.models.profile import Profile
from waitlist_billing.services.findings import FindingKind
from waitlist_billing.services.stripe_service import (
    ProcessorLineItem,
    ProcessorPaymentIntent,
    ProcessorSession,
    StripeService,
)

logger = logging.getLogger(__name__)

MATCH = "match"
MISMATCH = "mismatch"
PENDING = "pending"
NO_EXTERNAL_DATA = FindingKind.no_external_data.value
ERROR = "error"

VERIFIED = "verified"
HEURISTIC = "heuristic"

# Order statuses that mean the customer has not completed payment
UNPAID_ORDER_STATUSES = ("pending",)

FLAGGED_STATUSES = (MISMATCH, ERROR, NO_EXTERNAL_DATA)


@dataclass
class OrderVerification:
    order_id: int
    order_number: str
    user_id: int
    status: str
    db_total: int
    discount_total: int
    expected_total: int
    stripe_total: Optional[int] = None
    difference: Optional[int] = None
    source: Optional[str] = None  # checkout_session | payment_intent
    external_id: Optional[str] = None
    verification: Optional[str] = None  # verified | heuristic
    detail: Optional[str] = None
    db_items: List[str] = field(default_factory=list)
    stripe_items: List[ProcessorLineItem] = field(default_factory=list)


@dataclass
class ReconciliationCounts:
    total_users: int = 0
    total_orders: int = 0
    matched: int = 0
    heuristic_matched: int = 0
    mismatched: int = 0
    pending: int = 0
    no_external_data: int = 0
    error: int = 0

    def add(self, record: OrderVerification) -> None:
        self.total_orders += 1
        if record.status == MATCH:
            self.matched += 1
            if record.verification == HEURISTIC:
                self.heuristic_matched += 1
        elif record.status == MISMATCH:
            self.mismatched += 1
        elif record.status == PENDING:
            self.pending += 1
        elif record.status == NO_EXTERNAL_DATA:
            self.no_external_data += 1
        else:
            self.error += 1


@dataclass
class UserReconciliation:
    user_id: int
    email: Optional[str]
    name: str
    counts: ReconciliationCounts
    orders: List[OrderVerification]

    @property
    def has_issues(self) -> bool:
        return any(o.status in FLAGGED_STATUSES for o in self.orders)


@dataclass
class ReconciliationReport:
    counts: ReconciliationCounts
    user_results: List[UserReconciliation]


@dataclass
class _Lookup:
    order: Order
    record: OrderVerification


LookupOutcome = Union[ProcessorSession, ProcessorPaymentIntent, ExternalServiceError]


def _base_record(order: Order, items: List[OrderItem]) -> OrderVerification:
    discount_total = sum(i.discount_amount or 0 for i in items)
    db_total = order.total or 0
    return OrderVerification(
        order_id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        status=PENDING,
        db_total=db_total,
        discount_total=discount_total,
        expected_total=db_total - discount_total,
        db_items=[i.item_name for i in items],
    )


def classify_locally(order: Order, record: OrderVerification) -> bool:
    """
    Settle the record without the processor when possible.

    Returns True when the record is final.
    """
    if (order.payment_status or "").lower() in UNPAID_ORDER_STATUSES:
        record.status = PENDING
        record.detail = "Order payment not completed"
        return True

    if record.expected_total <= 0:
        record.status = MATCH
        record.stripe_total = 0
        record.difference = 0
        record.verification = HEURISTIC
        record.detail = "No-cost order (fully discounted); processor not consulted"
        record.stripe_items = [ProcessorLineItem(description="No-cost order", amount_total=0)]
        return True

    if not order.stripe_session_id and not order.stripe_payment_intent_id:
        record.status = NO_EXTERNAL_DATA
        record.detail = "No checkout session or payment intent stored on the order"
        return True

    return False


def _fetch(processor: StripeService, order: Order) -> LookupOutcome:
    """Runs in a worker thread: processor calls only."""
    try:
        if order.stripe_session_id:
            return processor.retrieve_checkout_session(order.stripe_session_id)
        return processor.retrieve_payment_intent(order.stripe_payment_intent_id)
    except ExternalServiceError as exc:
        return exc


def _compare(record: OrderVerification, stripe_total: int, tolerance: int) -> None:
    record.stripe_total = stripe_total
    record.difference = stripe_total - record.expected_total
    if abs(record.difference) <= tolerance:
        record.status = MATCH
        record.verification = VERIFIED
    else:
        record.status = MISMATCH
        record.detail = f"Recorded {record.expected_total}, processor has {stripe_total}"


def classify_lookup(order: Order, record: OrderVerification, outcome: LookupOutcome, settings: Settings) -> None:
    if isinstance(outcome, ProcessorSession):
        record.source = "checkout_session"
        record.external_id = outcome.id
        record.stripe_items = outcome.line_items
        if outcome.payment_status and outcome.payment_status not in ("paid", "no_payment_required"):
            record.status = PENDING
            record.stripe_total = outcome.amount_total
            record.detail = f"Checkout session payment status is '{outcome.payment_status}'"
            return
        _compare(record, outcome.amount_total or 0, settings.reconcile_tolerance)
        return

    if isinstance(outcome, ProcessorPaymentIntent):
        record.source = "payment_intent"
        record.external_id = outcome.id
        _compare(record, outcome.amount, settings.reconcile_tolerance)
        return

    exc = outcome
    record.source = "checkout_session" if order.stripe_session_id else "payment_intent"
    record.external_id = order.stripe_session_id or order.stripe_payment_intent_id

    if exc.resource_missing and record.source == "payment_intent" and order.total:
        inflated = round(record.expected_total * (1 + settings.reconcile_tax_rate))
        if inflated > 0:
            record.status = MATCH
            record.verification = HEURISTIC
            record.stripe_total = inflated
            record.difference = inflated - record.expected_total
            record.detail = (
                f"Payment intent no longer exists; assumed {inflated} "
                f"(recorded total plus {settings.reconcile_tax_rate:.2%} tax)"
            )
            record.stripe_items = [
                ProcessorLineItem(description="Payment intent not found (heuristic tax-inclusive total)", amount_total=inflated)
            ]
            logger.warning(f"Order {order.order_number}: heuristic match, payment intent {record.external_id} is gone")
            return

    if exc.resource_missing:
        record.status = NO_EXTERNAL_DATA
        record.detail = exc.message
        return

    record.status = ERROR
    record.detail = exc.message
    logger.error(f"Order {order.order_number}: processor lookup failed: {exc.message}")


def _load_orders(session: Session, user_id: Optional[int]) -> List[Order]:
    query = select(Order)
    if user_id is not None:
        query = query.where(Order.user_id == user_id)
    return list(session.exec(query.order_by(Order.user_id, Order.created_at, Order.id)).all())


def _load_items(session: Session, order_ids: List[int]) -> Dict[int, List[OrderItem]]:
    items: Dict[int, List[OrderItem]] = {oid: [] for oid in order_ids}
    if not order_ids:
        return items
    for item in session.exec(
        select(OrderItem).where(OrderItem.order_id.in_(order_ids)).order_by(OrderItem.id)  # type: ignore
    ).all():
        items[item.order_id].append(item)
    return items


def verify_orders(
    session: Session,
    processor: StripeService,
    user_id: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> ReconciliationReport:
    """
    Reconcile one user's orders, or every order when user_id is None.

    Per-user results in bulk mode are limited to users with a mismatch, an
    error or missing processor data; single-user mode always returns the user.
    """
    settings = settings or get_settings()
    orders = _load_orders(session, user_id)
    items = _load_items(session, [o.id for o in orders])

    records: List[OrderVerification] = []
    lookups: List[_Lookup] = []
    for order in orders:
        record = _base_record(order, items[order.id])
        records.append(record)
        if not classify_locally(order, record):
            lookups.append(_Lookup(order=order, record=record))

    if lookups and not processor.is_configured:
        raise ExternalServiceError("Payment processor is not configured; cannot reconcile orders")

    if lookups:
        with ThreadPoolExecutor(max_workers=settings.processor_max_workers) as pool:
            outcomes = list(pool.map(lambda lookup: _fetch(processor, lookup.order), lookups))
        for lookup, outcome in zip(lookups, outcomes):
            classify_lookup(lookup.order, lookup.record, outcome, settings)

    by_user: Dict[int, List[OrderVerification]] = {}
    for record in records:
        by_user.setdefault(record.user_id, []).append(record)
    if user_id is not None and user_id not in by_user:
        by_user[user_id] = []

    profiles = {}
    if by_user:
        profiles = {
            p.id: p for p in session.exec(select(Profile).where(Profile.id.in_(list(by_user)))).all()  # type: ignore
        }

    counts = ReconciliationCounts(total_users=len(by_user))
    user_results = []
    for uid, user_records in by_user.items():
        user_counts = ReconciliationCounts(total_users=1)
        for record in user_records:
            counts.add(record)
            user_counts.add(record)
        profile = profiles.get(uid)
        result = UserReconciliation(
            user_id=uid,
            email=profile.email if profile else None,
            name=profile.display_name if profile else "Unknown",
            counts=user_counts,
            orders=user_records,
        )
        if user_id is not None or result.has_issues:
            user_results.append(result)

    logger.info(
        f"Reconciled {counts.total_orders} orders for {counts.total_users} users: "
        f"{counts.matched} matched ({counts.heuristic_matched} heuristic), {counts.mismatched} mismatched, "
        f"{counts.pending} pending, {counts.no_external_data} no data, {counts.error} errors"
    )
    return ReconciliationReport(counts=counts, user_results=user_results)
