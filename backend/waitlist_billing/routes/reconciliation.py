"""Financial reconciliation and discovery routes (read-only)."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session

from waitlist_billing.database import get_session
from waitlist_billing.errors import BillingError
from waitlist_billing.routes.deps import http_error, require_admin
from waitlist_billing.services.discovery_report import build_discovery_report
from waitlist_billing.services.financial_reconciler import verify_orders
from waitlist_billing.services.stripe_service import StripeService, get_payment_processor

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


class ReconcileRequest(BaseModel):
    user_id: Optional[int] = None


class LineItemResponse(BaseModel):
    description: str
    amount_total: int
    quantity: int = 1


class OrderVerificationResponse(BaseModel):
    order_id: int
    order_number: str
    user_id: int
    status: str
    db_total: int
    discount_total: int
    expected_total: int
    stripe_total: Optional[int] = None
    difference: Optional[int] = None
    source: Optional[str] = None
    external_id: Optional[str] = None
    verification: Optional[str] = None
    detail: Optional[str] = None
    db_items: List[str]
    stripe_items: List[LineItemResponse]


class CountsResponse(BaseModel):
    total_users: int
    total_orders: int
    matched: int
    heuristic_matched: int
    mismatched: int
    pending: int
    no_external_data: int
    error: int


class UserReconciliationResponse(BaseModel):
    user_id: int
    email: Optional[str] = None
    name: str
    has_issues: bool
    counts: CountsResponse
    orders: List[OrderVerificationResponse]


class ReconcileResponse(BaseModel):
    counts: CountsResponse
    user_results: List[UserReconciliationResponse]


class DiscoveryRecordResponse(BaseModel):
    source: str
    kind: str
    item_name: str
    reason: str
    user_id: Optional[int] = None
    email: Optional[str] = None
    customer_id: Optional[str] = None
    session_id: Optional[str] = None
    order_id: Optional[int] = None
    order_item_id: Optional[int] = None
    amount: Optional[int] = None
    confidence: str


class ItemDiscrepancyResponse(BaseModel):
    kind: str
    item_name: str
    processor_quantity: int
    processor_total: int
    database_quantity: int
    database_total: int
    confidence: str


class PayerComparisonResponse(BaseModel):
    user_id: Optional[int] = None
    email: Optional[str] = None
    customer_ids: List[str]
    processor_total: int
    database_total: int
    discrepancies: List[ItemDiscrepancyResponse]
    confidence: str


class DiscoveryResponse(BaseModel):
    customers_scanned: int
    sessions_scanned: int
    items_checked: int
    database_count: int
    processor_count: int
    discrepancy_count: int
    records: List[DiscoveryRecordResponse]
    payers: List[PayerComparisonResponse]


def _order_response(record) -> OrderVerificationResponse:
    data = vars(record).copy()
    data["stripe_items"] = [LineItemResponse(**vars(i)) for i in record.stripe_items]
    return OrderVerificationResponse(**data)


@router.post("/reconciliation/orders", response_model=ReconcileResponse)
def reconcile_orders(
    payload: ReconcileRequest,
    session: Session = Depends(get_session),
    processor: StripeService = Depends(get_payment_processor),
):
    """Compare recorded order totals with the processor, for one user or everyone."""
    try:
        report = verify_orders(session, processor, user_id=payload.user_id)
    except BillingError as e:
        raise http_error(e)

    return ReconcileResponse(
        counts=CountsResponse(**vars(report.counts)),
        user_results=[
            UserReconciliationResponse(
                user_id=u.user_id,
                email=u.email,
                name=u.name,
                has_issues=u.has_issues,
                counts=CountsResponse(**vars(u.counts)),
                orders=[_order_response(o) for o in u.orders],
            )
            for u in report.user_results
        ],
    )


@router.get("/reconciliation/discovery", response_model=DiscoveryResponse)
def discovery_report(
    include_processor: bool = True,
    session: Session = Depends(get_session),
    processor: StripeService = Depends(get_payment_processor),
):
    """Heuristic search for tournament purchases with no matching registration."""
    try:
        report = build_discovery_report(session, processor, include_processor=include_processor)
    except BillingError as e:
        raise http_error(e)

    return DiscoveryResponse(
        customers_scanned=report.customers_scanned,
        sessions_scanned=report.sessions_scanned,
        items_checked=report.items_checked,
        database_count=report.database_count,
        processor_count=report.processor_count,
        discrepancy_count=report.discrepancy_count,
        records=[DiscoveryRecordResponse(**{**vars(r), "kind": r.kind.value}) for r in report.records],
        payers=[
            PayerComparisonResponse(
                **{
                    **vars(p),
                    "discrepancies": [
                        ItemDiscrepancyResponse(**{**vars(d), "kind": d.kind.value}) for d in p.discrepancies
                    ],
                }
            )
            for p in report.payers
        ],
    )
