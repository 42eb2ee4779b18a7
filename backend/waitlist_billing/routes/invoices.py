"""Waitlist invoice routes (per-entry and combined)."""

import logging
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session

from waitlist_billing.database import get_session
from waitlist_billing.errors import BillingError, ValidationFailed
from waitlist_billing.routes.deps import http_error, require_admin
from waitlist_billing.services import invoice_composer
from waitlist_billing.services.stripe_service import StripeService, get_payment_processor

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


class InvoiceSendRequest(BaseModel):
    waitlist_entry_ids: List[int] = Field(min_length=1)
    mode: Literal["single", "combined"] = "single"
    user_id: Optional[int] = None  # required for combined mode
    due_days: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = None


class InvoiceResult(BaseModel):
    waitlist_entry_id: int
    success: bool
    invoice_id: Optional[int] = None
    external_invoice_id: Optional[str] = None
    invoice_url: Optional[str] = None
    total_amount: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class InvoiceSendResponse(BaseModel):
    success: bool
    mode: str
    results: List[InvoiceResult]
    total_sent: int
    total_failed: int
    combined_invoice_id: Optional[int] = None
    invoice_url: Optional[str] = None
    total_amount: Optional[int] = None


class CombinedInvoiceItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    waitlist_entry_id: int
    tournament_id: int
    tournament_fee: int


class EntryChargeResponse(BaseModel):
    waitlist_entry_id: int
    tournament_id: int
    tournament_name: str
    position: int
    promoted_at: Optional[datetime] = None
    fee: int
    regular_fee: int
    is_early_bird: bool


class InvoicePreviewResponse(BaseModel):
    user_id: int
    email: str
    name: str
    entries: List[EntryChargeResponse]
    tournament_total: int
    event_registration_fee: int
    event_registration_owed: bool
    event_registration_early_bird: bool
    total_amount: int


def _preview_response(preview: invoice_composer.InvoicePreview) -> InvoicePreviewResponse:
    return InvoicePreviewResponse(
        user_id=preview.user_id,
        email=preview.email,
        name=preview.name,
        entries=[
            EntryChargeResponse(
                waitlist_entry_id=c.entry.id,
                tournament_id=c.tournament.id,
                tournament_name=c.tournament.name,
                position=c.entry.position,
                promoted_at=c.entry.promoted_at,
                fee=c.fee.amount,
                regular_fee=c.fee.regular_amount,
                is_early_bird=c.fee.is_early_bird,
            )
            for c in preview.charges
        ],
        tournament_total=preview.tournament_total,
        event_registration_fee=preview.event_fee.amount,
        event_registration_owed=preview.event_fee.owed,
        event_registration_early_bird=preview.event_fee.fee.is_early_bird,
        total_amount=preview.total_amount,
    )


@router.get("/waitlist/invoices/promoted", response_model=List[InvoicePreviewResponse])
def list_promoted_unbilled(user_id: Optional[int] = None, session: Session = Depends(get_session)):
    """Promoted, unbilled entries grouped per payer with an invoice preview."""
    try:
        previews = invoice_composer.list_promoted_unbilled(session, user_id=user_id)
    except BillingError as e:
        raise http_error(e)
    return [_preview_response(p) for p in previews]


@router.post("/waitlist/invoices", response_model=InvoiceSendResponse)
def send_waitlist_invoices(
    payload: InvoiceSendRequest,
    session: Session = Depends(get_session),
    processor: StripeService = Depends(get_payment_processor),
):
    """
    Send invoices for promoted entries.

    single:   one invoice per entry; failures are reported per entry.
    combined: one invoice for all entries of user_id; all or nothing.
    """
    if payload.mode == "single":
        report = invoice_composer.send_entry_invoices(session, processor, payload.waitlist_entry_ids)
        return InvoiceSendResponse(
            success=report.total_failed == 0,
            mode=payload.mode,
            results=[InvoiceResult(**vars(r)) for r in report.results],
            total_sent=report.total_sent,
            total_failed=report.total_failed,
        )

    try:
        if payload.user_id is None:
            raise ValidationFailed("user_id is required for combined invoices")
        combined = invoice_composer.compose_combined_invoice(
            session,
            processor,
            user_id=payload.user_id,
            entry_ids=payload.waitlist_entry_ids,
            due_days=payload.due_days,
            notes=payload.notes,
        )
    except BillingError as e:
        logger.warning(f"Combined invoice for user {payload.user_id} rejected: {e.kind}: {e.message}")
        raise http_error(e)

    results = [
        InvoiceResult(
            waitlist_entry_id=item.waitlist_entry_id,
            success=True,
            invoice_id=combined.id,
            external_invoice_id=combined.stripe_invoice_id,
            invoice_url=combined.hosted_invoice_url,
            total_amount=item.tournament_fee,
        )
        for item in combined.items
    ]
    return InvoiceSendResponse(
        success=True,
        mode=payload.mode,
        results=results,
        total_sent=len(results),
        total_failed=0,
        combined_invoice_id=combined.id,
        invoice_url=combined.hosted_invoice_url,
        total_amount=combined.total_amount,
    )
