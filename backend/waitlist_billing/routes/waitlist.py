"""Waitlist routes.

Provides endpoints for:
- Joining, listing and counting waitlist entries
- Direct position/status updates and hard deletes
- Promotion through the capacity check (probe, then confirm with bypass)
- Bulk status changes with per-entry results
- Duplicate-registration verification
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session

from waitlist_billing.database import get_session
from waitlist_billing.errors import BillingError, status_for_kind
from waitlist_billing.routes.deps import http_error, require_admin
from waitlist_billing.services import waitlist_service
from waitlist_billing.services.capacity_arbiter import NeedsConfirmation, PromotionFailure, promote_entry

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class WaitlistEntryCreate(BaseModel):
    tournament_id: int
    user_id: int
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class WaitlistEntryUpdate(BaseModel):
    position: Optional[int] = Field(default=None, ge=1)
    status: Optional[str] = None


class WaitlistEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tournament_id: int
    user_id: int
    position: int
    status: str
    email: str
    first_name: str
    last_name: str
    joined_at: datetime
    promoted_at: Optional[datetime] = None
    invoice_sent_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    combined_invoice_id: Optional[int] = None


class WaitlistCount(BaseModel):
    tournament_id: int
    tournament_name: str
    count: int


class PromoteRequest(BaseModel):
    waitlist_entry_id: int
    bypass_capacity: bool = False


class PromoteResponse(BaseModel):
    success: bool
    needs_confirmation: bool = False
    bypassed: bool = False
    current_participants: Optional[int] = None
    max_participants: Optional[int] = None
    reserved_participants: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    entry: Optional[WaitlistEntryResponse] = None


class BulkStatusRequest(BaseModel):
    waitlist_entry_ids: List[int]
    status: str


class BulkFailure(BaseModel):
    id: int
    reason: str
    detail: str = ""


class BulkStatusResponse(BaseModel):
    status: str  # ok | failed | PartialBatchFailure
    succeeded: List[int]
    failed: List[BulkFailure]


class DuplicateResponse(BaseModel):
    entry: WaitlistEntryResponse
    registration_id: int
    payment_status: str
    registered_at: datetime


class DuplicateReportResponse(BaseModel):
    total_waitlist_checked: int
    total_duplicates: int
    duplicates: List[DuplicateResponse]


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


@router.post("/waitlist", response_model=WaitlistEntryResponse, status_code=201)
def create_waitlist_entry(payload: WaitlistEntryCreate, session: Session = Depends(get_session)):
    try:
        return waitlist_service.create_entry(
            session,
            tournament_id=payload.tournament_id,
            user_id=payload.user_id,
            email=payload.email,
            first_name=payload.first_name,
            last_name=payload.last_name,
        )
    except BillingError as e:
        raise http_error(e)


@router.get("/waitlist", response_model=List[WaitlistEntryResponse])
def list_waitlist_entries(
    tournament_id: Optional[int] = None,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    session: Session = Depends(get_session),
):
    try:
        return waitlist_service.list_entries(session, tournament_id=tournament_id, status=status, user_id=user_id)
    except BillingError as e:
        raise http_error(e)


@router.get("/waitlist/counts", response_model=List[WaitlistCount])
def get_waitlist_counts(session: Session = Depends(get_session)):
    """Waiting entries per tournament."""
    return waitlist_service.waitlist_counts(session)


@router.get("/waitlist/duplicates", response_model=DuplicateReportResponse)
def verify_duplicates(tournament_id: Optional[int] = None, session: Session = Depends(get_session)):
    """Open waitlist entries whose user already holds a paid registration for the tournament."""
    report = waitlist_service.find_duplicate_registrations(session, tournament_id=tournament_id)
    return DuplicateReportResponse(
        total_waitlist_checked=report.total_waitlist_checked,
        total_duplicates=len(report.duplicates),
        duplicates=[
            DuplicateResponse(
                entry=WaitlistEntryResponse.model_validate(d.entry),
                registration_id=d.registration_id,
                payment_status=d.payment_status,
                registered_at=d.registered_at,
            )
            for d in report.duplicates
        ],
    )


@router.get("/waitlist/{entry_id}", response_model=WaitlistEntryResponse)
def get_waitlist_entry(entry_id: int, session: Session = Depends(get_session)):
    try:
        return waitlist_service.get_entry_or_raise(session, entry_id)
    except BillingError as e:
        raise http_error(e)


@router.patch("/waitlist/{entry_id}", response_model=WaitlistEntryResponse)
def update_waitlist_entry(entry_id: int, payload: WaitlistEntryUpdate, session: Session = Depends(get_session)):
    """Direct position/status update. Promotion is rejected here; use /waitlist/promote."""
    if payload.position is None and payload.status is None:
        raise HTTPException(status_code=422, detail="Nothing to update")
    try:
        return waitlist_service.update_entry(session, entry_id, position=payload.position, status=payload.status)
    except BillingError as e:
        raise http_error(e)


@router.delete("/waitlist/{entry_id}", status_code=204)
def delete_waitlist_entry(entry_id: int, session: Session = Depends(get_session)):
    try:
        waitlist_service.delete_entry(session, entry_id)
    except BillingError as e:
        raise http_error(e)
    return Response(status_code=204)


@router.post("/waitlist/{entry_id}/confirm-duplicate", response_model=WaitlistEntryResponse)
def confirm_duplicate_entry(entry_id: int, session: Session = Depends(get_session)):
    """Confirm an entry whose user already paid for the seat, without invoicing."""
    try:
        return waitlist_service.confirm_duplicate(session, entry_id)
    except BillingError as e:
        raise http_error(e)


# ---------------------------------------------------------------------------
# Promotion
# ---------------------------------------------------------------------------


@router.post("/waitlist/promote", response_model=PromoteResponse)
def promote_waitlist_entry(payload: PromoteRequest, response: Response, session: Session = Depends(get_session)):
    """
    Two-phase promotion.

    With bypass_capacity=false a full tournament yields needs_confirmation=true
    and the exact counts, without changing anything. Re-send with
    bypass_capacity=true to raise the cap by one and promote.
    """
    outcome = promote_entry(session, payload.waitlist_entry_id, bypass_capacity=payload.bypass_capacity)

    if isinstance(outcome, PromotionFailure):
        response.status_code = status_for_kind(outcome.error_kind)
        return PromoteResponse(success=False, error=outcome.error, error_kind=outcome.error_kind)

    if isinstance(outcome, NeedsConfirmation):
        return PromoteResponse(
            success=False,
            needs_confirmation=True,
            current_participants=outcome.current_participants,
            max_participants=outcome.max_participants,
            reserved_participants=outcome.reserved_participants,
        )

    entry = waitlist_service.get_entry_or_raise(session, outcome.entry_id)
    session.refresh(entry)
    return PromoteResponse(
        success=True,
        bypassed=outcome.bypassed,
        current_participants=outcome.current_participants,
        max_participants=outcome.max_participants,
        reserved_participants=outcome.reserved_participants,
        entry=WaitlistEntryResponse.model_validate(entry),
    )


@router.post("/waitlist/bulk-status", response_model=BulkStatusResponse)
def bulk_update_waitlist_status(payload: BulkStatusRequest, session: Session = Depends(get_session)):
    """Apply one status to many entries; failures are reported per entry."""
    try:
        waitlist_service.parse_status(payload.status)
    except BillingError as e:
        raise http_error(e)

    result = waitlist_service.bulk_update_status(session, payload.waitlist_entry_ids, payload.status)
    return BulkStatusResponse(
        status=result.status,
        succeeded=result.succeeded,
        failed=[BulkFailure(id=f.id, reason=f.reason, detail=f.detail) for f in result.failed],
    )
