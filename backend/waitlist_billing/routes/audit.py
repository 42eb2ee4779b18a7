"""Registration-link audit route (read-only)."""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session

from waitlist_billing.database import get_session
from waitlist_billing.routes.deps import require_admin
from waitlist_billing.services.registration_auditor import audit_registration_links

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


class FindingResponse(BaseModel):
    kind: str
    user_id: int
    detail: str
    amount: Optional[int] = None
    order_id: Optional[int] = None
    order_number: Optional[str] = None
    order_item_id: Optional[int] = None
    registration_kind: Optional[str] = None
    registration_id: Optional[int] = None


class UserAuditResponse(BaseModel):
    user_id: int
    email: Optional[str] = None
    name: str
    order_item_count: int
    registration_counts: Dict[str, int]
    addon_count: int
    issue_count: int
    has_issues: bool
    issues: List[FindingResponse]


class AuditSummaryResponse(BaseModel):
    total_users_checked: int
    total_users_with_issues: int
    total_order_items: int
    total_registrations_by_kind: Dict[str, int]
    total_addon_purchases: int
    total_registrations: int
    total_missing_registrations: int
    total_orphaned_registrations: int
    total_missing_addon_links: int


class AuditResponse(BaseModel):
    summary: AuditSummaryResponse
    users: List[UserAuditResponse]


@router.get("/audit/registration-links", response_model=AuditResponse)
def get_registration_link_audit(user_id: Optional[int] = None, session: Session = Depends(get_session)):
    """Missing, orphaned and addon-link findings for paid orders, grouped per user."""
    report = audit_registration_links(session, user_id=user_id)
    return AuditResponse(
        summary=AuditSummaryResponse(**vars(report.summary)),
        users=[
            UserAuditResponse(
                user_id=u.user_id,
                email=u.email,
                name=u.name,
                order_item_count=u.order_item_count,
                registration_counts=u.registration_counts,
                addon_count=u.addon_count,
                issue_count=len(u.issues),
                has_issues=u.has_issues,
                issues=[FindingResponse(**{**vars(f), "kind": f.kind.value}) for f in u.issues],
            )
            for u in report.users
        ],
    )
