"""Finding values produced by the audit and reconciliation jobs (never persisted)."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FindingKind(str, Enum):
    missing_registration = "missing_registration"
    orphaned_registration = "orphaned_registration"
    missing_addon_link = "missing_addon_link"
    no_external_data = "no_external_data"
    # discovery report
    unmatched_purchase = "unmatched_purchase"
    session_without_order = "session_without_order"
    missing_in_database = "missing_in_database"
    missing_in_processor = "missing_in_processor"
    quantity_mismatch = "quantity_mismatch"
    amount_mismatch = "amount_mismatch"


@dataclass
class ReconciliationFinding:
    kind: FindingKind
    user_id: int
    detail: str
    amount: Optional[int] = None
    order_id: Optional[int] = None
    order_number: Optional[str] = None
    order_item_id: Optional[int] = None
    registration_kind: Optional[str] = None
    registration_id: Optional[int] = None
