"""
Error taxonomy for the billing engine.

Single-entity operations raise one of these; routes translate them to HTTP
responses. Batch operations catch them per item and report ``kind`` in their
failure partition instead of raising.
"""
from typing import Optional


class BillingError(Exception):
    """Base class. ``kind`` is the stable name surfaced to callers."""

    kind = "BillingError"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class NotFoundError(BillingError):
    kind = "NotFound"
    status_code = 404


class EntryNotFound(NotFoundError):
    kind = "EntryNotFound"


class TournamentNotFound(NotFoundError):
    kind = "TournamentNotFound"


class CapacityUnknown(NotFoundError):
    """Tournament capacity could not be read."""

    kind = "CapacityUnknown"


class InvalidStateError(BillingError):
    kind = "InvalidState"
    status_code = 409


class InvalidStateForPromotion(InvalidStateError):
    kind = "InvalidStateForPromotion"


class PromotionPathRequired(InvalidStateError):
    """waiting -> promoted attempted outside the Capacity Arbiter."""

    kind = "PromotionPathRequired"


class CapacityExceeded(BillingError):
    """Promotion blocked pending an explicit bypass decision."""

    kind = "CapacityExceeded"
    status_code = 409

    def __init__(self, current: int, maximum: int, reserved: int):
        super().__init__(
            f"Tournament is at capacity ({current} registered + {reserved} reserved of {maximum})"
        )
        self.current_participants = current
        self.max_participants = maximum
        self.reserved_participants = reserved


class CapacityCheckFailed(BillingError):
    """Capacity read/write failed. Never retried blind."""

    kind = "CapacityCheckFailed"
    status_code = 503


class ExternalServiceError(BillingError):
    kind = "ExternalServiceError"
    status_code = 502

    def __init__(self, message: str = "", resource_missing: bool = False, code: Optional[str] = None):
        super().__init__(message)
        self.resource_missing = resource_missing
        self.code = code


class AlreadyBilled(BillingError):
    kind = "AlreadyBilled"
    status_code = 409


class AlreadyInvoiced(AlreadyBilled):
    kind = "AlreadyInvoiced"


class ValidationFailed(BillingError):
    kind = "ValidationFailed"
    status_code = 422


class StoreError(BillingError):
    """Database read/write failed for one item of a batch."""

    kind = "StoreError"
    status_code = 503


PARTIAL_BATCH_FAILURE = "PartialBatchFailure"


def status_for_kind(kind: str) -> int:
    """HTTP status for an error kind string (used where only the kind survives)."""
    pending = [BillingError]
    while pending:
        cls = pending.pop()
        if cls.kind == kind:
            return cls.status_code
        pending.extend(cls.__subclasses__())
    return BillingError.status_code
