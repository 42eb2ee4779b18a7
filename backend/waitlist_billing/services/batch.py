"""Partition result for bulk operations: successes plus (id, reason) failures."""
from dataclasses import dataclass, field
from typing import List

from waitlist_billing.errors import PARTIAL_BATCH_FAILURE


@dataclass
class BatchFailure:
    id: int
    reason: str  # error kind, e.g. "InvalidState"
    detail: str = ""


@dataclass
class BatchResult:
    succeeded: List[int] = field(default_factory=list)
    failed: List[BatchFailure] = field(default_factory=list)

    def ok(self, item_id: int) -> None:
        self.succeeded.append(item_id)

    def fail(self, item_id: int, reason: str, detail: str = "") -> None:
        self.failed.append(BatchFailure(id=item_id, reason=reason, detail=detail))

    @property
    def status(self) -> str:
        if not self.failed:
            return "ok"
        if not self.succeeded:
            return "failed"
        return PARTIAL_BATCH_FAILURE
