from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from waitlist_billing.models.tournament import Tournament


class WaitlistStatus(str, Enum):
    waiting = "waiting"
    promoted = "promoted"
    invoiced = "invoiced"
    confirmed = "confirmed"
    cancelled = "cancelled"
    expired = "expired"


TERMINAL_STATUSES = frozenset({WaitlistStatus.confirmed, WaitlistStatus.cancelled, WaitlistStatus.expired})

# Statuses in which the entry occupies a tournament seat
SEAT_HOLDING_STATUSES = frozenset({WaitlistStatus.promoted, WaitlistStatus.invoiced})


class WaitlistEntry(SQLModel, table=True):
    __tablename__ = "tournament_waitlist"

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    user_id: int = Field(foreign_key="profile.id", index=True)
    position: int  # 1-based, dense among waiting entries of a tournament
    status: str = Field(default=WaitlistStatus.waiting.value, index=True)  # see WaitlistStatus

    # Contact details captured at join time
    email: str
    first_name: str = Field(default="")
    last_name: str = Field(default="")

    joined_at: datetime = Field(default_factory=datetime.utcnow)
    promoted_at: Optional[datetime] = Field(default=None)
    invoice_sent_at: Optional[datetime] = Field(default=None)
    confirmed_at: Optional[datetime] = Field(default=None)

    # Back-reference only; set when billed through a combined invoice
    combined_invoice_id: Optional[int] = Field(default=None, foreign_key="combined_invoice.id", index=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    tournament: "Tournament" = Relationship(back_populates="waitlist_entries")

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()
