from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from waitlist_billing.models.waitlist_entry import WaitlistEntry


class Tournament(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    max_participants: int = Field(default=0)
    current_participants: int = Field(default=0)
    # Bumped on every capacity mutation; promotions compare-and-swap on it
    capacity_version: int = Field(default=0)

    # Fees in cents
    registration_fee: int = Field(default=0)
    early_bird_price: Optional[int] = Field(default=None)
    early_bird_start_date: Optional[datetime] = Field(default=None)
    early_bird_end_date: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column_kwargs={"onupdate": datetime.utcnow})

    # Relationships
    waitlist_entries: List["WaitlistEntry"] = Relationship(back_populates="tournament")
