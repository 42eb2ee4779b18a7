"""Individually billed waitlist invoice (one per promoted entry)."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

INVOICE_STATUSES = ("pending", "paid", "void", "expired")


class WaitlistInvoice(SQLModel, table=True):
    __tablename__ = "waitlist_invoice"

    id: Optional[int] = Field(default=None, primary_key=True)
    # unique: an entry is billed individually at most once
    waitlist_entry_id: int = Field(foreign_key="tournament_waitlist.id", unique=True, index=True)
    user_id: int = Field(foreign_key="profile.id", index=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)

    stripe_invoice_id: str = Field(index=True)
    stripe_customer_id: Optional[str] = Field(default=None)
    hosted_invoice_url: Optional[str] = Field(default=None)

    # Amounts in cents
    tournament_fee: int
    event_registration_fee: int = Field(default=0)
    total_amount: int
    includes_event_registration: bool = Field(default=False)

    status: str = Field(default="pending")  # pending|paid|void|expired (set by processor webhooks)
    due_date: datetime
    sent_at: datetime = Field(default_factory=datetime.utcnow)
    created_at: datetime = Field(default_factory=datetime.utcnow)
