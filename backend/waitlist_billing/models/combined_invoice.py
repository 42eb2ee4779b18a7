"""Combined invoice: one processor invoice covering several entries of one payer."""

from datetime import datetime
from typing import List, Optional

from sqlmodel import Field, Relationship, SQLModel


class CombinedInvoice(SQLModel, table=True):
    __tablename__ = "combined_invoice"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="profile.id", index=True)

    stripe_invoice_id: str = Field(index=True)
    stripe_customer_id: Optional[str] = Field(default=None)
    hosted_invoice_url: Optional[str] = Field(default=None)

    # total_amount == sum(items.tournament_fee) + event_registration_fee
    event_registration_fee: int = Field(default=0)
    total_amount: int

    status: str = Field(default="pending")  # pending|paid|void|expired
    due_date: datetime
    notes: Optional[str] = Field(default=None)
    sent_at: datetime = Field(default_factory=datetime.utcnow)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    items: List["CombinedInvoiceItem"] = Relationship(back_populates="combined_invoice")


class CombinedInvoiceItem(SQLModel, table=True):
    __tablename__ = "combined_invoice_item"

    id: Optional[int] = Field(default=None, primary_key=True)
    combined_invoice_id: int = Field(foreign_key="combined_invoice.id", index=True)
    waitlist_entry_id: int = Field(foreign_key="tournament_waitlist.id", unique=True)
    tournament_id: int = Field(foreign_key="tournament.id")
    tournament_fee: int

    # Relationships
    combined_invoice: Optional["CombinedInvoice"] = Relationship(back_populates="items")
