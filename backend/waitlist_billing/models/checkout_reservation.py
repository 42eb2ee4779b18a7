from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class CheckoutReservation(SQLModel, table=True):
    """Seats held by an in-flight checkout session (written by the checkout flow)."""

    __tablename__ = "checkout_reservation"

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    user_id: Optional[int] = Field(default=None, foreign_key="profile.id")
    stripe_session_id: Optional[str] = Field(default=None)
    quantity: int = Field(default=1)
    expires_at: datetime
    released_at: Optional[datetime] = Field(default=None)  # set when checkout completes or is abandoned
    created_at: datetime = Field(default_factory=datetime.utcnow)
