"""
Canonical registration tables, one per registration kind.

Written by the checkout flow; this service only reads them.
"""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

# Registration rows in these states no longer back a purchase
DEAD_REGISTRATION_STATUSES = frozenset({"cancelled", "refunded"})


class TournamentRegistration(SQLModel, table=True):
    __tablename__ = "tournament_registration"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="profile.id", index=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    order_id: Optional[int] = Field(default=None, foreign_key="orders.id")
    payment_status: str = Field(default="pending")  # pending|paid|refunded|cancelled
    registered_at: datetime = Field(default_factory=datetime.utcnow)


class ActivityRegistration(SQLModel, table=True):
    __tablename__ = "activity_registration"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="profile.id", index=True)
    activity_id: int = Field(foreign_key="activity.id", index=True)
    order_id: Optional[int] = Field(default=None, foreign_key="orders.id")
    payment_status: str = Field(default="pending")  # pending|paid|refunded|cancelled
    registered_at: datetime = Field(default_factory=datetime.utcnow)


class EventRegistration(SQLModel, table=True):
    """Yearly event (supporter/spectator) registration."""

    __tablename__ = "event_registration"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="profile.id", index=True)
    event_year: int = Field(index=True)
    payment_status: str = Field(default="pending")  # pending|completed|failed|refunded
    created_at: datetime = Field(default_factory=datetime.utcnow)


class SpecialEventRegistration(SQLModel, table=True):
    __tablename__ = "special_event_registration"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="profile.id", index=True)
    event_id: int = Field(foreign_key="special_event.id", index=True)
    order_id: Optional[int] = Field(default=None, foreign_key="orders.id")
    payment_status: str = Field(default="pending")  # pending|paid|refunded|cancelled
    registered_at: datetime = Field(default_factory=datetime.utcnow)
