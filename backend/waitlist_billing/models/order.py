"""
Order ledger (written by checkout, read here).

OrderItem stores its registration reference in four nullable columns plus
addon_id. ``OrderItem.links`` exposes them as ``RegistrationLink(kind, id)``
values so callers never branch on column names.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from sqlmodel import Field, SQLModel


class LinkKind(str, Enum):
    tournament = "tournament"
    activity = "activity"
    event_registration = "event_registration"
    special_event = "special_event"
    addon = "addon"


# Storage column carrying the foreign key for each kind
LINK_COLUMNS: Dict[LinkKind, str] = {
    LinkKind.tournament: "tournament_registration_id",
    LinkKind.activity: "activity_registration_id",
    LinkKind.event_registration: "event_registration_id",
    LinkKind.special_event: "special_event_registration_id",
    LinkKind.addon: "addon_id",
}


@dataclass(frozen=True)
class RegistrationLink:
    kind: LinkKind
    id: int


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="profile.id", index=True)
    order_number: str = Field(index=True)
    total: int = Field(default=0)  # cents, before discounts
    payment_status: str = Field(default="pending")  # pending|paid|failed|refunded
    stripe_session_id: Optional[str] = Field(default=None)
    stripe_payment_intent_id: Optional[str] = Field(default=None)
    stripe_customer_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_item"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True)
    item_name: str
    item_type: Optional[str] = Field(default=None)  # free text: "tournament", "activity", "supporter", ...
    item_id: Optional[int] = Field(default=None)
    quantity: int = Field(default=1)
    unit_price: int = Field(default=0)
    total: int = Field(default=0)
    discount_amount: int = Field(default=0)

    tournament_registration_id: Optional[int] = Field(default=None)
    activity_registration_id: Optional[int] = Field(default=None)
    event_registration_id: Optional[int] = Field(default=None)
    special_event_registration_id: Optional[int] = Field(default=None)
    addon_id: Optional[int] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow)

    def link_for(self, kind: LinkKind) -> Optional[RegistrationLink]:
        value = getattr(self, LINK_COLUMNS[kind])
        if value is None:
            return None
        return RegistrationLink(kind=kind, id=value)

    @property
    def links(self) -> List[RegistrationLink]:
        return [link for link in (self.link_for(kind) for kind in LinkKind) if link is not None]
