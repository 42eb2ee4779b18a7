from typing import Optional

from sqlmodel import Field, SQLModel


class SpecialEvent(SQLModel, table=True):
    __tablename__ = "special_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    ticket_price: int = Field(default=0)
