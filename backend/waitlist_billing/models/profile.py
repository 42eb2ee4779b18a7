from typing import Optional

from sqlmodel import Field, SQLModel


class Profile(SQLModel, table=True):
    """User profile as mirrored from the identity provider."""

    id: Optional[int] = Field(default=None, primary_key=True)
    email: Optional[str] = Field(default=None, index=True)
    first_name: Optional[str] = Field(default=None)
    last_name: Optional[str] = Field(default=None)
    stripe_customer_id: Optional[str] = Field(default=None, index=True)

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or "Unknown"
