from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SiteSetting(SQLModel, table=True):
    """Key/value site configuration edited from the admin dashboard."""

    __tablename__ = "site_setting"

    id: Optional[int] = Field(default=None, primary_key=True)
    setting_key: str = Field(unique=True, index=True)
    setting_value: Optional[str] = Field(default=None)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
