from pathlib import Path
from typing import Generator

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from waitlist_billing.config import get_settings

DATABASE_URL = get_settings().database_url

_is_sqlite = DATABASE_URL.startswith("sqlite")
_connect_args = {"check_same_thread": False} if _is_sqlite else {}

if _is_sqlite and ":memory:" not in DATABASE_URL:
    db_path = DATABASE_URL.replace("sqlite:///", "", 1)
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

engine: Engine = create_engine(
    DATABASE_URL,
    echo=get_settings().sql_echo,
    connect_args=_connect_args,
)


def get_session() -> Generator[Session, None, None]:
    """Get database session"""
    with Session(engine) as session:
        yield session


def import_models() -> None:
    """Import all models so they're registered with SQLModel metadata"""
    from waitlist_billing.models.activity import Activity  # noqa: F401
    from waitlist_billing.models.checkout_reservation import CheckoutReservation  # noqa: F401
    from waitlist_billing.models.combined_invoice import CombinedInvoice, CombinedInvoiceItem  # noqa: F401
    from waitlist_billing.models.order import Order, OrderItem  # noqa: F401
    from waitlist_billing.models.profile import Profile  # noqa: F401
    from waitlist_billing.models.registration import (  # noqa: F401
        ActivityRegistration,
        EventRegistration,
        SpecialEventRegistration,
        TournamentRegistration,
    )
    from waitlist_billing.models.site_setting import SiteSetting  # noqa: F401
    from waitlist_billing.models.special_event import SpecialEvent  # noqa: F401
    from waitlist_billing.models.tournament import Tournament  # noqa: F401
    from waitlist_billing.models.waitlist_entry import WaitlistEntry  # noqa: F401
    from waitlist_billing.models.waitlist_invoice import WaitlistInvoice  # noqa: F401


def init_db() -> None:
    """Initialize database - create all tables"""
    import_models()
    SQLModel.metadata.create_all(engine)
