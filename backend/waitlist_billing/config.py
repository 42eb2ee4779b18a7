"""
Runtime configuration.

Values come from environment variables (a local .env file is loaded first).
Money amounts are integer minor units (cents).
"""
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()

DEFAULT_TOURNAMENT_KEYWORDS = (
    "cutting",
    "sparring",
    "longsword",
    "sword",
    "rapier",
    "saber",
    "sabre",
    "tournament",
    "hema",
    "fencing",
    "dagger",
    "messer",
    "pole",
    "staff",
)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_keywords(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    if not raw.strip():
        return DEFAULT_TOURNAMENT_KEYWORDS
    return tuple(k.strip().lower() for k in raw.split(",") if k.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./waitlist_billing.db"
    sql_echo: bool = False

    stripe_secret_key: str = ""
    stripe_api_version: str = "2023-10-16"
    currency: str = "usd"

    invoice_due_days: int = 7
    event_registration_year: int = 2026
    default_event_registration_fee: int = 5000

    # Tax rate used only by the "payment intent no longer exists" heuristic
    reconcile_tax_rate: float = 0.083
    reconcile_tolerance: int = 1
    processor_max_workers: int = 5

    capacity_max_retries: int = 3

    tournament_keywords: Tuple[str, ...] = field(default=DEFAULT_TOURNAMENT_KEYWORDS)

    log_level: str = "INFO"


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./waitlist_billing.db"),
        sql_echo=_env_bool("SQL_ECHO"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_api_version=os.getenv("STRIPE_API_VERSION", "2023-10-16"),
        currency=os.getenv("BILLING_CURRENCY", "usd").lower(),
        invoice_due_days=int(os.getenv("INVOICE_DUE_DAYS", "7")),
        event_registration_year=int(os.getenv("EVENT_REGISTRATION_YEAR", "2026")),
        default_event_registration_fee=int(os.getenv("DEFAULT_EVENT_REGISTRATION_FEE", "5000")),
        reconcile_tax_rate=float(os.getenv("RECONCILE_TAX_RATE", "0.083")),
        reconcile_tolerance=int(os.getenv("RECONCILE_TOLERANCE", "1")),
        processor_max_workers=max(1, int(os.getenv("PROCESSOR_MAX_WORKERS", "5"))),
        capacity_max_retries=max(1, int(os.getenv("CAPACITY_MAX_RETRIES", "3"))),
        tournament_keywords=_env_keywords("TOURNAMENT_KEYWORDS"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings (cached after first read)."""
    return load_settings()
