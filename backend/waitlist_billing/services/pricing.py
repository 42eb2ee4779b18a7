"""
Pricing resolver.

A fee has a regular amount and an optional early-bird amount valid inside a
closed window [start, end]. Tournament fees and the global event-registration
fee each carry their own window.

All amounts are integer cents.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Session, select

from waitlist_billing.config import Settings, get_settings
from waitlist_billing.models.registration import EventRegistration
from waitlist_billing.models.site_setting import SiteSetting
from waitlist_billing.models.tournament import Tournament

# Site settings keys for the event-registration fee
EVENT_FEE_KEYS = (
    "supporter_entry_fee",
    "event_registration_fee",
    "event_registration_early_bird_fee",
    "event_registration_early_bird_start_date",
    "event_registration_early_bird_end_date",
)


@dataclass
class ResolvedFee:
    amount: int
    regular_amount: int
    is_early_bird: bool


@dataclass
class EventFeeQuote:
    """Event-registration fee owed by one user (0 when already registered)."""

    amount: int
    owed: bool
    fee: ResolvedFee


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.utcnow()


def is_early_bird_active(
    early_bird_start: Optional[datetime],
    early_bird_end: Optional[datetime],
    now: datetime,
) -> bool:
    """True when now falls inside [start, end]. A missing bound disables the window."""
    if early_bird_start is None or early_bird_end is None:
        return False
    now = _as_naive_utc(now)
    return _as_naive_utc(early_bird_start) <= now <= _as_naive_utc(early_bird_end)


def active_fee(
    fee: int,
    early_bird_fee: Optional[int],
    early_bird_start: Optional[datetime],
    early_bird_end: Optional[datetime],
    now: datetime,
) -> int:
    """Early-bird fee if set and now is inside its window, else the regular fee."""
    return resolve_fee(fee, early_bird_fee, early_bird_start, early_bird_end, now).amount


def resolve_fee(
    fee: int,
    early_bird_fee: Optional[int],
    early_bird_start: Optional[datetime],
    early_bird_end: Optional[datetime],
    now: datetime,
) -> ResolvedFee:
    if early_bird_fee is not None and is_early_bird_active(early_bird_start, early_bird_end, now):
        return ResolvedFee(amount=early_bird_fee, regular_amount=fee, is_early_bird=True)
    return ResolvedFee(amount=fee, regular_amount=fee, is_early_bird=False)


def resolve_tournament_fee(tournament: Tournament, now: datetime) -> ResolvedFee:
    return resolve_fee(
        tournament.registration_fee or 0,
        tournament.early_bird_price,
        tournament.early_bird_start_date,
        tournament.early_bird_end_date,
        now,
    )


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None or not str(value).strip():
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None or not str(value).strip():
        return None
    raw = str(value).strip().replace("Z", "+00:00")
    try:
        return _as_naive_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


def resolve_event_registration_fee(
    session: Session, now: datetime, settings: Optional[Settings] = None
) -> ResolvedFee:
    """Global event-registration fee from site settings, with its own early-bird window."""
    settings = settings or get_settings()
    rows = session.exec(select(SiteSetting).where(SiteSetting.setting_key.in_(EVENT_FEE_KEYS))).all()  # type: ignore
    values = {row.setting_key: row.setting_value for row in rows}

    regular = _parse_int(values.get("supporter_entry_fee"))
    if regular is None:
        regular = _parse_int(values.get("event_registration_fee"))
    if regular is None:
        regular = settings.default_event_registration_fee

    early_bird_end = _parse_datetime(values.get("event_registration_early_bird_end_date"))
    early_bird_start = _parse_datetime(values.get("event_registration_early_bird_start_date"))
    if early_bird_start is None and early_bird_end is not None:
        # Window configured by end date only: open from the beginning
        early_bird_start = datetime.min

    return resolve_fee(
        regular,
        _parse_int(values.get("event_registration_early_bird_fee")),
        early_bird_start,
        early_bird_end,
        now,
    )


def has_completed_event_registration(session: Session, user_id: int, event_year: int) -> bool:
    existing = session.exec(
        select(EventRegistration.id).where(
            EventRegistration.user_id == user_id,
            EventRegistration.event_year == event_year,
            EventRegistration.payment_status == "completed",
        )
    ).first()
    return existing is not None


def quote_event_registration_fee(
    session: Session, user_id: int, now: datetime, settings: Optional[Settings] = None
) -> EventFeeQuote:
    """Event fee the user still owes for the configured year."""
    settings = settings or get_settings()
    fee = resolve_event_registration_fee(session, now, settings)
    if has_completed_event_registration(session, user_id, settings.event_registration_year):
        return EventFeeQuote(amount=0, owed=False, fee=fee)
    return EventFeeQuote(amount=fee.amount, owed=fee.amount > 0, fee=fee)
