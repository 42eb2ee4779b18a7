"""
Waitlist state machine.

    waiting -> promoted -> invoiced -> confirmed
    any non-terminal -> cancelled | expired
    waiting | promoted -> confirmed   (user already holds a paid seat)

waiting -> promoted only happens through the Capacity Arbiter
(services.capacity_arbiter.promote_entry); promoted -> invoiced normally
through the Invoice Composer. Everything else is a direct update here.

Positions are 1..n, unique and dense among the waiting entries of a
tournament; they are re-sequenced whenever an entry joins, moves or leaves
the waiting state.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from waitlist_billing.errors import (
    BillingError,
    CapacityExceeded,
    CapacityUnknown,
    EntryNotFound,
    InvalidStateError,
    PromotionPathRequired,
    StoreError,
    ValidationFailed,
)
from waitlist_billing.models.profile import Profile
from waitlist_billing.models.registration import TournamentRegistration
from waitlist_billing.models.tournament import Tournament
from waitlist_billing.models.waitlist_entry import (
    SEAT_HOLDING_STATUSES,
    TERMINAL_STATUSES,
    WaitlistEntry,
    WaitlistStatus,
)
from waitlist_billing.services.batch import BatchResult
from waitlist_billing.services.pricing import utcnow

logger = logging.getLogger(__name__)

W = WaitlistStatus

ALLOWED_TRANSITIONS: Dict[WaitlistStatus, FrozenSet[WaitlistStatus]] = {
    W.waiting: frozenset({W.promoted, W.confirmed, W.cancelled, W.expired}),
    W.promoted: frozenset({W.invoiced, W.confirmed, W.cancelled, W.expired}),
    W.invoiced: frozenset({W.confirmed, W.cancelled, W.expired}),
    W.confirmed: frozenset(),
    W.cancelled: frozenset(),
    W.expired: frozenset(),
}


def parse_status(value: str) -> WaitlistStatus:
    try:
        return WaitlistStatus(value)
    except ValueError:
        raise ValidationFailed(f"Unknown waitlist status '{value}'")


def validate_transition(current: str, new: str) -> None:
    """Raise if current -> new is not a legal direct transition."""
    current_status = parse_status(current)
    new_status = parse_status(new)
    if current_status in TERMINAL_STATUSES:
        raise InvalidStateError(f"Entry is '{current_status.value}', which is terminal")
    if new_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidStateError(f"Cannot move entry from '{current_status.value}' to '{new_status.value}'")
    if current_status == W.waiting and new_status == W.promoted:
        raise PromotionPathRequired("Promotion must go through the capacity check (POST /api/waitlist/promote)")


def get_entry_or_raise(session: Session, entry_id: int) -> WaitlistEntry:
    entry = session.get(WaitlistEntry, entry_id)
    if not entry:
        raise EntryNotFound(f"Waitlist entry {entry_id} not found")
    return entry


def _waiting_entries(session: Session, tournament_id: int) -> List[WaitlistEntry]:
    return list(
        session.exec(
            select(WaitlistEntry)
            .where(
                WaitlistEntry.tournament_id == tournament_id,
                WaitlistEntry.status == W.waiting.value,
            )
            .order_by(WaitlistEntry.position, WaitlistEntry.id)
        ).all()
    )


def compact_waiting_positions(session: Session, tournament_id: int) -> None:
    """Renumber waiting entries 1..n keeping their relative order. Does not commit."""
    session.flush()
    for index, entry in enumerate(_waiting_entries(session, tournament_id), start=1):
        if entry.position != index:
            entry.position = index
            session.add(entry)
    session.flush()


def next_position(session: Session, tournament_id: int) -> int:
    highest = session.exec(
        select(func.max(WaitlistEntry.position)).where(
            WaitlistEntry.tournament_id == tournament_id,
            WaitlistEntry.status == W.waiting.value,
        )
    ).one()
    return (highest or 0) + 1


def create_entry(
    session: Session,
    tournament_id: int,
    user_id: int,
    email: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> WaitlistEntry:
    """Append a user to the end of a tournament's waitlist."""
    now = now or utcnow()
    if session.get(Tournament, tournament_id) is None:
        raise CapacityUnknown(f"Tournament {tournament_id} not found")

    profile = session.get(Profile, user_id)
    email = email or (profile.email if profile else None)
    if not email:
        raise ValidationFailed(f"No email known for user {user_id}")

    entry = WaitlistEntry(
        tournament_id=tournament_id,
        user_id=user_id,
        position=next_position(session, tournament_id),
        status=W.waiting.value,
        email=email,
        first_name=first_name if first_name is not None else (profile.first_name or "" if profile else ""),
        last_name=last_name if last_name is not None else (profile.last_name or "" if profile else ""),
        joined_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    logger.info(f"User {user_id} joined waitlist of tournament {tournament_id} at position {entry.position}")
    return entry


def move_entry(session: Session, entry: WaitlistEntry, new_position: int) -> None:
    """Place a waiting entry at new_position (clamped), shifting the others. Does not commit."""
    if entry.status != W.waiting:
        raise InvalidStateError(f"Only waiting entries have a queue position (entry is '{entry.status}')")
    if new_position < 1:
        raise ValidationFailed("position must be >= 1")

    others = [e for e in _waiting_entries(session, entry.tournament_id) if e.id != entry.id]
    index = min(new_position, len(others) + 1) - 1
    others.insert(index, entry)
    for position, e in enumerate(others, start=1):
        if e.position != position:
            e.position = position
            session.add(e)


def apply_status(session: Session, entry: WaitlistEntry, new_status: WaitlistStatus, now: datetime) -> None:
    """Set status and its one-time timestamp; release seats and re-sequence. Does not commit."""
    old_status = parse_status(entry.status)
    entry.status = new_status.value
    entry.updated_at = now

    if new_status == W.invoiced and entry.invoice_sent_at is None:
        entry.invoice_sent_at = now
    if new_status == W.confirmed and entry.confirmed_at is None:
        entry.confirmed_at = now

    if new_status in (W.cancelled, W.expired):
        # Only invoiced/confirmed entries may keep a combined-invoice back-reference
        entry.combined_invoice_id = None
        if old_status in SEAT_HOLDING_STATUSES:
            from waitlist_billing.services.capacity_arbiter import release_seat

            release_seat(session, entry.tournament_id, now)

    session.add(entry)
    if old_status == W.waiting:
        compact_waiting_positions(session, entry.tournament_id)


def update_entry(
    session: Session,
    entry_id: int,
    position: Optional[int] = None,
    status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> WaitlistEntry:
    """Direct position/status update for every transition except waiting -> promoted."""
    now = now or utcnow()
    entry = get_entry_or_raise(session, entry_id)

    # terminal entries reject every status write, including a repeat of their own
    if status is not None and (status != entry.status or parse_status(entry.status) in TERMINAL_STATUSES):
        validate_transition(entry.status, status)
        if position is not None:
            raise ValidationFailed("Change position and status in separate updates")
        apply_status(session, entry, parse_status(status), now)
    elif position is not None and position != entry.position:
        move_entry(session, entry, position)
        entry.updated_at = now
        session.add(entry)

    session.commit()
    session.refresh(entry)
    return entry


def delete_entry(session: Session, entry_id: int, now: Optional[datetime] = None) -> None:
    """Hard delete in any state (used to drop confirmed duplicates without billing)."""
    now = now or utcnow()
    entry = get_entry_or_raise(session, entry_id)
    tournament_id = entry.tournament_id
    status = parse_status(entry.status)

    if status in SEAT_HOLDING_STATUSES:
        from waitlist_billing.services.capacity_arbiter import release_seat

        release_seat(session, tournament_id, now)

    session.delete(entry)
    if status == W.waiting:
        compact_waiting_positions(session, tournament_id)
    session.commit()
    logger.info(f"Deleted waitlist entry {entry_id} (was '{status.value}') from tournament {tournament_id}")


def bulk_update_status(
    session: Session,
    entry_ids: List[int],
    status: str,
    now: Optional[datetime] = None,
) -> BatchResult:
    """
    Apply one status to many entries, one at a time.

    Each entry commits on its own; a failure is recorded and the loop moves on.
    Promotions go through the Capacity Arbiter without bypass: a full tournament
    is reported as CapacityExceeded for that entry.
    """
    from waitlist_billing.services.capacity_arbiter import NeedsConfirmation, PromotionFailure, promote_entry

    now = now or utcnow()
    result = BatchResult()
    target = parse_status(status)

    for entry_id in entry_ids:
        try:
            entry = get_entry_or_raise(session, entry_id)
            if target == W.promoted and entry.status == W.waiting:
                outcome = promote_entry(session, entry_id, bypass_capacity=False, now=now)
                if isinstance(outcome, NeedsConfirmation):
                    raise CapacityExceeded(
                        outcome.current_participants, outcome.max_participants, outcome.reserved_participants
                    )
                if isinstance(outcome, PromotionFailure):
                    result.fail(entry_id, outcome.error_kind, outcome.error)
                    continue
            else:
                update_entry(session, entry_id, status=target.value, now=now)
            result.ok(entry_id)
        except BillingError as exc:
            session.rollback()
            result.fail(entry_id, exc.kind, exc.message)
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(f"Bulk status '{target.value}': store failure on entry {entry_id}: {exc}")
            result.fail(entry_id, StoreError.kind, str(exc))

    logger.info(
        f"Bulk status '{target.value}': {len(result.succeeded)} succeeded, {len(result.failed)} failed"
    )
    return result


def list_entries(
    session: Session,
    tournament_id: Optional[int] = None,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
) -> List[WaitlistEntry]:
    query = select(WaitlistEntry)
    if tournament_id is not None:
        query = query.where(WaitlistEntry.tournament_id == tournament_id)
    if status is not None:
        query = query.where(WaitlistEntry.status == parse_status(status).value)
    if user_id is not None:
        query = query.where(WaitlistEntry.user_id == user_id)
    return list(session.exec(query.order_by(WaitlistEntry.tournament_id, WaitlistEntry.position, WaitlistEntry.id)).all())


def waitlist_counts(session: Session) -> List[Dict]:
    """Number of waiting entries per tournament (only tournaments that have some)."""
    rows = session.exec(
        select(Tournament.id, Tournament.name, func.count(WaitlistEntry.id))
        .join(WaitlistEntry, WaitlistEntry.tournament_id == Tournament.id)
        .where(WaitlistEntry.status == W.waiting.value)
        .group_by(Tournament.id, Tournament.name)
        .order_by(Tournament.name)
    ).all()
    return [{"tournament_id": tid, "tournament_name": name, "count": count} for tid, name, count in rows]


# ---------------------------------------------------------------------------
# Duplicate registrations
# ---------------------------------------------------------------------------


@dataclass
class DuplicateEntry:
    entry: WaitlistEntry
    registration_id: int
    payment_status: str
    registered_at: datetime


@dataclass
class DuplicateReport:
    total_waitlist_checked: int = 0
    duplicates: List[DuplicateEntry] = field(default_factory=list)


def _paid_registration(session: Session, user_id: int, tournament_id: int) -> Optional[TournamentRegistration]:
    return session.exec(
        select(TournamentRegistration)
        .where(
            TournamentRegistration.user_id == user_id,
            TournamentRegistration.tournament_id == tournament_id,
            TournamentRegistration.payment_status == "paid",
        )
        .order_by(TournamentRegistration.registered_at)
    ).first()


def find_duplicate_registrations(session: Session, tournament_id: Optional[int] = None) -> DuplicateReport:
    """Open waitlist entries whose user already holds a paid seat in the same tournament."""
    open_statuses = [W.waiting.value, W.promoted.value, W.invoiced.value]
    query = select(WaitlistEntry).where(WaitlistEntry.status.in_(open_statuses))  # type: ignore
    if tournament_id is not None:
        query = query.where(WaitlistEntry.tournament_id == tournament_id)
    entries = session.exec(query.order_by(WaitlistEntry.tournament_id, WaitlistEntry.position)).all()

    report = DuplicateReport(total_waitlist_checked=len(entries))
    for entry in entries:
        registration = _paid_registration(session, entry.user_id, entry.tournament_id)
        if registration is not None:
            report.duplicates.append(
                DuplicateEntry(
                    entry=entry,
                    registration_id=registration.id,
                    payment_status=registration.payment_status,
                    registered_at=registration.registered_at,
                )
            )
    return report


def confirm_duplicate(session: Session, entry_id: int, now: Optional[datetime] = None) -> WaitlistEntry:
    """
    waiting|promoted -> confirmed for a user who already paid for the seat.

    Skips invoicing. A promoted entry's seat is given back because the paid
    registration already counts toward current_participants.
    """
    now = now or utcnow()
    entry = get_entry_or_raise(session, entry_id)
    if entry.status not in (W.waiting, W.promoted):
        raise InvalidStateError(f"Only waiting or promoted entries can be confirmed as duplicates (entry is '{entry.status}')")
    if _paid_registration(session, entry.user_id, entry.tournament_id) is None:
        raise InvalidStateError(
            f"User {entry.user_id} has no paid registration for tournament {entry.tournament_id}"
        )

    was_promoted = entry.status == W.promoted
    apply_status(session, entry, W.confirmed, now)
    if was_promoted:
        from waitlist_billing.services.capacity_arbiter import release_seat

        release_seat(session, entry.tournament_id, now)
    session.commit()
    session.refresh(entry)
    logger.info(f"Confirmed waitlist entry {entry_id} as duplicate of a paid registration")
    return entry
