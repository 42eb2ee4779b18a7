"""
Capacity Arbiter: the only writer of a tournament's participant counters.

Promotion protocol (waiting -> promoted):

1. Probe (bypass_capacity=False): if current + reserved < max, the promotion
   commits and the promoted entry takes one seat (current += 1). Otherwise
   NeedsConfirmation is returned with the exact counts and nothing is written.
2. Confirm (bypass_capacity=True): when still full, max is raised by exactly
   one, then the promotion commits as above.

Counters are updated with a compare-and-swap on ``Tournament.capacity_version``
so two concurrent promotions can never both take the last seat. A lost race is
retried from a fresh read; store failures are reported, never retried.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from waitlist_billing.config import Settings, get_settings
from waitlist_billing.errors import (
    CapacityCheckFailed,
    CapacityUnknown,
    EntryNotFound,
    InvalidStateForPromotion,
)
from waitlist_billing.models.checkout_reservation import CheckoutReservation
from waitlist_billing.models.tournament import Tournament
from waitlist_billing.models.waitlist_entry import WaitlistEntry, WaitlistStatus
from waitlist_billing.services.pricing import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CapacitySnapshot:
    tournament_id: int
    current_participants: int
    max_participants: int
    reserved_participants: int
    version: int

    @property
    def has_room(self) -> bool:
        return self.current_participants + self.reserved_participants < self.max_participants


@dataclass
class PromotionSuccess:
    entry_id: int
    tournament_id: int
    promoted_at: datetime
    bypassed: bool
    current_participants: int
    max_participants: int
    reserved_participants: int
    success: bool = True
    needs_confirmation: bool = False


@dataclass
class NeedsConfirmation:
    """Tournament is full; caller must re-invoke with bypass_capacity=True."""

    entry_id: int
    tournament_id: int
    current_participants: int
    max_participants: int
    reserved_participants: int
    success: bool = False
    needs_confirmation: bool = True


@dataclass
class PromotionFailure:
    entry_id: int
    error_kind: str
    error: str
    success: bool = False
    needs_confirmation: bool = False


PromotionOutcome = Union[PromotionSuccess, NeedsConfirmation, PromotionFailure]


def count_reserved_participants(session: Session, tournament_id: int, now: datetime) -> int:
    """Seats held by unexpired, unreleased checkout sessions."""
    total = session.exec(
        select(func.coalesce(func.sum(CheckoutReservation.quantity), 0)).where(
            CheckoutReservation.tournament_id == tournament_id,
            CheckoutReservation.released_at.is_(None),  # type: ignore
            CheckoutReservation.expires_at > now,
        )
    ).one()
    return int(total or 0)


def read_capacity(session: Session, tournament_id: int, now: Optional[datetime] = None) -> CapacitySnapshot:
    """Current counters for a tournament. Raises CapacityUnknown if it cannot be read."""
    now = now or utcnow()
    row = session.exec(
        select(
            Tournament.current_participants,
            Tournament.max_participants,
            Tournament.capacity_version,
        ).where(Tournament.id == tournament_id)
    ).first()
    if row is None:
        raise CapacityUnknown(f"Tournament {tournament_id} not found")
    current, maximum, version = row
    return CapacitySnapshot(
        tournament_id=tournament_id,
        current_participants=current or 0,
        max_participants=maximum or 0,
        reserved_participants=count_reserved_participants(session, tournament_id, now),
        version=version or 0,
    )


def _failure(entry_id: int, exc: Exception, kind: str) -> PromotionFailure:
    return PromotionFailure(entry_id=entry_id, error_kind=kind, error=str(exc))


def promote_entry(
    session: Session,
    entry_id: int,
    bypass_capacity: bool = False,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> PromotionOutcome:
    """
    Run the promotion protocol for one waitlist entry.

    Returns:
        PromotionSuccess: entry is promoted and holds a seat
        NeedsConfirmation: tournament full, nothing written
        PromotionFailure: EntryNotFound | InvalidStateForPromotion | CapacityUnknown | CapacityCheckFailed
    """
    from waitlist_billing.services.waitlist_service import compact_waiting_positions

    settings = settings or get_settings()
    now = now or utcnow()

    try:
        entry = session.get(WaitlistEntry, entry_id)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Promotion of entry {entry_id}: entry read failed: {exc}")
        return _failure(entry_id, CapacityCheckFailed(str(exc)), CapacityCheckFailed.kind)

    if entry is None:
        return _failure(entry_id, EntryNotFound(f"Waitlist entry {entry_id} not found"), EntryNotFound.kind)
    if entry.status != WaitlistStatus.waiting:
        exc = InvalidStateForPromotion(f"Entry status is '{entry.status}', must be 'waiting'")
        return _failure(entry_id, exc, exc.kind)

    tournament_id = entry.tournament_id

    for attempt in range(1, settings.capacity_max_retries + 1):
        try:
            snapshot = read_capacity(session, tournament_id, now)
        except CapacityUnknown as exc:
            return _failure(entry_id, exc, exc.kind)
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(f"Promotion of entry {entry_id}: capacity read failed: {exc}")
            return _failure(entry_id, CapacityCheckFailed(str(exc)), CapacityCheckFailed.kind)

        bypassed = False
        new_max = snapshot.max_participants
        if not snapshot.has_room:
            if not bypass_capacity:
                logger.info(
                    f"Promotion of entry {entry_id} needs confirmation: "
                    f"{snapshot.current_participants}+{snapshot.reserved_participants}/{snapshot.max_participants}"
                )
                return NeedsConfirmation(
                    entry_id=entry_id,
                    tournament_id=tournament_id,
                    current_participants=snapshot.current_participants,
                    max_participants=snapshot.max_participants,
                    reserved_participants=snapshot.reserved_participants,
                )
            new_max = snapshot.max_participants + 1
            bypassed = True

        new_current = snapshot.current_participants + 1

        try:
            swapped = session.exec(  # type: ignore
                update(Tournament)
                .where(
                    Tournament.id == tournament_id,
                    Tournament.capacity_version == snapshot.version,
                )
                .values(
                    current_participants=new_current,
                    max_participants=new_max,
                    capacity_version=snapshot.version + 1,
                    updated_at=now,
                )
            )
            if swapped.rowcount != 1:
                session.rollback()
                logger.warning(
                    f"Promotion of entry {entry_id}: capacity changed concurrently "
                    f"(attempt {attempt}/{settings.capacity_max_retries}), re-reading"
                )
                continue

            moved = session.exec(  # type: ignore
                update(WaitlistEntry)
                .where(
                    WaitlistEntry.id == entry_id,
                    WaitlistEntry.status == WaitlistStatus.waiting.value,
                )
                .values(
                    status=WaitlistStatus.promoted.value,
                    promoted_at=now,
                    updated_at=now,
                )
            )
            if moved.rowcount != 1:
                session.rollback()
                exc = InvalidStateForPromotion(f"Entry {entry_id} left 'waiting' during promotion")
                return _failure(entry_id, exc, exc.kind)

            compact_waiting_positions(session, tournament_id)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(f"Promotion of entry {entry_id}: capacity write failed: {exc}")
            return _failure(entry_id, CapacityCheckFailed(str(exc)), CapacityCheckFailed.kind)

        if bypassed:
            logger.info(
                f"Capacity bypass for tournament {tournament_id}: max {snapshot.max_participants} -> {new_max} "
                f"to promote entry {entry_id}"
            )
        logger.info(
            f"Promoted waitlist entry {entry_id} (tournament {tournament_id}): "
            f"{new_current}/{new_max}, reserved {snapshot.reserved_participants}"
        )
        return PromotionSuccess(
            entry_id=entry_id,
            tournament_id=tournament_id,
            promoted_at=now,
            bypassed=bypassed,
            current_participants=new_current,
            max_participants=new_max,
            reserved_participants=snapshot.reserved_participants,
        )

    exc = CapacityCheckFailed(
        f"Capacity for tournament {tournament_id} kept changing; gave up after {settings.capacity_max_retries} attempts"
    )
    return _failure(entry_id, exc, exc.kind)


def release_seat(session: Session, tournament_id: int, now: Optional[datetime] = None) -> bool:
    """
    Give back one seat held by a promoted/invoiced entry.

    Single atomic decrement; does not commit so it joins the caller's transaction.
    Returns False when the counter was already zero.
    """
    now = now or utcnow()
    result = session.exec(  # type: ignore
        update(Tournament)
        .where(Tournament.id == tournament_id, Tournament.current_participants > 0)
        .values(
            current_participants=Tournament.current_participants - 1,
            capacity_version=Tournament.capacity_version + 1,
            updated_at=now,
        )
    )
    released = result.rowcount == 1
    if not released:
        logger.warning(f"Seat release for tournament {tournament_id} skipped: current_participants already 0")
    return released
