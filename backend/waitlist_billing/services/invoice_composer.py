"""
Invoice Composer.

Turns promoted waitlist entries into processor invoices.

Per-entry mode: one invoice per entry (tournament fee, plus the event
registration fee when the user still owes it), persisted as a
WaitlistInvoice row.

Combined mode: one invoice for several entries of the same payer, with the
event registration fee added at most once, persisted as a CombinedInvoice
with one CombinedInvoiceItem per entry.

In both modes the processor invoice is created first; entries are marked
invoiced only in the same commit that stores the invoice row.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from waitlist_billing.config import Settings, get_settings
from waitlist_billing.errors import (
    AlreadyInvoiced,
    BillingError,
    EntryNotFound,
    InvalidStateError,
    TournamentNotFound,
    ValidationFailed,
)
from waitlist_billing.models.combined_invoice import CombinedInvoice, CombinedInvoiceItem
from waitlist_billing.models.profile import Profile
from waitlist_billing.models.tournament import Tournament
from waitlist_billing.models.waitlist_entry import WaitlistEntry, WaitlistStatus
from waitlist_billing.models.waitlist_invoice import WaitlistInvoice
from waitlist_billing.services.pricing import (
    EventFeeQuote,
    ResolvedFee,
    quote_event_registration_fee,
    resolve_tournament_fee,
    utcnow,
)
from waitlist_billing.services.stripe_service import InvoiceLine, StripeService
from waitlist_billing.services.waitlist_service import apply_status, validate_transition

logger = logging.getLogger(__name__)

# Invoices that still count as "this fee has been billed"
OPEN_INVOICE_STATUSES = ("pending", "paid")


@dataclass
class EntryCharge:
    entry: WaitlistEntry
    tournament: Tournament
    fee: ResolvedFee


@dataclass
class InvoicePreview:
    """What an invoice for these entries would contain, computed without side effects."""

    user_id: int
    email: str
    name: str
    charges: List[EntryCharge]
    event_fee: EventFeeQuote

    @property
    def tournament_total(self) -> int:
        return sum(c.fee.amount for c in self.charges)

    @property
    def total_amount(self) -> int:
        return self.tournament_total + self.event_fee.amount


@dataclass
class InvoiceSendResult:
    waitlist_entry_id: int
    success: bool
    invoice_id: Optional[int] = None
    external_invoice_id: Optional[str] = None
    invoice_url: Optional[str] = None
    total_amount: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class InvoiceSendReport:
    results: List[InvoiceSendResult] = field(default_factory=list)

    @property
    def total_sent(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def total_failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


# ---------------------------------------------------------------------------
# Billing guards
# ---------------------------------------------------------------------------


def is_billed(session: Session, entry: WaitlistEntry) -> bool:
    if entry.combined_invoice_id is not None:
        return True
    existing = session.exec(
        select(WaitlistInvoice.id).where(WaitlistInvoice.waitlist_entry_id == entry.id)
    ).first()
    return existing is not None


def ensure_billable(session: Session, entry: WaitlistEntry) -> None:
    """Only promoted entries with no invoice of either kind can be billed."""
    if is_billed(session, entry) or entry.status in (WaitlistStatus.invoiced, WaitlistStatus.confirmed):
        raise AlreadyInvoiced(f"Waitlist entry {entry.id} has already been invoiced")
    if entry.status != WaitlistStatus.promoted:
        raise InvalidStateError(f"Only promoted entries can be invoiced (entry {entry.id} is '{entry.status}')")
    validate_transition(entry.status, WaitlistStatus.invoiced.value)


def event_fee_already_billed(session: Session, user_id: int) -> bool:
    """True when an open invoice for this user already carries the event registration fee."""
    single = session.exec(
        select(WaitlistInvoice.id).where(
            WaitlistInvoice.user_id == user_id,
            WaitlistInvoice.includes_event_registration == True,  # noqa: E712
            WaitlistInvoice.status.in_(OPEN_INVOICE_STATUSES),  # type: ignore
        )
    ).first()
    if single is not None:
        return True
    combined = session.exec(
        select(CombinedInvoice.id).where(
            CombinedInvoice.user_id == user_id,
            CombinedInvoice.event_registration_fee > 0,
            CombinedInvoice.status.in_(OPEN_INVOICE_STATUSES),  # type: ignore
        )
    ).first()
    return combined is not None


def quote_event_fee(session: Session, user_id: int, now: datetime, settings: Settings) -> EventFeeQuote:
    quote = quote_event_registration_fee(session, user_id, now, settings)
    if quote.owed and event_fee_already_billed(session, user_id):
        return EventFeeQuote(amount=0, owed=False, fee=quote.fee)
    return quote


def _charge_for(session: Session, entry: WaitlistEntry, now: datetime) -> EntryCharge:
    tournament = session.get(Tournament, entry.tournament_id)
    if tournament is None:
        raise TournamentNotFound(f"Tournament {entry.tournament_id} not found")
    return EntryCharge(entry=entry, tournament=tournament, fee=resolve_tournament_fee(tournament, now))


def _lines(preview: InvoicePreview, settings: Settings) -> List[InvoiceLine]:
    lines = [
        InvoiceLine(description=f"{c.tournament.name} - Tournament Registration", amount=c.fee.amount)
        for c in preview.charges
    ]
    if preview.event_fee.owed:
        lines.append(
            InvoiceLine(
                description=f"Event Registration {settings.event_registration_year} - Supporter Entry",
                amount=preview.event_fee.amount,
            )
        )
    return lines


# ---------------------------------------------------------------------------
# Payer lookup
# ---------------------------------------------------------------------------


def resolve_payer(session: Session, processor: StripeService, user_id: int, email: str, name: str) -> str:
    """
    Processor customer id for a user.

    Stored profile id first, then an email search, then a new customer.
    Whatever is found is stored back on the profile.
    """
    profile = session.get(Profile, user_id)
    if profile is not None and profile.stripe_customer_id:
        customer = processor.retrieve_customer(profile.stripe_customer_id)
        if customer is not None:
            return customer.id
        logger.warning(f"Stored processor customer {profile.stripe_customer_id} for user {user_id} no longer exists")

    customer = processor.find_customer_by_email(email)
    if customer is None:
        customer = processor.create_customer(
            email=email, name=name, metadata={"user_id": str(user_id), "source": "waitlist_invoice"}
        )

    if profile is not None and profile.stripe_customer_id != customer.id:
        profile.stripe_customer_id = customer.id
        session.add(profile)
        session.commit()
    return customer.id


# ---------------------------------------------------------------------------
# Previews
# ---------------------------------------------------------------------------


def preview_invoice(
    session: Session,
    entries: List[WaitlistEntry],
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> InvoicePreview:
    settings = settings or get_settings()
    now = now or utcnow()
    if not entries:
        raise ValidationFailed("No waitlist entries to invoice")
    first = entries[0]
    return InvoicePreview(
        user_id=first.user_id,
        email=first.email,
        name=first.full_name,
        charges=[_charge_for(session, e, now) for e in entries],
        event_fee=quote_event_fee(session, first.user_id, now, settings),
    )


def list_promoted_unbilled(
    session: Session,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> List[InvoicePreview]:
    """Promoted, not yet billed entries grouped per payer, each with an invoice preview."""
    query = select(WaitlistEntry).where(
        WaitlistEntry.status == WaitlistStatus.promoted.value,
        WaitlistEntry.combined_invoice_id.is_(None),  # type: ignore
    )
    if user_id is not None:
        query = query.where(WaitlistEntry.user_id == user_id)
    entries = session.exec(query.order_by(WaitlistEntry.user_id, WaitlistEntry.promoted_at)).all()

    by_user: Dict[int, List[WaitlistEntry]] = {}
    for entry in entries:
        if is_billed(session, entry):
            continue
        by_user.setdefault(entry.user_id, []).append(entry)

    return [preview_invoice(session, group, now, settings) for group in by_user.values()]


# ---------------------------------------------------------------------------
# Per-entry mode
# ---------------------------------------------------------------------------


def compose_entry_invoice(
    session: Session,
    processor: StripeService,
    entry_id: int,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> WaitlistInvoice:
    """Bill one promoted entry. Raises AlreadyInvoiced if it already has an invoice."""
    settings = settings or get_settings()
    now = now or utcnow()

    entry = session.get(WaitlistEntry, entry_id)
    if entry is None:
        raise EntryNotFound(f"Waitlist entry {entry_id} not found")
    ensure_billable(session, entry)

    preview = preview_invoice(session, [entry], now, settings)
    charge = preview.charges[0]
    customer_id = resolve_payer(session, processor, entry.user_id, entry.email, entry.full_name)

    invoice = processor.create_invoice(
        customer_id=customer_id,
        lines=_lines(preview, settings),
        due_days=settings.invoice_due_days,
        metadata={
            "waitlist_entry_id": str(entry.id),
            "tournament_id": str(entry.tournament_id),
            "user_id": str(entry.user_id),
        },
        description=f"Waitlist registration: {charge.tournament.name}",
    )

    row = WaitlistInvoice(
        waitlist_entry_id=entry.id,
        user_id=entry.user_id,
        tournament_id=entry.tournament_id,
        stripe_invoice_id=invoice.id,
        stripe_customer_id=customer_id,
        hosted_invoice_url=invoice.hosted_invoice_url,
        tournament_fee=charge.fee.amount,
        event_registration_fee=preview.event_fee.amount,
        total_amount=preview.total_amount,
        includes_event_registration=preview.event_fee.owed,
        status="pending",
        due_date=now + timedelta(days=settings.invoice_due_days),
        sent_at=now,
        created_at=now,
    )
    session.add(row)
    apply_status(session, entry, WaitlistStatus.invoiced, now)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.error(
            f"Entry {entry_id} was invoiced concurrently; processor invoice {invoice.id} is a duplicate and must be voided"
        )
        raise AlreadyInvoiced(f"Waitlist entry {entry_id} has already been invoiced")
    session.refresh(row)

    logger.info(
        f"Invoiced waitlist entry {entry_id}: processor invoice {invoice.id}, total {row.total_amount} "
        f"(tournament {row.tournament_fee}, event {row.event_registration_fee})"
    )
    return row


def send_entry_invoices(
    session: Session,
    processor: StripeService,
    entry_ids: List[int],
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> InvoiceSendReport:
    """Per-entry mode over many entries; a failure on one entry does not stop the rest."""
    report = InvoiceSendReport()
    for entry_id in entry_ids:
        try:
            row = compose_entry_invoice(session, processor, entry_id, now, settings)
        except BillingError as exc:
            session.rollback()
            logger.warning(f"Invoice for waitlist entry {entry_id} failed: {exc.kind}: {exc.message}")
            report.results.append(
                InvoiceSendResult(waitlist_entry_id=entry_id, success=False, error=exc.message, error_kind=exc.kind)
            )
            continue
        report.results.append(
            InvoiceSendResult(
                waitlist_entry_id=entry_id,
                success=True,
                invoice_id=row.id,
                external_invoice_id=row.stripe_invoice_id,
                invoice_url=row.hosted_invoice_url,
                total_amount=row.total_amount,
            )
        )
    return report


# ---------------------------------------------------------------------------
# Combined mode
# ---------------------------------------------------------------------------


def compose_combined_invoice(
    session: Session,
    processor: StripeService,
    user_id: int,
    entry_ids: List[int],
    due_days: Optional[int] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> CombinedInvoice:
    """
    Bill several promoted entries of one payer on a single processor invoice.

    All entries must belong to user_id and be billable, otherwise nothing is
    sent. The event registration fee appears at most once.
    """
    settings = settings or get_settings()
    now = now or utcnow()
    due_days = due_days or settings.invoice_due_days

    unique_ids = list(dict.fromkeys(entry_ids))
    if not unique_ids:
        raise ValidationFailed("waitlist_entry_ids must not be empty")
    if due_days < 1:
        raise ValidationFailed("due_days must be >= 1")

    entries = []
    for entry_id in unique_ids:
        entry = session.get(WaitlistEntry, entry_id)
        if entry is None:
            raise EntryNotFound(f"Waitlist entry {entry_id} not found")
        if entry.user_id != user_id:
            raise ValidationFailed(f"Waitlist entry {entry_id} belongs to another user")
        ensure_billable(session, entry)
        entries.append(entry)

    preview = preview_invoice(session, entries, now, settings)
    customer_id = resolve_payer(session, processor, user_id, preview.email, preview.name)

    invoice = processor.create_invoice(
        customer_id=customer_id,
        lines=_lines(preview, settings),
        due_days=due_days,
        metadata={
            "user_id": str(user_id),
            "waitlist_entry_ids": ",".join(str(e.id) for e in entries),
            "combined": "true",
        },
        description=notes,
    )

    combined = CombinedInvoice(
        user_id=user_id,
        stripe_invoice_id=invoice.id,
        stripe_customer_id=customer_id,
        hosted_invoice_url=invoice.hosted_invoice_url,
        event_registration_fee=preview.event_fee.amount,
        total_amount=preview.total_amount,
        status="pending",
        due_date=now + timedelta(days=due_days),
        notes=notes,
        sent_at=now,
        created_at=now,
    )
    session.add(combined)
    session.flush()

    for charge in preview.charges:
        session.add(
            CombinedInvoiceItem(
                combined_invoice_id=combined.id,
                waitlist_entry_id=charge.entry.id,
                tournament_id=charge.tournament.id,
                tournament_fee=charge.fee.amount,
            )
        )
        apply_status(session, charge.entry, WaitlistStatus.invoiced, now)
        charge.entry.combined_invoice_id = combined.id
        session.add(charge.entry)

    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.error(
            f"Combined invoice for user {user_id} collided with an existing invoice; "
            f"processor invoice {invoice.id} is a duplicate and must be voided"
        )
        raise AlreadyInvoiced("One or more waitlist entries have already been invoiced")
    session.refresh(combined)

    logger.info(
        f"Combined invoice {combined.id} (processor {invoice.id}) for user {user_id}: "
        f"{len(entries)} entries, total {combined.total_amount}, event fee {combined.event_registration_fee}"
    )
    return combined
