"""Stripe payment-processor wrapper.

Thin wrapper around the Stripe API for the calls the billing engine makes:
customer lookup/creation, invoice issuing, and the read-only lookups used
by reconciliation. Stripe objects are normalized into small dataclasses so
the rest of the engine never touches ``stripe`` types directly.

Every Stripe failure is raised as ExternalServiceError; ``resource_missing``
is set when Stripe reports that the requested object does not exist.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import stripe

from waitlist_billing.config import Settings, get_settings
from waitlist_billing.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass
class ProcessorCustomer:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass
class ProcessorLineItem:
    description: str
    amount_total: int
    quantity: int = 1


@dataclass
class ProcessorSession:
    id: str
    amount_total: Optional[int]
    payment_status: Optional[str]
    customer_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    line_items: List[ProcessorLineItem] = field(default_factory=list)


@dataclass
class ProcessorPaymentIntent:
    id: str
    amount: int
    status: Optional[str] = None


@dataclass
class InvoiceLine:
    description: str
    amount: int


@dataclass
class ProcessorInvoice:
    id: str
    hosted_invoice_url: Optional[str]
    status: Optional[str]
    amount_due: int


def _is_resource_missing(exc: Exception) -> bool:
    code = getattr(exc, "code", None)
    message = str(exc)
    return code == "resource_missing" or "No such" in message or "does not exist" in message


def _wrap(exc: Exception, action: str) -> ExternalServiceError:
    message = getattr(exc, "user_message", None) or str(exc)
    return ExternalServiceError(
        f"Stripe {action} failed: {message}",
        resource_missing=_is_resource_missing(exc),
        code=getattr(exc, "code", None),
    )


def _attr(obj: Any, name: str, default: Any = None) -> Any:
    value = getattr(obj, name, default)
    return default if value is None else value


def _object_id(value: Any) -> Optional[str]:
    """Stripe returns either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _attr(value, "id")


def _line_item(item: Any) -> ProcessorLineItem:
    description = _attr(item, "description")
    if not description:
        price = _attr(item, "price")
        product = _attr(price, "product") if price is not None else None
        description = _attr(product, "name", "") if product is not None and not isinstance(product, str) else ""
    return ProcessorLineItem(
        description=description or "",
        amount_total=_attr(item, "amount_total", 0),
        quantity=_attr(item, "quantity", 1),
    )


def _session(obj: Any, line_items: Optional[List[ProcessorLineItem]] = None) -> ProcessorSession:
    if line_items is None:
        expanded = _attr(obj, "line_items")
        line_items = [_line_item(i) for i in _attr(expanded, "data", [])] if expanded is not None else []
    return ProcessorSession(
        id=obj.id,
        amount_total=_attr(obj, "amount_total"),
        payment_status=_attr(obj, "payment_status"),
        customer_id=_object_id(_attr(obj, "customer")),
        payment_intent_id=_object_id(_attr(obj, "payment_intent")),
        line_items=line_items,
    )


class StripeService:
    """
    Wrapper around the Stripe API.

    Reads the key from STRIPE_SECRET_KEY (via Settings). Without a key every
    call fails with ExternalServiceError; nothing is sent anywhere.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.currency = self.settings.currency
        if self.settings.stripe_secret_key:
            stripe.api_key = self.settings.stripe_secret_key
            stripe.api_version = self.settings.stripe_api_version
            logger.info("Stripe client configured.")
        else:
            logger.warning("Stripe key not configured. Set STRIPE_SECRET_KEY to enable processor calls.")

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.stripe_secret_key)

    def _require_key(self) -> None:
        if not self.is_configured:
            raise ExternalServiceError("Stripe is not configured (STRIPE_SECRET_KEY is empty)")

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def retrieve_customer(self, customer_id: str) -> Optional[ProcessorCustomer]:
        """Customer by id, or None if it was deleted or never existed."""
        self._require_key()
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            wrapped = _wrap(e, f"customer lookup {customer_id}")
            if wrapped.resource_missing:
                return None
            logger.error(str(wrapped))
            raise wrapped
        if _attr(customer, "deleted", False):
            return None
        return ProcessorCustomer(id=customer.id, email=_attr(customer, "email"), name=_attr(customer, "name"))

    def find_customer_by_email(self, email: str) -> Optional[ProcessorCustomer]:
        self._require_key()
        try:
            customers = stripe.Customer.list(email=email, limit=1)
        except stripe.StripeError as e:
            wrapped = _wrap(e, "customer search")
            logger.error(str(wrapped))
            raise wrapped
        for customer in customers.data:
            return ProcessorCustomer(id=customer.id, email=_attr(customer, "email"), name=_attr(customer, "name"))
        return None

    def create_customer(self, email: str, name: str, metadata: Dict[str, str]) -> ProcessorCustomer:
        self._require_key()
        try:
            customer = stripe.Customer.create(email=email, name=name or None, metadata=metadata)
        except stripe.StripeError as e:
            wrapped = _wrap(e, "customer creation")
            logger.error(str(wrapped))
            raise wrapped
        logger.info(f"Created Stripe customer {customer.id} for {email}")
        return ProcessorCustomer(id=customer.id, email=email, name=name)

    def iter_customers(self) -> Iterator[ProcessorCustomer]:
        """Every customer on the account, paging transparently."""
        self._require_key()
        try:
            for customer in stripe.Customer.list(limit=100).auto_paging_iter():
                yield ProcessorCustomer(id=customer.id, email=_attr(customer, "email"), name=_attr(customer, "name"))
        except stripe.StripeError as e:
            wrapped = _wrap(e, "customer listing")
            logger.error(str(wrapped))
            raise wrapped

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def create_invoice(
        self,
        customer_id: str,
        lines: List[InvoiceLine],
        due_days: int,
        metadata: Dict[str, str],
        description: Optional[str] = None,
    ) -> ProcessorInvoice:
        """
        Create, finalize and send an invoice with the given line items.

        The invoice is emailed by Stripe (collection_method=send_invoice).
        Raises ExternalServiceError at whichever step fails.
        """
        self._require_key()
        try:
            invoice = stripe.Invoice.create(
                customer=customer_id,
                collection_method="send_invoice",
                days_until_due=due_days,
                description=description,
                metadata=metadata,
                pending_invoice_items_behavior="exclude",
            )
            for line in lines:
                stripe.InvoiceItem.create(
                    customer=customer_id,
                    invoice=invoice.id,
                    amount=line.amount,
                    currency=self.currency,
                    description=line.description,
                )
            finalized = stripe.Invoice.finalize_invoice(invoice.id)
            sent = stripe.Invoice.send_invoice(finalized.id)
        except stripe.StripeError as e:
            wrapped = _wrap(e, f"invoice for customer {customer_id}")
            logger.error(str(wrapped))
            raise wrapped

        logger.info(
            f"Stripe invoice {sent.id} sent to {customer_id}: {len(lines)} line(s), amount_due={_attr(sent, 'amount_due', 0)}"
        )
        return ProcessorInvoice(
            id=sent.id,
            hosted_invoice_url=_attr(sent, "hosted_invoice_url") or _attr(finalized, "hosted_invoice_url"),
            status=_attr(sent, "status"),
            amount_due=_attr(sent, "amount_due", 0),
        )

    # ------------------------------------------------------------------
    # Reconciliation lookups
    # ------------------------------------------------------------------

    def retrieve_checkout_session(self, session_id: str) -> ProcessorSession:
        self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(
                session_id, expand=["line_items.data.price.product"]
            )
        except stripe.StripeError as e:
            raise _wrap(e, f"checkout session lookup {session_id}")
        return _session(session)

    def retrieve_payment_intent(self, payment_intent_id: str) -> ProcessorPaymentIntent:
        self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            raise _wrap(e, f"payment intent lookup {payment_intent_id}")
        return ProcessorPaymentIntent(
            id=intent.id,
            amount=_attr(intent, "amount", 0),
            status=_attr(intent, "status"),
        )

    def list_paid_checkout_sessions(self, customer_id: str) -> List[ProcessorSession]:
        """Completed, paid checkout sessions of one customer with their line items."""
        self._require_key()
        sessions = []
        try:
            for session in stripe.checkout.Session.list(customer=customer_id, limit=100).auto_paging_iter():
                if _attr(session, "payment_status") != "paid":
                    continue
                items = [
                    _line_item(i)
                    for i in stripe.checkout.Session.list_line_items(
                        session.id, limit=100, expand=["data.price.product"]
                    ).auto_paging_iter()
                ]
                sessions.append(_session(session, items))
        except stripe.StripeError as e:
            wrapped = _wrap(e, f"checkout session listing for {customer_id}")
            logger.error(str(wrapped))
            raise wrapped
        return sessions


# Singleton instance
_stripe_service: Optional[StripeService] = None


def get_payment_processor() -> StripeService:
    """Get or create the singleton StripeService instance."""
    global _stripe_service
    if _stripe_service is None:
        _stripe_service = StripeService()
    return _stripe_service
