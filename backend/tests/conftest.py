import itertools
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from waitlist_billing.database import get_session, import_models
from waitlist_billing.errors import ExternalServiceError
from waitlist_billing.main import app
from waitlist_billing.services.stripe_service import (
    InvoiceLine,
    ProcessorCustomer,
    ProcessorInvoice,
    ProcessorPaymentIntent,
    ProcessorSession,
    get_payment_processor,
)

TEST_DATABASE_URL = "sqlite:///:memory:"

ADMIN_HEADERS = {"X-User-Role": "admin"}

# ============================================================================
# Test Database Setup with StaticPool
# ============================================================================
# 1. sqlite:///:memory: with StaticPool so ALL sessions share the same DB
# 2. check_same_thread=False for TestClient's worker threads
# 3. Tables are dropped and recreated per test: audit and reconciliation
#    jobs read whole tables, so rows must not leak between tests
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def override_get_session():
    """Override session to use test engine"""
    with Session(test_engine) as session:
        yield session


class FakeProcessor:
    """In-memory stand-in for StripeService with the same method surface."""

    def __init__(self):
        self.is_configured = True
        self.customers: Dict[str, ProcessorCustomer] = {}
        self.sessions: Dict[str, ProcessorSession] = {}
        self.payment_intents: Dict[str, ProcessorPaymentIntent] = {}
        self.paid_sessions: Dict[str, List[ProcessorSession]] = {}
        # object id -> error raised when it is looked up
        self.errors: Dict[str, ExternalServiceError] = {}
        self.invoices: List[dict] = []
        self.fail_invoices_with: Optional[ExternalServiceError] = None
        self.calls: List[str] = []
        self._ids = itertools.count(1)

    def retrieve_customer(self, customer_id: str) -> Optional[ProcessorCustomer]:
        self.calls.append(f"retrieve_customer:{customer_id}")
        return self.customers.get(customer_id)

    def find_customer_by_email(self, email: str) -> Optional[ProcessorCustomer]:
        self.calls.append(f"find_customer_by_email:{email}")
        for customer in self.customers.values():
            if customer.email == email:
                return customer
        return None

    def create_customer(self, email: str, name: str, metadata: Dict[str, str]) -> ProcessorCustomer:
        self.calls.append(f"create_customer:{email}")
        customer = ProcessorCustomer(id=f"cus_{next(self._ids)}", email=email, name=name)
        self.customers[customer.id] = customer
        return customer

    def iter_customers(self):
        self.calls.append("iter_customers")
        return iter(list(self.customers.values()))

    def create_invoice(
        self,
        customer_id: str,
        lines: List[InvoiceLine],
        due_days: int,
        metadata: Dict[str, str],
        description: Optional[str] = None,
    ) -> ProcessorInvoice:
        self.calls.append(f"create_invoice:{customer_id}")
        if self.fail_invoices_with is not None:
            raise self.fail_invoices_with
        invoice_id = f"in_{next(self._ids)}"
        amount = sum(line.amount for line in lines)
        self.invoices.append(
            {
                "id": invoice_id,
                "customer_id": customer_id,
                "lines": lines,
                "due_days": due_days,
                "metadata": metadata,
                "amount_due": amount,
            }
        )
        return ProcessorInvoice(
            id=invoice_id,
            hosted_invoice_url=f"https://invoice.example/{invoice_id}",
            status="open",
            amount_due=amount,
        )

    def retrieve_checkout_session(self, session_id: str) -> ProcessorSession:
        self.calls.append(f"retrieve_checkout_session:{session_id}")
        if session_id in self.errors:
            raise self.errors[session_id]
        if session_id not in self.sessions:
            raise ExternalServiceError(f"No such checkout.session: '{session_id}'", resource_missing=True)
        return self.sessions[session_id]

    def retrieve_payment_intent(self, payment_intent_id: str) -> ProcessorPaymentIntent:
        self.calls.append(f"retrieve_payment_intent:{payment_intent_id}")
        if payment_intent_id in self.errors:
            raise self.errors[payment_intent_id]
        if payment_intent_id not in self.payment_intents:
            raise ExternalServiceError(f"No such payment_intent: '{payment_intent_id}'", resource_missing=True)
        return self.payment_intents[payment_intent_id]

    def list_paid_checkout_sessions(self, customer_id: str) -> List[ProcessorSession]:
        self.calls.append(f"list_paid_checkout_sessions:{customer_id}")
        return list(self.paid_sessions.get(customer_id, []))


@pytest.fixture(name="session", scope="function")
def session_fixture():
    """Provide a test database session on freshly created tables."""
    import_models()
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)

    with Session(test_engine) as session:
        yield session


@pytest.fixture(name="processor")
def processor_fixture():
    return FakeProcessor()


@pytest.fixture(name="client")
def client_fixture(session: Session, processor: FakeProcessor):
    """Provide an admin test client with overridden database session and processor

    Overrides MUST be set BEFORE TestClient() and stay in place for the
    entire duration so the app never uses its own engine or Stripe.
    """
    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_payment_processor] = lambda: processor

    with TestClient(app) as client:
        client.headers.update(ADMIN_HEADERS)
        yield client

    app.dependency_overrides.clear()
