"""Shared fixtures: one SQLite file database per test, seeded requests."""

import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from payrecon.common.db import Base
from payrecon.services.ledger.models import LedgerEntry
from payrecon.services.notification.models import InboxEvent, NotificationLog  # noqa: F401
from payrecon.services.reconciliation.models import CompanyRequest, OutboxEvent, Payment, ServiceRequest
from payrecon.services.reconciliation.service import ReconciliationService


@pytest.fixture
def session_factory(tmp_path):
    """Sessionmaker bound to a fresh file database.

    A file (not `:memory:`) lets two sessions hold separate connections, which
    the concurrent-update tests rely on.
    """

    engine = create_engine(f"sqlite:///{tmp_path / 'payrecon.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def service(session_factory):
    return ReconciliationService(session_factory)


@pytest.fixture
def company_request(session_factory):
    now = datetime.now(timezone.utc)
    with session_factory() as db:
        record = CompanyRequest(
            id="req-1",
            user_id="user-1",
            tracking_number="LF-2024-001",
            company_name="Acme SARL",
            contact_name="Awa Kone",
            email="awa@example.com",
            phone="+2250709677925",
            status="pending",
            payment_status="unpaid",
            estimated_price=199000,
            created_at=now - timedelta(days=2),
        )
        db.add(record)
        db.commit()
        return record


@pytest.fixture
def service_request(session_factory):
    now = datetime.now(timezone.utc)
    with session_factory() as db:
        record = ServiceRequest(
            id="srv-1",
            user_id="user-1",
            tracking_number="LF-SRV-007",
            service_type="domiciliation",
            contact_name="Awa Kone",
            contact_email="awa@example.com",
            contact_phone="0709677925",
            status="pending",
            payment_status="unpaid",
            estimated_price=50000,
            created_at=now - timedelta(days=1),
        )
        db.add(record)
        db.commit()
        return record


@pytest.fixture
def pending_payment(session_factory, company_request):
    """Payment TXN1 for 199000 XOF, waiting for the provider."""

    with session_factory() as db:
        payment = Payment(
            transaction_id="TXN1",
            request_id=company_request.id,
            request_type="company",
            user_id="user-1",
            amount=199000,
            currency="XOF",
            status="pending",
            state_version=0,
            provider="kkiapay",
            customer_email="awa@example.com",
            customer_name="Awa Kone",
            customer_phone="2250709677925",
            tracking_number="LF-2024-001",
        )
        db.add(payment)
        db.commit()
        return payment


@pytest.fixture
def store(session_factory):
    """Read helpers for assertions."""

    class Store:
        def payment(self, transaction_id):
            with session_factory() as db:
                return db.execute(
                    select(Payment).where(Payment.transaction_id == transaction_id)
                ).scalar_one_or_none()

        def payments(self):
            with session_factory() as db:
                return db.execute(select(Payment)).scalars().all()

        def request(self, model, request_id):
            with session_factory() as db:
                return db.get(model, request_id)

        def ledger(self, payment_id=None):
            with session_factory() as db:
                query = select(LedgerEntry).order_by(LedgerEntry.created_at, LedgerEntry.id)
                if payment_id is not None:
                    query = query.where(LedgerEntry.payment_id == payment_id)
                return db.execute(query).scalars().all()

        def outbox(self):
            with session_factory() as db:
                return db.execute(select(OutboxEvent).order_by(OutboxEvent.created_at)).scalars().all()

    return Store()
