"""Reconciliation core: idempotent application of provider events."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from payrecon.common.errors import MalformedPayload, RequestAccessDenied, RequestNotFound
from payrecon.services.provider_adapter.schemas import PaymentEvent
from payrecon.services.provider_adapter.service import ProviderAdapter
from payrecon.services.reconciliation.models import CompanyRequest, Payment, ServiceRequest
from payrecon.services.reconciliation.schemas import CreatePaymentRequest


def kkiapay_webhook(transaction_id="TXN1", success=True, **extra):
    body = {"transactionId": transaction_id, "isPaymentSucces": success, "event": "transaction.success"}
    if not success:
        body["event"] = "transaction.failed"
    body.update(extra)
    return ProviderAdapter().parse_webhook("kkiapay", json.dumps(body).encode())


def event(status="approved", transaction_id="TXN1", source="webhook", **fields):
    return PaymentEvent(
        transaction_id=transaction_id,
        provider="kkiapay",
        source=source,
        provider_status=status.upper(),
        status=status,
        **fields,
    )


def ledger_types(store, payment_id=None):
    return [entry.event_type for entry in store.ledger(payment_id)]


def test_end_to_end_webhook_success(service, store, pending_payment):
    result = service.apply_event(kkiapay_webhook())

    payment = store.payment("TXN1")
    request = store.request(CompanyRequest, "req-1")
    assert result.outcome == "applied"
    assert result.payment_status == "approved"
    assert result.request_status == "payment_confirmed"
    assert result.notification_scheduled
    assert payment.status == "approved"
    assert payment.state_version == 1
    assert request.payment_status == "paid"
    assert request.status == "payment_confirmed"
    assert request.payment_id == payment.id

    outbox = store.outbox()
    assert len(outbox) == 1
    assert outbox[0].event_type == "payment_confirmed"
    assert outbox[0].topic == "payments.notifications"
    payload = outbox[0].payload["payload"]
    assert payload["recipient"] == "awa@example.com"
    assert payload["context"]["tracking_number"] == "LF-2024-001"
    assert payload["context"]["company_name"] == "Acme SARL"
    assert payload["context"]["amount"] == 199000


def test_repeated_webhook_is_idempotent(service, store, pending_payment):
    first = service.apply_event(kkiapay_webhook())
    second = service.apply_event(kkiapay_webhook())

    assert first.outcome == "applied"
    assert second.outcome == "duplicate"
    assert not second.notification_scheduled
    assert len(store.payments()) == 1
    assert store.payment("TXN1").status == "approved"
    assert store.payment("TXN1").state_version == 1
    assert len(store.outbox()) == 1
    assert ledger_types(store, pending_payment.id) == [
        "webhook_kkiapay_approved",
        "webhook_kkiapay_approved_duplicate",
    ]


def test_verify_after_webhook_converges(service, store, pending_payment):
    service.apply_event(kkiapay_webhook())
    result = service.apply_event(event(source="verify", request_id="req-1", request_type="company"))

    assert result.outcome == "duplicate"
    assert store.payment("TXN1").status == "approved"
    assert store.request(CompanyRequest, "req-1").payment_id == pending_payment.id
    assert len(store.outbox()) == 1
    assert ledger_types(store, pending_payment.id)[-1] == "verify_kkiapay_approved_duplicate"


def test_concurrent_update_loser_reclassifies(service, store, pending_payment, monkeypatch):
    """A webhook racing a verify call: one applies, the other sees a duplicate."""

    original = service._conditional_update
    raced = []

    def racing_update(db, payment, evt):
        if not raced:
            raced.append(True)
            # The verify call commits between the webhook's read and its write.
            winner = service.apply_event(event(source="verify"))
            assert winner.outcome == "applied"
        return original(db, payment, evt)

    monkeypatch.setattr(service, "_conditional_update", racing_update)
    loser = service.apply_event(kkiapay_webhook())

    assert loser.outcome == "duplicate"
    assert store.payment("TXN1").state_version == 1
    assert len(store.outbox()) == 1
    assert ledger_types(store, pending_payment.id) == [
        "verify_kkiapay_approved",
        "webhook_kkiapay_approved_duplicate",
    ]


def test_concurrent_creation_yields_one_payment(service, store, company_request, monkeypatch):
    """Two first sightings of one transaction: the unique transaction id picks the creator."""

    original = service._create_from_event
    raced = []
    outcomes = []

    def racing_create(evt):
        if not raced:
            raced.append(True)
            # The other call inserts the payment between this call's lookup and its commit.
            outcomes.append(service.apply_event(evt).outcome)
        return original(evt)

    monkeypatch.setattr(service, "_create_from_event", racing_create)
    loser = service.apply_event(kkiapay_webhook(transaction_id="TXN-NEW", partnerId="req-1", amount=199000))
    outcomes.append(loser.outcome)

    payment = store.payment("TXN-NEW")
    assert outcomes == ["created", "duplicate"]
    assert len(store.payments()) == 1
    assert payment.status == "approved"
    assert payment.state_version == 1
    assert len(store.outbox()) == 1
    assert ledger_types(store, payment.id) == [
        "webhook_kkiapay_approved_new",
        "webhook_kkiapay_approved_duplicate",
    ]


def test_concurrent_claim_attaches_transaction_once(service, session_factory, store, company_request, monkeypatch):
    now = datetime.now(timezone.utc)
    with session_factory() as db:
        for payment_id, age in (("pay-old", 2), ("pay-new", 1)):
            db.add(
                Payment(
                    id=payment_id,
                    request_id="req-1",
                    request_type="company",
                    user_id="user-1",
                    amount=199000,
                    currency="XOF",
                    status="pending",
                    state_version=0,
                    customer_email="awa@example.com",
                    created_at=now - timedelta(minutes=age),
                )
            )
        db.commit()

    original = service._claim_unattached
    raced = []
    outcomes = []

    def racing_claim(db, evt):
        if not raced:
            raced.append(True)
            # The other call attaches the newest prepared payment first.
            outcomes.append(service.apply_event(evt).outcome)
        return original(db, evt)

    monkeypatch.setattr(service, "_claim_unattached", racing_claim)
    loser = service.apply_event(event(transaction_id="TXN-W", request_id="req-1", request_type="company"))
    outcomes.append(loser.outcome)

    assert outcomes == ["applied", "duplicate"]
    assert loser.payment_id == "pay-new"
    assert store.payment("TXN-W").id == "pay-new"
    assert store.payment("TXN-W").status == "approved"
    assert len(store.payments()) == 2
    assert [p.transaction_id for p in store.payments() if p.id == "pay-old"] == [None]
    assert len(store.outbox()) == 1


def test_stale_conditional_update_reports_conflict(service, session_factory, pending_payment):
    with session_factory() as db:
        stale = db.get(Payment, pending_payment.id)
        service.apply_event(event(status="failed"))

        assert service._conditional_update(db, stale, event()) is False
        db.rollback()

    with session_factory() as db:
        assert db.get(Payment, pending_payment.id).status == "failed"


def test_failed_payment(service, store, pending_payment):
    result = service.apply_event(kkiapay_webhook(success=False))

    request = store.request(CompanyRequest, "req-1")
    assert result.payment_status == "failed"
    assert request.payment_status == "failed"
    assert request.status == "payment_failed"
    assert [row.event_type for row in store.outbox()] == ["payment_failed"]


def test_corrective_approved_to_failed(service, store, pending_payment):
    service.apply_event(kkiapay_webhook())
    result = service.apply_event(kkiapay_webhook(success=False))

    payment = store.payment("TXN1")
    request = store.request(CompanyRequest, "req-1")
    assert result.outcome == "corrective"
    assert payment.status == "failed"
    assert payment.state_version == 2
    assert request.payment_status == "failed"
    assert ledger_types(store, payment.id)[-1] == "webhook_kkiapay_failed_corrective"
    assert sorted(row.event_type for row in store.outbox()) == ["payment_confirmed", "payment_failed"]


def test_pending_after_terminal_is_stale(service, store, pending_payment):
    service.apply_event(event())
    result = service.apply_event(event(status="pending"))

    assert result.outcome == "stale"
    assert store.payment("TXN1").status == "approved"
    assert store.request(CompanyRequest, "req-1").payment_status == "paid"
    assert ledger_types(store, pending_payment.id)[-1] == "webhook_kkiapay_pending_stale"


def test_pending_while_pending_is_noop(service, store, pending_payment):
    result = service.apply_event(event(status="pending"))

    assert result.outcome == "noop"
    assert store.payment("TXN1").state_version == 0
    assert ledger_types(store, pending_payment.id) == ["webhook_kkiapay_pending_noop"]
    assert store.outbox() == []


def test_duplicate_of_unnotified_approval_schedules_notification(service, session_factory, store, company_request):
    with session_factory() as db:
        db.add(
            Payment(
                id="pay-legacy",
                transaction_id="TXN-LEGACY",
                request_id="req-1",
                request_type="company",
                amount=199000,
                currency="XOF",
                status="approved",
                state_version=1,
                customer_email="awa@example.com",
            )
        )
        db.commit()

    first = service.apply_event(event(transaction_id="TXN-LEGACY"))
    second = service.apply_event(event(transaction_id="TXN-LEGACY"))

    assert first.outcome == "duplicate"
    assert first.notification_scheduled
    assert not second.notification_scheduled
    assert len(store.outbox()) == 1
    assert ledger_types(store, "pay-legacy") == [
        "webhook_kkiapay_approved_notified",
        "webhook_kkiapay_approved_duplicate",
    ]


def test_orphan_event_without_context(service, store, company_request):
    result = service.apply_event(kkiapay_webhook(transaction_id="TXN-UNKNOWN"))

    assert result.outcome == "orphan"
    assert result.payment_id is None
    assert result.warning
    assert result.webhook_body()["success"] is True
    assert result.webhook_body()["warning"] == result.warning
    assert store.payments() == []
    entries = store.ledger()
    assert len(entries) == 1
    assert entries[0].payment_id is None
    assert entries[0].event_type == "webhook_kkiapay_approved_orphan"
    assert entries[0].event_data["transaction_id"] == "TXN-UNKNOWN"


def test_orphan_event_records_phone_candidates(service, store, company_request):
    service.apply_event(event(transaction_id="TXN-PHONE", phone="07 09 67 79 25"))

    entry = store.ledger()[0]
    assert entry.event_data["candidate_requests"] == [{"request_id": "req-1", "request_type": "company"}]
    assert store.request(CompanyRequest, "req-1").payment_status == "unpaid"


def test_event_with_context_creates_payment(service, store, company_request):
    result = service.apply_event(
        kkiapay_webhook(transaction_id="TXN-NEW", partnerId="req-1", amount=199000)
    )

    payment = store.payment("TXN-NEW")
    assert result.outcome == "created"
    assert payment.status == "approved"
    assert payment.amount == 199000
    assert payment.currency == "XOF"
    assert payment.customer_email == "awa@example.com"
    assert payment.customer_phone == "2250709677925"
    assert payment.tracking_number == "LF-2024-001"
    assert store.request(CompanyRequest, "req-1").payment_status == "paid"
    assert ledger_types(store, payment.id) == ["webhook_kkiapay_approved_new"]
    assert len(store.outbox()) == 1


def test_pending_event_with_context_creates_waiting_payment(service, store, service_request):
    result = service.apply_event(
        event(status="pending", transaction_id="TXN-WAIT", request_id="srv-1", request_type="service", amount=50000)
    )

    assert result.outcome == "created"
    assert store.payment("TXN-WAIT").status == "pending"
    request = store.request(ServiceRequest, "srv-1")
    assert request.payment_status == "pending"
    assert request.status == "payment_pending"
    assert ledger_types(store)[-1] == "webhook_kkiapay_pending_new"
    assert store.outbox() == []


def test_creation_falls_back_to_event_customer_data(service, store):
    service.apply_event(
        event(
            transaction_id="TXN-NOREQ",
            request_id="req-gone",
            request_type="company",
            amount=1000,
            email="buyer@example.com",
            phone="+225 07 09 67 79 25",
        )
    )

    payment = store.payment("TXN-NOREQ")
    assert payment.customer_email == "buyer@example.com"
    assert payment.customer_phone == "2250709677925"


def test_missing_request_is_reported_but_payment_advances(service, store, session_factory):
    with session_factory() as db:
        db.add(
            Payment(
                transaction_id="TXN-ORPHREQ",
                request_id="req-deleted",
                request_type="company",
                amount=5000,
                currency="XOF",
                status="pending",
            )
        )
        db.commit()

    result = service.apply_event(event(transaction_id="TXN-ORPHREQ"))

    assert store.payment("TXN-ORPHREQ").status == "approved"
    assert result.request_status == "request_not_found"
    assert "req-deleted" in result.warning
    assert "req-deleted" in store.ledger()[-1].event_data["request_warning"]


def test_amount_mismatch_is_recorded_not_blocking(service, store, pending_payment):
    service.apply_event(event(amount=1000))

    assert store.payment("TXN1").status == "approved"
    assert store.ledger(pending_payment.id)[-1].event_data["amount_mismatch"] == {
        "expected": 199000,
        "reported": 1000,
    }


def test_webhook_claims_payment_prepared_before_widget(service, store, company_request):
    widget = service.create_payment(
        CreatePaymentRequest(
            amount=199000,
            requestId="req-1",
            customerEmail="awa@example.com",
            customerName="Awa Kone",
            customerPhone="+225 07 09 67 79 25",
        ),
        user_id="user-1",
    )

    assert widget["paymentMethod"] == "kkiapay"
    assert widget["customer"]["phone"] == "2250709677925"
    assert store.request(CompanyRequest, "req-1").payment_status == "pending"

    result = service.apply_event(kkiapay_webhook(transaction_id="TXN-WIDGET", partnerId="req-1"))

    assert result.payment_id == widget["paymentId"]
    assert len(store.payments()) == 1
    assert store.payment("TXN-WIDGET").status == "approved"
    assert ledger_types(store, widget["paymentId"]) == ["create_kkiapay_initiated", "webhook_kkiapay_approved"]


def test_create_payment_requires_existing_request(service):
    with pytest.raises(RequestNotFound):
        service.create_payment(
            CreatePaymentRequest(amount=100, requestId="nope", customerEmail="a@b.co", customerName="A"),
            user_id="user-1",
        )


def test_create_payment_rejects_other_users(service, company_request):
    with pytest.raises(RequestAccessDenied):
        service.create_payment(
            CreatePaymentRequest(amount=100, requestId="req-1", customerEmail="a@b.co", customerName="A"),
            user_id="someone-else",
        )


def test_malformed_payload_is_logged_as_orphan(service, store):
    service.record_malformed("webhook", MalformedPayload("invalid JSON payload", "fedapay", "{oops"))

    entry = store.ledger()[0]
    assert entry.payment_id is None
    assert entry.event_type == "webhook_fedapay_malformed"
    assert entry.event_data == {"reason": "invalid JSON payload", "body_excerpt": "{oops"}
