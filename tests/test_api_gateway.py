"""HTTP surface: webhooks, verify, tracking, payment preparation, ledger."""

import json
from time import time
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis
from fastapi.testclient import TestClient

from payrecon.common.config import CommonSettings
from payrecon.services.api_gateway import main
from payrecon.services.provider_adapter.service import ProviderAdapter
from payrecon.services.provider_adapter.signatures import HmacSha256Verifier
from payrecon.services.reconciliation.models import CompanyRequest
from payrecon.services.reconciliation.service import ReconciliationService
from scripts.replay_ledger import recorded_payloads, replay_selection

KKIAPAY_SUCCESS = {"transactionId": "TXN1", "isPaymentSucces": True, "event": "transaction.success"}


@pytest.fixture
def rdb(monkeypatch):
    fake = MagicMock()
    fake.hmget.return_value = [None, None]
    monkeypatch.setattr(main, "rdb", fake)
    return fake


@pytest.fixture
def client(session_factory, rdb, monkeypatch):
    """App client bound to the test database; lifespan (Kafka) is not started."""

    monkeypatch.setattr(main, "service", ReconciliationService(session_factory))
    return TestClient(main.app)


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_preflight_returns_cors_headers(client):
    resp = client.options("/webhook")

    assert resp.status_code == 200
    assert resp.content == b""
    assert resp.headers["access-control-allow-origin"] == "*"


def test_webhook_applies_payment_once(client, store, pending_payment):
    first = client.post("/webhook", json=KKIAPAY_SUCCESS)
    second = client.post("/webhook", json=KKIAPAY_SUCCESS)

    expected = {
        "success": True,
        "transactionId": "TXN1",
        "paymentStatus": "approved",
        "requestStatus": "payment_confirmed",
    }
    assert first.status_code == 200
    assert first.json() == expected
    assert second.json() == expected
    assert first.headers["access-control-allow-origin"] == "*"
    assert store.request(CompanyRequest, "req-1").payment_status == "paid"
    assert len(store.outbox()) == 1


def test_orphan_webhook_succeeds_with_warning(client, store):
    resp = client.post("/webhook", json={"transactionId": "TXN-X", "status": "SUCCESS"})

    assert resp.status_code == 200
    assert resp.json()["requestStatus"] == "no_request"
    assert "warning" in resp.json()
    assert store.payments() == []
    assert store.ledger()[0].event_type == "webhook_kkiapay_approved_orphan"


def test_invalid_json_is_rejected_and_logged(client, store):
    resp = client.post(
        "/webhooks/fedapay",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )

    assert resp.status_code == 400
    assert "error" in resp.json()
    entry = store.ledger()[0]
    assert entry.event_type == "webhook_fedapay_malformed"
    assert entry.payment_id is None


def test_missing_transaction_id_is_rejected(client, store):
    resp = client.post("/webhooks/kkiapay", json={"status": "SUCCESS"})

    assert resp.status_code == 400
    assert store.ledger()[0].event_type == "webhook_kkiapay_malformed"


def test_unknown_provider_path(client):
    assert client.post("/webhooks/paypal", json=KKIAPAY_SUCCESS).status_code == 404


def test_fedapay_signature_checked(client, monkeypatch, pending_payment):
    config = CommonSettings(postgres_dsn="sqlite://", fedapay_webhook_secret="whsec")
    monkeypatch.setattr(main, "adapter", ProviderAdapter(config=config))
    body = json.dumps({"name": "transaction.approved", "entity": {"id": "TXN1", "status": "approved"}}).encode()
    signature = HmacSha256Verifier("whsec", header="x-fedapay-signature").sign(body)

    bad = client.post("/webhooks/fedapay", content=body, headers={"x-fedapay-signature": "deadbeef"})
    good = client.post("/webhooks/fedapay", content=body, headers={"x-fedapay-signature": f"sha256={signature}"})

    assert bad.status_code == 401
    assert good.status_code == 200
    assert good.json()["paymentStatus"] == "approved"


def test_unexpected_error_returns_generic_500(client, monkeypatch):
    broken = MagicMock()
    broken.apply_event.side_effect = RuntimeError("database on fire")
    monkeypatch.setattr(main, "service", broken)

    resp = client.post("/webhook", json=KKIAPAY_SUCCESS)

    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error"}


def test_verify_requires_transaction_id(client):
    resp = client.post("/payments/verify", json={"requestId": "req-1"})

    assert resp.status_code == 400
    assert resp.json() == {"error": "Transaction ID required"}


def test_verify_without_provider_key_assumes_success(client, store, pending_payment):
    resp = client.post("/payments/verify", json={"transactionId": "TXN1", "requestId": "req-1"})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "status": "approved", "transactionId": "TXN1"}
    assert store.payment("TXN1").status == "approved"
    assert store.ledger(pending_payment.id)[-1].event_type == "verify_kkiapay_approved"


def test_tracking_by_phone(client, company_request, service_request):
    resp = client.post("/tracking", json={"phone": "07 09 67 79 25"})

    assert resp.status_code == 200
    ids = [row["id"] for row in resp.json()["requests"]]
    assert ids == ["srv-1", "req-1"]


def test_tracking_rejects_invalid_phone(client):
    assert client.post("/tracking", json={"phone": "123"}).status_code == 400
    assert client.post("/tracking", json={}).status_code == 400


def test_tracking_rejects_wildcard_phone(client, company_request, service_request):
    resp = client.post("/tracking", json={"phone": "%%%%%%%%"})

    assert resp.status_code == 400
    assert "requests" not in resp.json()


def test_tracking_rate_limited(client, rdb):
    rdb.hmget.return_value = ["0", str(time())]

    resp = client.post("/tracking", json={"phone": "0709677925"})

    assert resp.status_code == 429
    assert resp.json() == {"error": "Too many requests"}


@pytest.mark.parametrize("content", [b"{not json", b"[1, 2]"])
def test_bad_json_bodies_use_error_shape(client, content):
    for path in ("/payments/verify", "/tracking"):
        resp = client.post(path, content=content, headers={"content-type": "application/json"})

        assert resp.status_code == 400
        assert set(resp.json()) == {"error"}


def test_tracking_rate_limit_keys_on_forwarded_client(client, rdb, company_request):
    client.post("/tracking", json={"phone": "0709677925"}, headers={"x-forwarded-for": "203.0.113.7, 10.0.0.1"})
    client.post("/tracking", json={"phone": "0709677925"}, headers={"x-real-ip": "198.51.100.4"})

    keys = [call.args[0] for call in rdb.hmget.call_args_list]
    assert keys == ["tokenbucket:tracking:203.0.113.7", "tokenbucket:tracking:198.51.100.4"]


def test_tracking_survives_redis_outage(client, rdb, company_request):
    rdb.hmget.side_effect = redis.ConnectionError("down")

    resp = client.post("/tracking", json={"phone": "0709677925"})

    assert resp.status_code == 200
    assert [row["id"] for row in resp.json()["requests"]] == ["req-1"]


def test_create_payment_requires_bearer(client):
    assert client.post("/payments", json={}).status_code == 401


def test_create_payment(client, monkeypatch, store, company_request):
    auth = MagicMock()
    auth.user_id_for = AsyncMock(return_value="user-1")
    monkeypatch.setattr(main, "auth", auth)
    body = {
        "amount": 199000,
        "requestId": "req-1",
        "customerEmail": "awa@example.com",
        "customerName": "Awa Kone",
        "customerPhone": "+225 07 09 67 79 25",
    }

    resp = client.post("/payments", json=body, headers={"Authorization": "Bearer tok"})

    assert resp.status_code == 200
    assert resp.json()["trackingNumber"] == "LF-2024-001"
    assert len(store.payments()) == 1
    assert store.payments()[0].transaction_id is None


def test_create_payment_for_foreign_request(client, monkeypatch, company_request):
    auth = MagicMock()
    auth.user_id_for = AsyncMock(return_value="intruder")
    monkeypatch.setattr(main, "auth", auth)
    body = {"amount": 100, "requestId": "req-1", "customerEmail": "x@y.co", "customerName": "X"}

    assert client.post("/payments", json=body, headers={"Authorization": "Bearer tok"}).status_code == 403
    body["requestId"] = "missing"
    assert client.post("/payments", json=body, headers={"Authorization": "Bearer tok"}).status_code == 404


def test_ledger_history_requires_api_key(client):
    resp = client.get("/ledger/TXN1")

    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid API key"}


def test_ledger_history(client, pending_payment):
    client.post("/webhook", json={"transactionId": "TXN1", "status": "SUCCESS"})
    client.post("/webhook", json={"transactionId": "TXN1", "status": "SUCCESS"})

    resp = client.get("/ledger/TXN1", headers={"x-api-key": main.settings.api_key})

    body = resp.json()
    assert resp.status_code == 200
    assert body["payment"]["status"] == "approved"
    assert [entry["event_type"] for entry in body["entries"]] == [
        "webhook_kkiapay_approved",
        "webhook_kkiapay_approved_duplicate",
    ]


def test_replay_resubmits_only_the_payload_matching_current_status(client, store, pending_payment):
    client.post("/webhook", json={"transactionId": "TXN1", "status": "SUCCESS"})
    client.post("/webhook", json={"transactionId": "TXN1", "status": "FAILED"})
    history = client.get("/ledger/TXN1", headers={"x-api-key": main.settings.api_key}).json()

    assert [outcome for _, outcome, _ in recorded_payloads(history)] == ["approved", "failed"]
    provider, raw = replay_selection(history)
    assert provider == "kkiapay"
    assert raw["status"] == "FAILED"

    resp = client.post(f"/webhooks/{provider}", json=raw)

    assert resp.json()["paymentStatus"] == "failed"
    assert store.payment("TXN1").status == "failed"
    assert store.payment("TXN1").state_version == 2
    assert len(store.outbox()) == 2
    assert store.ledger(pending_payment.id)[-1].event_type == "webhook_kkiapay_failed_duplicate"


def test_replay_selection_without_payment_takes_latest_orphan(client):
    client.post("/webhook", json={"transactionId": "TXN-X", "status": "SUCCESS"})
    history = client.get("/ledger/TXN-X", headers={"x-api-key": main.settings.api_key}).json()

    assert history["payment"] is None
    assert replay_selection(history) == ("kkiapay", {"transactionId": "TXN-X", "status": "SUCCESS"})


def test_replay_selection_skips_malformed_and_mismatched_payloads():
    history = {
        "payment": {"status": "approved"},
        "entries": [
            {"event_type": "webhook_kkiapay_failed", "event_data": {"provider": "kkiapay", "raw_data": {"n": 1}}},
            {"event_type": "webhook_kkiapay_malformed", "event_data": {"raw_data": {"n": 2}}},
            {"event_type": "verify_kkiapay_approved", "event_data": {"raw_data": {"n": 3}}},
        ],
    }

    assert replay_selection(history) is None
