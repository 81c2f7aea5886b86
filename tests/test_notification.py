"""Notification consumer, email rendering and the Resend client."""

import asyncio
import json
from unittest.mock import MagicMock

import httpx
import pytest
from sqlalchemy import select

from payrecon.common.config import CommonSettings
from payrecon.common.errors import NotifierUnavailable
from payrecon.common.events import EventEnvelope
from payrecon.services.notification.models import NotificationLog
from payrecon.services.notification.service import EmailNotifier, NotificationService
from payrecon.services.notification.templates import format_amount, render

CONTEXT = {
    "customer_name": "Awa Kone",
    "tracking_number": "LF-2024-001",
    "company_name": "Acme SARL",
    "amount": 199000,
    "currency": "XOF",
    "transaction_id": "TXN1",
}


def envelope(kind="payment_confirmed", recipient="awa@example.com"):
    return EventEnvelope(
        event_type=kind,
        aggregate_id="pay-1",
        payload={"kind": kind, "recipient": recipient, "context": CONTEXT},
    )


def logs(session_factory):
    with session_factory() as db:
        return db.execute(select(NotificationLog)).scalars().all()


def test_render_confirmation():
    subject, html = render("payment_confirmed", CONTEXT)

    assert subject == "Paiement confirmé - LF-2024-001"
    assert "199 000 FCFA" in html
    assert "Acme SARL" in html
    assert "Awa Kone" in html


def test_render_escapes_html():
    _, html = render("payment_failed", {**CONTEXT, "customer_name": "<script>"})

    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_render_unknown_kind():
    with pytest.raises(ValueError):
        render("payment_refunded", CONTEXT)


def test_format_amount():
    assert format_amount(199000) == "199 000"
    assert format_amount(None) == "-"


def test_handle_request_notifies_once(session_factory):
    notifier = MagicMock()
    service = NotificationService(session_factory, notifier)
    event = envelope()

    asyncio.run(service.handle_request(event))
    asyncio.run(service.handle_request(event))

    notifier.notify.assert_called_once_with("payment_confirmed", "awa@example.com", CONTEXT)
    rows = logs(session_factory)
    assert len(rows) == 1
    assert rows[0].result == "sent"
    assert rows[0].payment_id == "pay-1"


def test_notifier_failure_is_recorded_not_raised(session_factory):
    notifier = MagicMock()
    notifier.notify.side_effect = NotifierUnavailable("email API unreachable")
    service = NotificationService(session_factory, notifier)

    asyncio.run(service.handle_request(envelope(kind="payment_failed")))

    rows = logs(session_factory)
    assert rows[0].result == "failed"
    assert rows[0].kind == "payment_failed"
    assert "unreachable" in rows[0].error


def test_request_without_recipient_is_ignored(session_factory):
    notifier = MagicMock()
    service = NotificationService(session_factory, notifier)

    asyncio.run(service.handle_request(envelope(recipient=None)))

    notifier.notify.assert_not_called()
    assert logs(session_factory) == []


def test_email_notifier_posts_to_resend():
    sent = {}

    def handler(request: httpx.Request) -> httpx.Response:
        sent["auth"] = request.headers["authorization"]
        sent["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email-1"})

    config = CommonSettings(postgres_dsn="sqlite://", resend_api_key="re_test")
    EmailNotifier(config, transport=httpx.MockTransport(handler)).notify(
        "payment_confirmed", "awa@example.com", CONTEXT
    )

    assert sent["auth"] == "Bearer re_test"
    assert sent["body"]["to"] == ["awa@example.com"]
    assert sent["body"]["subject"] == "Paiement confirmé - LF-2024-001"


def test_email_notifier_raises_on_rejection():
    config = CommonSettings(postgres_dsn="sqlite://", resend_api_key="re_test")
    notifier = EmailNotifier(config, transport=httpx.MockTransport(lambda request: httpx.Response(422)))

    with pytest.raises(NotifierUnavailable):
        notifier.notify("payment_failed", "awa@example.com", CONTEXT)


def test_email_notifier_without_key_only_logs():
    def handler(request):
        raise AssertionError("no HTTP call expected")

    config = CommonSettings(postgres_dsn="sqlite://", resend_api_key=None)
    EmailNotifier(config, transport=httpx.MockTransport(handler)).notify(
        "payment_confirmed", "awa@example.com", CONTEXT
    )
