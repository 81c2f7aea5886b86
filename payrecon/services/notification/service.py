"""Notification consumer for payment outcome emails.

The reconciliation core writes one outbox row per email it wants sent; the
gateway publishes it to `payments.notifications`. This service consumes the
topic, dedupes envelopes through the inbox table and hands them to a
`Notifier`. Delivery failures are logged, counted and stored, never re-raised:
the payment outcome they describe is already committed.
"""

from typing import Protocol

import httpx
from sqlalchemy import select

from payrecon.common.config import settings
from payrecon.common.errors import NotifierUnavailable
from payrecon.common.events import EventEnvelope, consume_forever
from payrecon.common.logging import logger
from payrecon.common.metrics import notifications_total
from payrecon.services.notification.models import InboxEvent, NotificationLog
from payrecon.services.notification.templates import render

NOTIFICATION_KINDS = ("payment_confirmed", "payment_failed")


class Notifier(Protocol):
    def notify(self, kind: str, recipient: str, context: dict) -> None: ...


class EmailNotifier:
    """Sends rendered emails through the Resend HTTP API."""

    def __init__(self, config=None, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config or settings
        self.transport = transport

    def notify(self, kind: str, recipient: str, context: dict) -> None:
        subject, html = render(kind, context)
        if not self.config.resend_api_key:
            logger.info("email not sent (no api key) kind=%s recipient=%s subject=%s", kind, recipient, subject)
            return
        try:
            with httpx.Client(timeout=10.0, transport=self.transport) as client:
                resp = client.post(
                    self.config.resend_api_url,
                    headers={"Authorization": f"Bearer {self.config.resend_api_key}"},
                    json={"from": self.config.email_from, "to": [recipient], "subject": subject, "html": html},
                )
        except httpx.HTTPError as exc:
            raise NotifierUnavailable(f"email API unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise NotifierUnavailable(f"email API rejected message status_code={resp.status_code}")
        logger.info("email sent kind=%s recipient=%s", kind, recipient)


class NotificationService:
    """Delivers notification requests exactly once per envelope."""

    def __init__(self, session_factory, notifier: Notifier | None = None, service_name: str = "notification") -> None:
        self.session_factory = session_factory
        self.notifier = notifier or EmailNotifier()
        self.service_name = service_name

    def _inbox_seen(self, db, event_id: str) -> bool:
        return (
            db.execute(
                select(InboxEvent).where(
                    InboxEvent.event_id == event_id,
                    InboxEvent.consumed_by_service == self.service_name,
                )
            ).scalar_one_or_none()
            is not None
        )

    def _mark_inbox(self, db, event_id: str) -> None:
        db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))

    async def handle_request(self, event: EventEnvelope) -> None:
        """Send one notification, skipping envelopes already consumed."""

        kind = event.payload.get("kind", event.event_type)
        recipient = event.payload.get("recipient")
        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate notification skipped event_id=%s kind=%s", event.event_id, kind)
                return
            if kind not in NOTIFICATION_KINDS or not recipient:
                logger.warning("notification request ignored event_id=%s kind=%s", event.event_id, kind)
                self._mark_inbox(db, event.event_id)
                db.commit()
                return

            result, error = "sent", None
            try:
                self.notifier.notify(kind, recipient, event.payload.get("context") or {})
            except Exception as exc:
                result, error = "failed", str(exc)
                logger.error(
                    "notification failed payment_id=%s kind=%s error=%s",
                    event.aggregate_id,
                    kind,
                    exc,
                )
            notifications_total.labels(service=self.service_name, kind=kind, result=result).inc()
            db.add(
                NotificationLog(
                    payment_id=event.aggregate_id,
                    kind=kind,
                    recipient=recipient,
                    result=result,
                    error=error,
                )
            )
            self._mark_inbox(db, event.event_id)
            db.commit()

    async def start_consumers(self) -> None:
        """Consume notification requests until cancelled."""

        await consume_forever(settings.notification_topic, "notification-email", self.handle_request)
