"""Payment reconciliation core.

Applies canonical provider events to payments exactly once. Webhooks and
client verify calls share `apply_event`; correlation runs through the
database only (unique transaction id, conditional updates on
`(status, state_version)`), so duplicate or racing deliveries converge on one
state change, one request update and one notification.
"""

import re
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from payrecon.common.config import settings
from payrecon.common.errors import (
    InsufficientContext,
    MalformedPayload,
    RequestAccessDenied,
    RequestNotFound,
)
from payrecon.common.events import EventEnvelope
from payrecon.common.logging import logger, payment_id_ctx, trace_id_ctx, transaction_id_ctx
from payrecon.common.metrics import (
    duplicate_events_skipped_total,
    orphan_events_total,
    reconciliation_events_total,
    reconciliation_latency_seconds,
    transition_conflicts_total,
)
from payrecon.common.state_machine import (
    APPROVED,
    CORRECTIVE,
    DUPLICATE,
    FAILED,
    NOOP,
    PENDING,
    STALE,
    classify_transition,
)
from payrecon.common.tracing import tracer
from payrecon.services.identity.service import PhoneMatcher
from payrecon.services.ledger.service import LedgerService, ledger_event_type
from payrecon.services.provider_adapter.schemas import PaymentEvent
from payrecon.services.reconciliation.models import OutboxEvent, Payment, request_model
from payrecon.services.reconciliation.schemas import CreatePaymentRequest, ReconciliationResult

# Request.payment_status / Request.status mirrored from the payment status.
REQUEST_MIRROR: dict[str, tuple[str, str]] = {
    APPROVED: ("paid", "payment_confirmed"),
    FAILED: ("failed", "payment_failed"),
    PENDING: ("pending", "payment_pending"),
}
NOTIFICATION_KINDS = {APPROVED: "payment_confirmed", FAILED: "payment_failed"}
MAX_TRANSITION_ATTEMPTS = 3


def _digits(phone: str | None) -> str | None:
    if not phone:
        return None
    return re.sub(r"[^0-9]", "", phone) or None


class ReconciliationService:
    """Owns the payment state machine and the request status mirror."""

    def __init__(
        self,
        session_factory,
        ledger: LedgerService | None = None,
        matcher: PhoneMatcher | None = None,
        config=None,
        service_name: str = "reconciliation",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger or LedgerService()
        self.matcher = matcher or PhoneMatcher()
        self.config = config or settings
        self.service_name = service_name

    def apply_event(self, event: PaymentEvent) -> ReconciliationResult:
        """Apply one provider event; safe to call any number of times."""

        tx_token = transaction_id_ctx.set(event.transaction_id)
        try:
            with tracer.start_as_current_span("reconciliation.apply_event") as span, \
                    reconciliation_latency_seconds.labels(service=self.service_name, source=event.source).time():
                span.set_attribute("payment.transaction_id", event.transaction_id)
                span.set_attribute("payment.provider", event.provider)
                payment_id, created = self._resolve_payment(event)
                if payment_id is None:
                    result = self._record_orphan(event)
                else:
                    payment_token = payment_id_ctx.set(payment_id)
                    try:
                        result = self._advance(event, payment_id, created)
                    finally:
                        payment_id_ctx.reset(payment_token)
                span.set_attribute("reconciliation.outcome", result.outcome)
        finally:
            transaction_id_ctx.reset(tx_token)

        reconciliation_events_total.labels(
            service=self.service_name,
            source=event.source,
            provider=event.provider,
            outcome=result.outcome,
        ).inc()
        return result

    def _by_transaction(self, db, transaction_id: str) -> Payment | None:
        return db.execute(
            select(Payment).where(Payment.transaction_id == transaction_id)
        ).scalar_one_or_none()

    def _resolve_payment(self, event: PaymentEvent) -> tuple[str | None, bool]:
        """Find, attach or create the payment an event belongs to.

        Returns `(payment_id, created)`; `payment_id` is None for orphans.
        """

        with self.session_factory() as db:
            existing = self._by_transaction(db, event.transaction_id)
            if existing is not None:
                return existing.id, False
            if event.request_id:
                claimed = self._claim_unattached(db, event)
                if claimed is not None:
                    return claimed, False
        if not event.has_creation_context():
            return None, False
        return self._create_from_event(event)

    def _claim_unattached(self, db, event: PaymentEvent) -> str | None:
        """Attach the transaction to the newest pending payment of its request.

        Covers payments prepared by `create_payment` before the provider
        assigned a transaction id.
        """

        candidate_id = db.execute(
            select(Payment.id)
            .where(
                Payment.request_id == event.request_id,
                Payment.transaction_id.is_(None),
                Payment.status == PENDING,
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if candidate_id is None:
            return None

        # The unique transaction id may already sit on another payment.
        try:
            result = db.execute(
                update(Payment)
                .where(Payment.id == candidate_id, Payment.transaction_id.is_(None))
                .values(
                    transaction_id=event.transaction_id,
                    provider=event.provider,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = self._by_transaction(db, event.transaction_id)
            return existing.id if existing is not None else None
        if result.rowcount != 1:
            existing = self._by_transaction(db, event.transaction_id)
            return existing.id if existing is not None else None
        logger.info(
            "transaction attached to prepared payment payment_id=%s request_id=%s",
            candidate_id,
            event.request_id,
        )
        return candidate_id

    def _create_from_event(self, event: PaymentEvent) -> tuple[str, bool]:
        """Create a pending payment for a provider event that arrived first."""

        with self.session_factory() as db:
            record = db.get(request_model(event.request_type), event.request_id)
            payment = Payment(
                transaction_id=event.transaction_id,
                request_id=event.request_id,
                request_type=event.request_type or "company",
                user_id=event.user_id or (record.user_id if record is not None else None),
                amount=event.amount,
                currency=self.config.default_currency,
                status=PENDING,
                state_version=0,
                provider=event.provider,
                payment_method=event.payment_method,
                customer_email=(record.contact_email if record is not None else None) or event.email,
                customer_name=(record.contact_name if record is not None else None) or event.name,
                customer_phone=_digits((record.contact_phone_number if record is not None else None) or event.phone),
                tracking_number=record.tracking_number if record is not None else None,
                provider_payload=event.raw,
            )
            db.add(payment)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self._by_transaction(db, event.transaction_id)
                if existing is None:
                    raise
                logger.info("concurrent payment creation resolved payment_id=%s", existing.id)
                return existing.id, False
            logger.info(
                "payment created from provider event payment_id=%s request_id=%s amount=%s",
                payment.id,
                event.request_id,
                event.amount,
            )
            return payment.id, True

    def _advance(self, event: PaymentEvent, payment_id: str, created: bool) -> ReconciliationResult:
        with self.session_factory() as db:
            for attempt in range(1, MAX_TRANSITION_ATTEMPTS + 1):
                payment = db.get(Payment, payment_id, populate_existing=True)
                decision = classify_transition(payment.status, event.status)
                if decision in (DUPLICATE, NOOP, STALE):
                    return self._record_unchanged(db, event, payment, decision, created)
                previous = payment.status
                if self._conditional_update(db, payment, event):
                    db.refresh(payment)
                    return self._record_transition(db, event, payment, previous, decision, created)
                transition_conflicts_total.labels(service=self.service_name).inc()
                logger.info(
                    "transition conflict payment_id=%s expected_status=%s attempt=%s",
                    payment_id,
                    previous,
                    attempt,
                )
                db.rollback()
        raise RuntimeError(f"payment {payment_id} kept changing during reconciliation")

    def _conditional_update(self, db, payment: Payment, event: PaymentEvent) -> bool:
        """Write the new status only if nobody moved the payment since it was read."""

        values = {
            "status": event.status,
            "state_version": payment.state_version + 1,
            "provider_payload": event.raw,
            "updated_at": datetime.now(timezone.utc),
        }
        if event.payment_method:
            values["payment_method"] = event.payment_method
        if event.user_id and not payment.user_id:
            values["user_id"] = event.user_id
        result = db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status == payment.status,
                Payment.state_version == payment.state_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _load_request(self, db, payment: Payment, event: PaymentEvent):
        request_id = payment.request_id or event.request_id
        if not request_id:
            return None, None
        request_type = payment.request_type or event.request_type
        record = db.get(request_model(request_type), request_id)
        if record is None:
            return None, RequestNotFound(request_type or "company", request_id)
        return record, None

    def _mirror_request(self, db, payment: Payment, event: PaymentEvent):
        """Copy the payment outcome onto the owning request.

        Returns `(record, request_status, warning)`; a missing request is logged
        and reported, the payment update stands.
        """

        record, missing = self._load_request(db, payment, event)
        if missing is not None:
            logger.warning("%s; payment update kept payment_id=%s", missing, payment.id)
            return None, "request_not_found", str(missing)
        if record is None:
            return None, "no_request", None
        payment_status, request_status = REQUEST_MIRROR[payment.status]
        record.payment_status = payment_status
        record.status = request_status
        record.payment_id = payment.id
        record.updated_at = datetime.now(timezone.utc)
        return record, request_status, None

    def _schedule_notification(self, db, payment: Payment, record) -> str | None:
        """Queue the outcome email in the current transaction (outbox)."""

        kind = NOTIFICATION_KINDS.get(payment.status)
        if kind is None:
            return None
        if not payment.customer_email:
            logger.warning("no recipient for %s notification payment_id=%s", kind, payment.id)
            return None
        context = {
            "customer_name": payment.customer_name,
            "tracking_number": payment.tracking_number
            or (payment.request_id[:8].upper() if payment.request_id else None),
            "company_name": record.label if record is not None else None,
            "amount": payment.amount,
            "currency": payment.currency,
            "transaction_id": payment.transaction_id,
            "request_type": payment.request_type,
        }
        envelope = EventEnvelope(
            event_type=kind,
            aggregate_id=payment.id,
            trace_id=trace_id_ctx.get(),
            payload={"kind": kind, "recipient": payment.customer_email, "context": context},
        )
        db.add(
            OutboxEvent(
                aggregate_type="payment",
                aggregate_id=payment.id,
                event_type=kind,
                topic=self.config.notification_topic,
                payload=envelope.model_dump(),
            )
        )
        return kind

    def _ledger_data(self, event: PaymentEvent, payment: Payment | None, **extra) -> dict:
        data = {
            "transaction_id": event.transaction_id,
            "provider": event.provider,
            "provider_status": event.provider_status,
            "status_defaulted": event.status_defaulted,
            "event_name": event.event_name,
            "request_id": event.request_id,
            "request_type": event.request_type,
            "amount": event.amount,
            "user_id": event.user_id,
            "raw_data": event.raw,
        }
        if payment is not None and event.amount is not None and event.amount != payment.amount:
            logger.warning(
                "amount mismatch payment_id=%s expected=%s reported=%s",
                payment.id,
                payment.amount,
                event.amount,
            )
            data["amount_mismatch"] = {"expected": payment.amount, "reported": event.amount}
        data.update(extra)
        return data

    def _record_transition(
        self,
        db,
        event: PaymentEvent,
        payment: Payment,
        previous: str,
        decision: str,
        created: bool,
    ) -> ReconciliationResult:
        if decision == CORRECTIVE:
            logger.warning(
                "corrective transition payment_id=%s from=%s to=%s provider=%s",
                payment.id,
                previous,
                payment.status,
                event.provider,
            )
        record, request_status, warning = self._mirror_request(db, payment, event)
        notification = self._schedule_notification(db, payment, record)
        qualifier = "corrective" if decision == CORRECTIVE else ("new" if created else None)
        self.ledger.append(
            db,
            payment.id,
            ledger_event_type(event.source, event.provider, event.status, qualifier),
            self._ledger_data(
                event,
                payment,
                previous_status=previous,
                new_status=payment.status,
                request_status=request_status,
                request_warning=warning,
                notification=notification,
            ),
        )
        db.commit()
        logger.info(
            "payment transition applied payment_id=%s from=%s to=%s source=%s notification=%s",
            payment.id,
            previous,
            payment.status,
            event.source,
            notification,
        )
        return ReconciliationResult(
            transaction_id=event.transaction_id,
            payment_id=payment.id,
            payment_status=payment.status,
            request_status=request_status,
            outcome=decision if decision == CORRECTIVE else ("created" if created else "applied"),
            notification_scheduled=notification is not None,
            warning=warning,
        )

    def _record_unchanged(
        self,
        db,
        event: PaymentEvent,
        payment: Payment,
        decision: str,
        created: bool,
    ) -> ReconciliationResult:
        """Ledger-only handling for duplicates, pending no-ops and stale events."""

        notification = None
        warning = None
        qualifier = decision
        if created:
            # First sighting reported `pending`: the request starts waiting.
            record, request_status, warning = self._mirror_request(db, payment, event)
            qualifier = "new"
        else:
            record, _ = self._load_request(db, payment, event)
            request_status = record.status if record is not None else "no_request"
            if decision == DUPLICATE and payment.status == APPROVED:
                if not self.ledger.has_approved_notification(db, payment.id):
                    notification = self._schedule_notification(db, payment, record)
                    if notification is not None:
                        qualifier = "notified"
        self.ledger.append(
            db,
            payment.id,
            ledger_event_type(event.source, event.provider, event.status, qualifier),
            self._ledger_data(
                event,
                payment,
                current_status=payment.status,
                request_status=request_status,
                request_warning=warning,
                notification=notification,
            ),
        )
        db.commit()
        if not created:
            duplicate_events_skipped_total.labels(service=self.service_name, provider=event.provider).inc()
        logger.info(
            "payment unchanged payment_id=%s status=%s reported=%s decision=%s",
            payment.id,
            payment.status,
            event.status,
            decision,
        )
        return ReconciliationResult(
            transaction_id=event.transaction_id,
            payment_id=payment.id,
            payment_status=payment.status,
            request_status=request_status,
            outcome="created" if created else decision,
            notification_scheduled=notification is not None,
            warning=warning,
        )

    def _record_orphan(self, event: PaymentEvent) -> ReconciliationResult:
        reason = "missing request id" if not event.request_id else "missing amount"
        missing = InsufficientContext(
            f"no payment for transaction {event.transaction_id} and {reason} to create one"
        )
        with self.session_factory() as db:
            hints = [] if event.request_id else self.matcher.candidate_request_ids(db, event.phone)
            self.ledger.append(
                db,
                None,
                ledger_event_type(event.source, event.provider, event.status, "orphan"),
                self._ledger_data(event, None, reason=reason, candidate_requests=hints),
            )
            db.commit()
        orphan_events_total.labels(service=self.service_name, provider=event.provider, reason=reason).inc()
        logger.warning("%s candidates=%s", missing, len(hints))
        return ReconciliationResult(
            transaction_id=event.transaction_id,
            payment_id=None,
            payment_status=event.status,
            request_status="no_request",
            outcome="orphan",
            warning=str(missing),
        )

    def record_malformed(self, source: str, error: MalformedPayload) -> None:
        """Log an unparseable provider body as an orphan ledger entry."""

        orphan_events_total.labels(service=self.service_name, provider=error.provider, reason="malformed").inc()
        logger.warning("malformed provider payload provider=%s reason=%s", error.provider, error.reason)
        self.ledger.append_orphan(
            self.session_factory,
            ledger_event_type(source, error.provider, "malformed"),
            {"reason": error.reason, "body_excerpt": error.body_excerpt},
        )

    def create_payment(self, req: CreatePaymentRequest, user_id: str) -> dict:
        """Prepare a pending payment for the caller's own request."""

        model = request_model(req.request_type)
        request_type = "service" if req.request_type == "service" else "company"
        with self.session_factory() as db:
            record = db.get(model, req.request_id)
            if record is None:
                raise RequestNotFound(request_type, req.request_id)
            if record.user_id != user_id:
                raise RequestAccessDenied("You can only create payments for your own requests")

            payment = Payment(
                request_id=req.request_id,
                request_type=request_type,
                user_id=user_id,
                amount=req.amount,
                currency=self.config.default_currency,
                status=PENDING,
                state_version=0,
                provider="kkiapay",
                payment_method="kkiapay",
                customer_email=req.customer_email,
                customer_name=req.customer_name,
                customer_phone=_digits(req.customer_phone),
                tracking_number=record.tracking_number,
                provider_payload={"description": req.description, "company_name": record.company_name},
            )
            db.add(payment)
            db.flush()
            record.payment_status = "pending"
            record.updated_at = datetime.now(timezone.utc)
            self.ledger.append(
                db,
                payment.id,
                ledger_event_type("create", "kkiapay", "initiated"),
                {"request_id": req.request_id, "amount": req.amount, "customer_email": req.customer_email},
            )
            db.commit()
            logger.info("payment prepared payment_id=%s request_id=%s", payment.id, req.request_id)
            return {
                "success": True,
                "paymentMethod": "kkiapay",
                "paymentId": payment.id,
                "amount": payment.amount,
                "description": req.description
                or f"Paiement Legal Form - {record.tracking_number or req.request_id}",
                "trackingNumber": record.tracking_number,
                "requestId": req.request_id,
                "requestType": request_type,
                "customer": {
                    "name": req.customer_name,
                    "email": req.customer_email,
                    "phone": payment.customer_phone or "",
                },
            }
