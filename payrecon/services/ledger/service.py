"""Append-only ledger of handled provider events.

Every event the reconciliation core handles produces exactly one entry whose
`event_type` encodes where it came from and what it did:

    <source>_<provider>_<outcome>[_<qualifier>]

e.g. `webhook_kkiapay_approved`, `verify_kkiapay_failed_new`,
`webhook_fedapay_approved_orphan`. The ledger is never read on the hot path
except for the approved-notification check.
"""

from sqlalchemy import or_, select

from payrecon.common.logging import logger
from payrecon.services.ledger.models import LedgerEntry

SOURCES = ("webhook", "verify", "create")
OUTCOMES = ("approved", "failed", "pending", "malformed", "initiated")
QUALIFIERS = ("new", "corrective", "duplicate", "notified", "noop", "stale", "orphan")

# Entries of an approved payment that went out with a confirmation email.
NOTIFYING_QUALIFIERS = frozenset({None, "new", "corrective", "notified"})


def ledger_event_type(source: str, provider: str, outcome: str, qualifier: str | None = None) -> str:
    """Build the event type string for one ledger entry."""

    parts = [source, provider, outcome]
    if qualifier:
        parts.append(qualifier)
    return "_".join(parts)


def parse_event_type(event_type: str) -> tuple[str, str, str, str | None]:
    """Split an event type back into (source, provider, outcome, qualifier)."""

    parts = event_type.split("_")
    if len(parts) < 3:
        raise ValueError(f"unrecognized ledger event type: {event_type}")
    qualifier = None
    if parts[-1] in QUALIFIERS:
        qualifier = parts.pop()
    source = parts[0]
    outcome = parts[-1]
    provider = "_".join(parts[1:-1])
    return source, provider, outcome, qualifier


def records_approved_notification(event_type: str) -> bool:
    try:
        _, _, outcome, qualifier = parse_event_type(event_type)
    except ValueError:
        return False
    return outcome == "approved" and qualifier in NOTIFYING_QUALIFIERS


class LedgerService:
    """Writes and reads `payment_logs` rows inside the caller's session."""

    def append(self, db, payment_id: str | None, event_type: str, event_data: dict) -> LedgerEntry:
        """Add one entry to the caller's transaction; never updates existing rows."""

        entry = LedgerEntry(payment_id=payment_id, event_type=event_type, event_data=event_data)
        db.add(entry)
        logger.info("ledger_append event_type=%s payment_id=%s", event_type, payment_id)
        return entry

    def append_orphan(self, session_factory, event_type: str, event_data: dict) -> None:
        """Record an event that never reached a payment, in its own transaction."""

        with session_factory() as db:
            self.append(db, None, event_type, event_data)
            db.commit()

    def event_types(self, db, payment_id: str) -> list[str]:
        return list(
            db.execute(
                select(LedgerEntry.event_type).where(LedgerEntry.payment_id == payment_id)
            ).scalars()
        )

    def has_approved_notification(self, db, payment_id: str) -> bool:
        """True when an earlier entry already sent the approval email for this payment."""

        return any(records_approved_notification(t) for t in self.event_types(db, payment_id))

    def history(self, db, transaction_id: str, payment_id: str | None = None) -> list[LedgerEntry]:
        """Entries of one transaction, oldest first, including its orphan events."""

        # Orphan rows carry the transaction id only inside event_data.
        clauses = [LedgerEntry.payment_id.is_(None)]
        if payment_id is not None:
            clauses.append(LedgerEntry.payment_id == payment_id)
        rows = db.execute(
            select(LedgerEntry).where(or_(*clauses)).order_by(LedgerEntry.created_at, LedgerEntry.id)
        ).scalars().all()
        return [
            row
            for row in rows
            if row.payment_id is not None or str((row.event_data or {}).get("transaction_id")) == transaction_id
        ]
