"""Ledger database model: the append-only payment event log."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from payrecon.common.db import Base, JSONType


class LedgerEntry(Base):
    """Immutable record of one handled provider event and its effect.

    `payment_id` is empty for orphan and malformed events. Rows are never
    updated or deleted; on PostgreSQL a trigger rejects both.
    """

    __tablename__ = "payment_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    event_data: Mapped[dict] = mapped_column(JSONType)
    # Python-side default keeps sub-second ordering on every backend.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )
