"""Canonical provider event shared by webhook and verify paths."""

from typing import Any, Literal

from pydantic import BaseModel, Field


class PaymentEvent(BaseModel):
    """One provider-reported fact about a transaction, after normalization."""

    transaction_id: str = Field(min_length=1)
    provider: str
    source: Literal["webhook", "verify"]
    provider_status: str | None = None
    status: Literal["pending", "approved", "failed"]
    status_defaulted: bool = False
    amount: int | None = None
    request_id: str | None = None
    request_type: Literal["company", "service"] | None = None
    phone: str | None = None
    email: str | None = None
    name: str | None = None
    user_id: str | None = None
    event_name: str | None = None
    payment_method: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    def has_creation_context(self) -> bool:
        """Enough information to create a payment nobody created yet."""

        return bool(self.request_id) and self.amount is not None
