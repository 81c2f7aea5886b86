"""API request/response schemas for reconciliation endpoints."""

from pydantic import BaseModel, ConfigDict, Field


class VerifyPaymentRequest(BaseModel):
    """Client-side confirmation that the payment widget reported a transaction."""

    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str = Field(alias="transactionId", min_length=1)
    request_id: str | None = Field(default=None, alias="requestId")
    request_type: str | None = Field(default=None, alias="requestType")
    amount: int | None = Field(default=None, ge=0)


class CreatePaymentRequest(BaseModel):
    """Pending payment prepared before the KkiaPay widget opens."""

    model_config = ConfigDict(populate_by_name=True)

    amount: int = Field(gt=0)
    description: str | None = None
    request_id: str = Field(alias="requestId", min_length=1)
    request_type: str = Field(default="company", alias="requestType")
    customer_email: str = Field(alias="customerEmail", min_length=3)
    customer_name: str = Field(alias="customerName", min_length=1)
    customer_phone: str | None = Field(default=None, alias="customerPhone")


class TrackingRequest(BaseModel):
    """Public tracking lookup by phone number."""

    phone: str


class ReconciliationResult(BaseModel):
    """What one provider event did to the payment it concerns."""

    transaction_id: str
    payment_id: str | None = None
    payment_status: str
    request_status: str
    outcome: str
    notification_scheduled: bool = False
    warning: str | None = None

    def webhook_body(self) -> dict:
        body = {
            "success": True,
            "transactionId": self.transaction_id,
            "paymentStatus": self.payment_status,
            "requestStatus": self.request_status,
        }
        if self.warning:
            body["warning"] = self.warning
        return body
