"""Normalization of provider payloads into `PaymentEvent`.

Providers disagree on field names and wrap the transaction in envelopes of
varying depth (`{"entity": ...}`, `{"data": {"entity": ...}}`, `{"v1": ...}`).
The adapter digs until it finds a transaction id, then reads the remaining
fields from that object, falling back to the outer payload.
"""

import json
from typing import Any

import httpx

from payrecon.common.config import settings
from payrecon.common.errors import MalformedPayload
from payrecon.common.logging import logger
from payrecon.common.metrics import provider_verify_fallback_total
from payrecon.services.provider_adapter.schemas import PaymentEvent
from payrecon.services.provider_adapter.signatures import SignatureVerifier, verifier_for
from payrecon.services.provider_adapter.status_map import FEDAPAY, KKIAPAY, PROVIDERS, map_status

TRANSACTION_ID_KEYS = ("transactionId", "transaction_id", "id")
STATUS_KEYS = ("status", "state")
EVENT_NAME_KEYS = ("name", "event", "type")
ENVELOPE_KEYS = ("entity", "data", "v1", "transaction", "object")
METADATA_KEYS = ("metadata", "custom_metadata")
REQUEST_ID_KEYS = ("request_id", "requestId")
REQUEST_TYPE_KEYS = ("request_type", "requestType")
MAX_ENVELOPE_DEPTH = 4

# Status assumed when the synchronous status API cannot be asked.
VERIFY_FALLBACK_STATUS = "SUCCESS"


def _first(data: dict, keys) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _request_type(value: str | None) -> str:
    return "service" if value == "service" else "company"


def parse_amount(value: Any) -> int | None:
    """Whole currency units; None for anything that is not a non-negative number."""

    if value is None or isinstance(value, bool):
        return None
    try:
        amount = round(float(value))
    except (TypeError, ValueError):
        return None
    return amount if amount >= 0 else None


def unwrap_envelope(payload: dict) -> dict:
    """Descend through envelope keys until an object carries a transaction id.

    An explicit `transactionId`/`transaction_id` stops the descent. Envelopes
    carry their own event `id`, so for a bare `id` the deepest object having
    one wins.
    """

    current = payload
    deepest_with_id = None
    for _ in range(MAX_ENVELOPE_DEPTH):
        if _first(current, TRANSACTION_ID_KEYS[:2]) is not None:
            return current
        if _first(current, ("id",)) is not None:
            deepest_with_id = current
        inner = next((current[key] for key in ENVELOPE_KEYS if isinstance(current.get(key), dict)), None)
        if inner is None:
            break
        current = inner
    return deepest_with_id if deepest_with_id is not None else current


def infer_provider(headers, payload: dict | None = None) -> str:
    """Guess the provider of an unrouted webhook from headers, then body shape."""

    names = {key.lower() for key in headers.keys()}
    if "x-fedapay-signature" in names:
        return FEDAPAY
    if "x-kkiapay-signature" in names or "x-kkiapay-secret" in names:
        return KKIAPAY
    if isinstance(payload, dict) and (
        isinstance(payload.get("entity"), dict)
        or (isinstance(payload.get("data"), dict) and isinstance(payload["data"].get("entity"), dict))
    ):
        return FEDAPAY
    return KKIAPAY


class ProviderAdapter:
    """Turns webhook bodies and status API answers into canonical events."""

    def __init__(self, config=None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config or settings
        self.transport = transport

    def verifier(self, provider: str) -> SignatureVerifier:
        return verifier_for(provider, self.config)

    def decode(self, body: bytes, provider: str = "unknown") -> dict:
        """JSON-decode a webhook body into a dict or raise `MalformedPayload`."""

        excerpt = body[:500].decode("utf-8", errors="replace")
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedPayload(f"invalid JSON payload: {exc}", provider, excerpt) from exc
        if not isinstance(payload, dict):
            raise MalformedPayload("JSON payload is not an object", provider, excerpt)
        return payload

    def parse_webhook(self, provider: str, body: bytes | dict) -> PaymentEvent:
        """Normalize one webhook body; raises `MalformedPayload`."""

        payload = body if isinstance(body, dict) else self.decode(body, provider)
        return self.normalize(provider, payload, source="webhook")

    def normalize(self, provider: str, payload: dict, source: str) -> PaymentEvent:
        if provider not in PROVIDERS:
            raise MalformedPayload(f"unknown provider: {provider}", provider)
        transaction = unwrap_envelope(payload)
        transaction_id = _as_text(_first(transaction, TRANSACTION_ID_KEYS))
        if transaction_id is None:
            raise MalformedPayload(
                "missing transaction id",
                provider,
                ",".join(sorted(transaction.keys()))[:500],
            )

        event_name = _as_text(_first(payload, EVENT_NAME_KEYS)) or _as_text(_first(transaction, EVENT_NAME_KEYS))
        provider_status = self._provider_status(transaction, payload, event_name)
        status, defaulted = map_status(provider, provider_status, default=self.config.unknown_status_default)

        metadata = self._metadata(transaction, payload)
        customer = self._customer(transaction, payload)
        request_id = _as_text(_first(metadata, REQUEST_ID_KEYS))
        request_type = _as_text(_first(metadata, REQUEST_TYPE_KEYS))

        event = PaymentEvent(
            transaction_id=transaction_id,
            provider=provider,
            source=source,
            provider_status=provider_status,
            status=status,
            status_defaulted=defaulted,
            amount=parse_amount(_first(transaction, ("amount",)) or _first(metadata, ("amount",))),
            request_id=request_id,
            request_type=_request_type(request_type) if request_id else None,
            phone=customer.get("phone"),
            email=customer.get("email"),
            name=customer.get("name"),
            event_name=event_name,
            payment_method=_as_text(_first(transaction, ("mode", "payment_method", "source"))),
            raw=payload,
        )
        logger.info(
            "provider_event_normalized provider=%s source=%s transaction_id=%s provider_status=%s status=%s",
            provider,
            source,
            event.transaction_id,
            provider_status,
            status,
        )
        return event

    def _provider_status(self, transaction: dict, payload: dict, event_name: str | None) -> str | None:
        status = _as_text(_first(transaction, STATUS_KEYS)) or _as_text(_first(payload, STATUS_KEYS))
        if status:
            return status
        # KkiaPay webhooks carry a boolean flag and an event name instead of a status.
        for data in (transaction, payload):
            flag = data.get("isPaymentSucces", data.get("isPaymentSuccess"))
            if isinstance(flag, bool):
                return "SUCCESS" if flag else "FAILED"
        if event_name and "." in event_name:
            return event_name.rsplit(".", 1)[1]
        return None

    def _metadata(self, transaction: dict, payload: dict) -> dict:
        merged: dict = {}
        for data in (payload, transaction):
            for key in REQUEST_ID_KEYS + REQUEST_TYPE_KEYS + ("amount",):
                if data.get(key) not in (None, ""):
                    merged[key] = data[key]
            for key in METADATA_KEYS:
                if isinstance(data.get(key), dict):
                    merged.update({k: v for k, v in data[key].items() if v not in (None, "")})
            partner = data.get("partnerId")
            if isinstance(partner, str) and partner and "request_id" not in merged:
                merged["request_id"] = partner
        return merged

    def _customer(self, transaction: dict, payload: dict) -> dict:
        found: dict[str, str | None] = {"phone": None, "email": None, "name": None}
        for data in (transaction, payload):
            for holder in (data.get("customer"), data.get("client"), data):
                if not isinstance(holder, dict):
                    continue
                phone = holder.get("phone_number", holder.get("phone"))
                if isinstance(phone, dict):
                    phone = phone.get("number")
                found["phone"] = found["phone"] or _as_text(phone)
                found["email"] = found["email"] or _as_text(holder.get("email"))
                full_name = holder.get("fullname") or holder.get("name")
                if not isinstance(full_name, str):
                    full_name = " ".join(
                        part for part in (holder.get("firstname"), holder.get("lastname")) if isinstance(part, str)
                    )
                found["name"] = found["name"] or _as_text(full_name)
        return found

    async def fetch_status(self, transaction_id: str) -> tuple[str, dict | None]:
        """Ask KkiaPay for the authoritative status of one transaction.

        Without a private key, or when the call fails, the transaction is
        assumed successful and `(VERIFY_FALLBACK_STATUS, None)` is returned.
        """

        if not self.config.kkiapay_private_key:
            logger.warning("kkiapay private key not configured; assuming success transaction_id=%s", transaction_id)
            self._count_fallback("unconfigured")
            return VERIFY_FALLBACK_STATUS, None

        try:
            async with httpx.AsyncClient(
                timeout=self.config.provider_timeout_seconds,
                transport=self.transport,
            ) as client:
                resp = await client.post(
                    f"{self.config.kkiapay_api_url.rstrip('/')}/api/v1/transactions/status",
                    headers={"x-private-key": self.config.kkiapay_private_key},
                    json={"transactionId": transaction_id},
                )
        except httpx.HTTPError as exc:
            logger.warning("kkiapay status call failed transaction_id=%s error=%s", transaction_id, exc)
            self._count_fallback("network")
            return VERIFY_FALLBACK_STATUS, None

        if resp.status_code >= 400:
            logger.warning(
                "kkiapay status call rejected transaction_id=%s status_code=%s",
                transaction_id,
                resp.status_code,
            )
            self._count_fallback("http_status")
            return VERIFY_FALLBACK_STATUS, None
        try:
            data = resp.json()
        except ValueError:
            logger.warning("kkiapay status response is not JSON transaction_id=%s", transaction_id)
            self._count_fallback("invalid_body")
            return VERIFY_FALLBACK_STATUS, None
        if not isinstance(data, dict):
            self._count_fallback("invalid_body")
            return VERIFY_FALLBACK_STATUS, None
        return str(data.get("status") or VERIFY_FALLBACK_STATUS), data

    def verify_event(
        self,
        transaction_id: str,
        provider_status: str,
        data: dict | None,
        request_id: str | None = None,
        request_type: str | None = None,
        amount: int | None = None,
        user_id: str | None = None,
    ) -> PaymentEvent:
        """Build the event for a client-initiated verification."""

        status, defaulted = map_status(KKIAPAY, provider_status, default=self.config.unknown_status_default)
        data = data or {}
        if amount is None:
            amount = parse_amount(data.get("amount"))
        return PaymentEvent(
            transaction_id=transaction_id,
            provider=KKIAPAY,
            source="verify",
            provider_status=provider_status,
            status=status,
            status_defaulted=defaulted,
            amount=amount,
            request_id=request_id,
            request_type=_request_type(request_type) if request_id else None,
            phone=_as_text(data.get("phone")),
            email=_as_text(data.get("email")),
            user_id=user_id,
            payment_method=_as_text(data.get("source")) or KKIAPAY,
            raw={"transactionId": transaction_id, "kkiapay_data": data or None},
        )

    def _count_fallback(self, reason: str) -> None:
        provider_verify_fallback_total.labels(
            service=self.config.service_name,
            provider=KKIAPAY,
            reason=reason,
        ).inc()
