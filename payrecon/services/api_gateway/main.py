"""Public HTTP surface of the reconciliation engine.

Provider webhooks and client verify calls both end in
`ReconciliationService.apply_event`. The gateway also serves public tracking
(Redis token bucket per client IP), payment preparation for the KkiaPay widget,
and the API-key protected ledger history. Notification outbox rows are drained
to Kafka by a background publisher bound to the app lifespan.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter, time
from uuid import uuid4

import redis
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy import select

from payrecon.common.config import settings
from payrecon.common.db import SessionLocal
from payrecon.common.errors import (
    InvalidIdentifier,
    MalformedPayload,
    RequestAccessDenied,
    RequestNotFound,
)
from payrecon.common.logging import configure_logging, logger, trace_id_ctx
from payrecon.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
)
from payrecon.common.outbox import OutboxPublisher
from payrecon.common.startup import log_startup_config
from payrecon.common.tracing import instrument_app, setup_tracing
from payrecon.services.identity.service import AuthClient, PhoneMatcher
from payrecon.services.provider_adapter.service import ProviderAdapter, infer_provider
from payrecon.services.provider_adapter.status_map import PROVIDERS
from payrecon.services.reconciliation.models import OutboxEvent, Payment
from payrecon.services.reconciliation.schemas import (
    CreatePaymentRequest,
    TrackingRequest,
    VerifyPaymentRequest,
)
from payrecon.services.reconciliation.service import ReconciliationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "KAFKA_BOOTSTRAP_SERVERS",
        "RATE_LIMIT_PER_MINUTE",
        "UNKNOWN_STATUS_DEFAULT",
        "REQUIRE_WEBHOOK_SIGNATURE",
        "FEDAPAY_WEBHOOK_SECRET",
        "KKIAPAY_WEBHOOK_SECRET",
        "KKIAPAY_PRIVATE_KEY",
        "AUTH_URL",
    ],
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-api-key, "
    "x-fedapay-signature, x-kkiapay-signature, x-kkiapay-secret",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}

service = ReconciliationService(SessionLocal, service_name=settings.service_name)
adapter = ProviderAdapter()
matcher = PhoneMatcher()
auth = AuthClient()
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
publisher = OutboxPublisher(SessionLocal, OutboxEvent, settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with FastAPI application lifecycle."""

    publisher_task = asyncio.create_task(publisher.run_forever())
    yield
    publisher_task.cancel()
    await publisher.kafka.close()


app = FastAPI(title="Payment Reconciliation Gateway", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_token = trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        trace_id_ctx.reset(trace_token)
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.middleware("http")
async def cors_middleware(request: Request, call_next):
    """Answer preflight requests and attach CORS headers to every response."""

    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def enforce_api_key(x_api_key: str | None) -> JSONResponse | None:
    """Rejection response for requests without the configured API key."""

    if x_api_key != settings.api_key:
        return error_response(401, "Invalid API key")
    return None


def rate_limit_key(request: Request) -> str:
    """Rate-limit key: the first forwarded address behind a proxy, else the peer."""

    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def enforce_token_bucket(client_key: str) -> bool:
    # Redis token bucket (capacity = refill rate = limit per minute).
    key = f"tokenbucket:tracking:{client_key}"
    now = time()
    capacity = float(settings.rate_limit_per_minute)
    refill_per_sec = capacity / 60.0

    try:
        values = rdb.hmget(key, "tokens", "updated_at")
    except redis.RedisError as exc:
        logger.warning("rate_limit_unavailable client=%s error=%s", client_key, exc)
        return True
    tokens = float(values[0]) if values[0] is not None else capacity
    updated_at = float(values[1]) if values[1] is not None else now
    elapsed = max(0.0, now - updated_at)
    tokens = min(capacity, tokens + elapsed * refill_per_sec)

    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0
    try:
        rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        rdb.expire(key, 120)
    except redis.RedisError as exc:
        logger.warning("rate_limit_write_failed client=%s error=%s", client_key, exc)
    return allowed


async def _json_body(request: Request) -> dict | JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        return error_response(400, "Invalid JSON body")
    if not isinstance(body, dict):
        return error_response(400, "JSON body must be an object")
    return body


async def _handle_webhook(request: Request, provider: str | None) -> JSONResponse:
    body = await request.body()
    if provider is not None and provider not in PROVIDERS:
        return error_response(404, f"unknown provider {provider}")
    try:
        payload = adapter.decode(body, provider or "unknown")
        provider = provider or infer_provider(request.headers, payload)
        verifier = adapter.verifier(provider)
        if not verifier.verify(body, request.headers.get(verifier.header)):
            logger.warning("webhook signature rejected provider=%s", provider)
            return error_response(401, "Invalid signature")
        event = adapter.normalize(provider, payload, source="webhook")
    except MalformedPayload as exc:
        if exc.provider == "unknown" and provider:
            exc.provider = provider
        service.record_malformed("webhook", exc)
        return error_response(400, exc.reason)

    try:
        result = service.apply_event(event)
    except Exception as exc:
        logger.exception("webhook processing failed provider=%s error=%s", provider, exc)
        return error_response(500, "Internal server error")
    return JSONResponse(status_code=200, content=result.webhook_body())


@app.post("/webhook")
async def webhook(request: Request):
    """Provider webhook without a provider in the path; provider is inferred."""

    return await _handle_webhook(request, None)


@app.post("/webhooks/{provider}")
async def provider_webhook(provider: str, request: Request):
    """Provider webhook routed by path."""

    return await _handle_webhook(request, provider)


@app.post("/payments/verify")
async def verify_payment(request: Request, authorization: str | None = Header(default=None)):
    """Client confirmation of a widget transaction, checked against KkiaPay."""

    body = await _json_body(request)
    if isinstance(body, JSONResponse):
        return body
    try:
        req = VerifyPaymentRequest.model_validate(body)
    except ValidationError:
        return error_response(400, "Transaction ID required")

    user_id = await auth.user_id_for(authorization)
    provider_status, data = await adapter.fetch_status(req.transaction_id)
    event = adapter.verify_event(
        req.transaction_id,
        provider_status,
        data,
        request_id=req.request_id,
        request_type=req.request_type,
        amount=req.amount,
        user_id=user_id,
    )
    try:
        result = service.apply_event(event)
    except Exception as exc:
        logger.exception("verify processing failed error=%s", exc)
        return error_response(500, "Internal server error")
    return {"success": True, "status": result.payment_status, "transactionId": result.transaction_id}


@app.post("/tracking")
async def tracking(request: Request):
    """Public lookup of requests by phone number."""

    if not enforce_token_bucket(rate_limit_key(request)):
        return error_response(429, "Too many requests")
    body = await _json_body(request)
    if isinstance(body, JSONResponse):
        return body
    try:
        req = TrackingRequest.model_validate(body)
    except ValidationError:
        return error_response(400, "Phone number is required")
    try:
        with service.session_factory() as db:
            rows = matcher.find_requests(db, req.phone)
    except InvalidIdentifier as exc:
        return error_response(400, str(exc))
    return {"requests": rows}


@app.post("/payments")
async def create_payment(request: Request, authorization: str | None = Header(default=None)):
    """Prepare a pending payment and return the KkiaPay widget data."""

    if not authorization:
        return error_response(401, "Missing authorization header")
    user_id = await auth.user_id_for(authorization)
    if user_id is None:
        return error_response(401, "Unauthorized")
    body = await _json_body(request)
    if isinstance(body, JSONResponse):
        return body
    try:
        req = CreatePaymentRequest.model_validate(body)
    except ValidationError:
        return error_response(400, "Missing required fields")
    try:
        return service.create_payment(req, user_id)
    except RequestNotFound:
        return error_response(404, "Request not found")
    except RequestAccessDenied as exc:
        return error_response(403, str(exc))


@app.get("/ledger/{transaction_id}")
def ledger_history(transaction_id: str, x_api_key: str | None = Header(default=None)):
    """Ledger entries of one transaction, orphan events included."""

    rejected = enforce_api_key(x_api_key)
    if rejected is not None:
        return rejected
    with service.session_factory() as db:
        payment = db.execute(select(Payment).where(Payment.transaction_id == transaction_id)).scalar_one_or_none()
        entries = service.ledger.history(db, transaction_id, payment.id if payment is not None else None)
        return {
            "transactionId": transaction_id,
            "payment": None
            if payment is None
            else {
                "id": payment.id,
                "status": payment.status,
                "amount": payment.amount,
                "currency": payment.currency,
                "request_id": payment.request_id,
                "request_type": payment.request_type,
                "state_version": payment.state_version,
            },
            "entries": [
                {
                    "id": entry.id,
                    "payment_id": entry.payment_id,
                    "event_type": entry.event_type,
                    "event_data": entry.event_data,
                    "created_at": entry.created_at.isoformat() if entry.created_at else None,
                }
                for entry in entries
            ],
        }


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
