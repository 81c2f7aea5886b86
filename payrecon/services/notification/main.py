"""Notification service lifecycle and lightweight read endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import select

from payrecon.common.config import settings
from payrecon.common.db import SessionLocal
from payrecon.common.logging import configure_logging
from payrecon.common.metrics import metrics_response
from payrecon.common.startup import log_startup_config
from payrecon.common.tracing import instrument_app, setup_tracing
from payrecon.services.notification.models import NotificationLog
from payrecon.services.notification.service import NotificationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "NOTIFICATION_TOPIC", "RESEND_API_KEY", "EMAIL_FROM"],
)
service = NotificationService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumer loop with FastAPI application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="Payment Notification Service", lifespan=lifespan)
instrument_app(app)


@app.get("/notifications/{payment_id}")
def notifications(payment_id: str):
    """Delivery attempts recorded for one payment."""

    with SessionLocal() as db:
        rows = db.execute(
            select(NotificationLog).where(NotificationLog.payment_id == payment_id).order_by(NotificationLog.created_at)
        ).scalars()
        return [
            {"kind": row.kind, "recipient": row.recipient, "result": row.result, "error": row.error}
            for row in rows
        ]


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
