"""Provider status tables.

Each provider reports its own vocabulary; lookups are case-insensitive. A status
that is missing from the table resolves to `settings.unknown_status_default`
(`approved` unless configured otherwise), and every such fallback is logged
and counted.
"""

from payrecon.common.config import settings
from payrecon.common.logging import logger
from payrecon.common.metrics import status_default_applied_total
from payrecon.common.state_machine import APPROVED, FAILED, PENDING

FEDAPAY = "fedapay"
KKIAPAY = "kkiapay"
PROVIDERS = (FEDAPAY, KKIAPAY)

STATUS_TABLES: dict[str, dict[str, str]] = {
    FEDAPAY: {
        "approved": APPROVED,
        "transferred": APPROVED,
        "completed": APPROVED,
        "success": APPROVED,
        "declined": FAILED,
        "canceled": FAILED,
        "cancelled": FAILED,
        "refunded": FAILED,
        "failed": FAILED,
        "expired": FAILED,
        "pending": PENDING,
        "created": PENDING,
    },
    KKIAPAY: {
        "success": APPROVED,
        "transaction_success": APPROVED,
        "failed": FAILED,
        "transaction_failed": FAILED,
        "insufficient_fund": FAILED,
        "transaction_not_found": FAILED,
        "canceled": FAILED,
        "pending": PENDING,
        "processing": PENDING,
        "initiated": PENDING,
    },
}


def lookup_status(provider: str, provider_status: str | None) -> str | None:
    """Table lookup only; None when the provider or status is not documented."""

    if provider_status is None:
        return None
    table = STATUS_TABLES.get(provider, {})
    return table.get(str(provider_status).strip().lower())


def map_status(provider: str, provider_status: str | None, default: str | None = None) -> tuple[str, bool]:
    """Resolve a provider status to (internal status, used_default)."""

    mapped = lookup_status(provider, provider_status)
    if mapped is not None:
        return mapped, False
    fallback = default or settings.unknown_status_default
    logger.warning(
        "unrecognized provider status provider=%s provider_status=%r resolved_to=%s",
        provider,
        provider_status,
        fallback,
    )
    status_default_applied_total.labels(
        service=settings.service_name,
        provider=provider,
        default=fallback,
    ).inc()
    return fallback, True
