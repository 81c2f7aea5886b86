"""Contact-identifier matching and caller identity lookup.

Phone numbers reach the system in many shapes (`07 09 67 79 25`,
`+2250709677925`, `002250709677925`, ...). `phone_variants` expands one input
into the bounded set of forms that may be stored on a request; the matcher
queries both request tables with all of them. Matching is heuristic: it feeds
public tracking and orphan-event hints, never a payment state change.
"""

import re

import httpx
from sqlalchemy import or_, select

from payrecon.common.config import settings
from payrecon.common.errors import InvalidIdentifier
from payrecon.common.logging import logger
from payrecon.services.reconciliation.models import CompanyRequest, ServiceRequest

PHONE_MIN_LENGTH = 8
PHONE_MAX_LENGTH = 20
_PUNCTUATION = re.compile(r"[\s\-\.\(\)/]")
_DIGITS = re.compile(r"\+?[0-9]+")


def national_number(cleaned: str, country_code: str) -> str:
    """Strip an international prefix (`+CC`, `00CC`, or bare `CC` on long numbers)."""

    for prefix in (f"+{country_code}", f"00{country_code}"):
        if cleaned.startswith(prefix):
            return cleaned[len(prefix):]
    if cleaned.startswith(country_code) and len(cleaned) > 10:
        return cleaned[len(country_code):]
    return cleaned


def phone_variants(phone: str, country_code: str | None = None) -> set[str]:
    """Every stored form the given phone number could take."""

    if not isinstance(phone, str):
        raise InvalidIdentifier("phone must be a string")
    trimmed = phone.strip()
    if not PHONE_MIN_LENGTH <= len(trimmed) <= PHONE_MAX_LENGTH:
        raise InvalidIdentifier("Invalid phone number format")

    country_code = country_code or settings.phone_country_code
    cleaned = _PUNCTUATION.sub("", trimmed)
    if not _DIGITS.fullmatch(cleaned):
        raise InvalidIdentifier("Invalid phone number format")
    national = national_number(cleaned, country_code)
    without_zero = national[1:] if national.startswith("0") else national
    nationals = {national, without_zero, f"0{without_zero}"}

    variants = {cleaned}
    for number in nationals:
        if not number:
            continue
        variants.update({number, f"{country_code}{number}", f"+{country_code}{number}", f"00{country_code}{number}"})
    return variants


def _phone_clause(column, variants: set[str]):
    clauses = []
    for variant in sorted(variants):
        clauses.append(column.contains(variant, autoescape=True))
        clauses.append(column == variant)
    return or_(*clauses)


def tracking_row(record, request_type: str) -> dict:
    """Public projection of a request: no email, no phone."""

    row = {
        "id": record.id,
        "type": request_type,
        "tracking_number": record.tracking_number,
        "status": record.status,
        "payment_status": record.payment_status,
        "company_name": record.company_name,
        "estimated_price": record.estimated_price,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }
    if request_type == "service":
        row["service_type"] = record.service_type
    return row


class PhoneMatcher:
    """Finds company and service requests by any form of a phone number."""

    def __init__(self, country_code: str | None = None) -> None:
        self.country_code = country_code or settings.phone_country_code

    def matching_records(self, db, phone: str) -> list[tuple[str, object]]:
        """(request_type, record) pairs, deduplicated by id, newest first."""

        variants = phone_variants(phone, self.country_code)
        logger.info("phone_lookup variants=%s", len(variants))
        merged: dict[str, tuple[str, object]] = {}
        for request_type, model, column in (
            ("company", CompanyRequest, CompanyRequest.phone),
            ("service", ServiceRequest, ServiceRequest.contact_phone),
        ):
            records = db.execute(select(model).where(_phone_clause(column, variants))).scalars().all()
            for record in records:
                merged.setdefault(record.id, (request_type, record))
        return sorted(
            merged.values(),
            key=lambda item: (item[1].created_at is not None, item[1].created_at),
            reverse=True,
        )

    def find_requests(self, db, phone: str) -> list[dict]:
        """Public tracking rows for every request matching the phone number."""

        return [tracking_row(record, request_type) for request_type, record in self.matching_records(db, phone)]

    def candidate_request_ids(self, db, phone: str | None) -> list[dict]:
        """Unpaid requests that could own an unattached provider event."""

        if not phone:
            return []
        try:
            records = self.matching_records(db, phone)
        except InvalidIdentifier:
            return []
        return [
            {"request_id": record.id, "request_type": request_type}
            for request_type, record in records
            if record.payment_status != "paid"
        ]


class AuthClient:
    """Resolves bearer tokens to user ids through the auth collaborator."""

    def __init__(self, config=None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config or settings
        self.transport = transport

    async def user_id_for(self, authorization: str | None) -> str | None:
        """User id for an `Authorization: Bearer ...` header, None when unknown."""

        if not authorization or not self.config.auth_url:
            return None
        token = authorization.removeprefix("Bearer ").strip()
        if not token:
            return None
        headers = {"Authorization": f"Bearer {token}"}
        if self.config.auth_api_key:
            headers["apikey"] = self.config.auth_api_key
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self.transport) as client:
                resp = await client.get(f"{self.config.auth_url.rstrip('/')}/auth/v1/user", headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("auth lookup failed error=%s", exc)
            return None
        if resp.status_code != 200:
            logger.info("auth lookup rejected status_code=%s", resp.status_code)
            return None
        try:
            user_id = resp.json().get("id")
        except ValueError:
            return None
        return str(user_id) if user_id else None
