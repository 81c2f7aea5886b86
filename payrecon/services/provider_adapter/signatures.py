"""Pluggable webhook authenticity checks.

Providers are untrusted input. A verifier is chosen per provider from the
configured secrets; without a secret every request is accepted.
"""

import hashlib
import hmac
from typing import Protocol

from payrecon.common.logging import logger
from payrecon.services.provider_adapter.status_map import FEDAPAY, KKIAPAY


class SignatureVerifier(Protocol):
    header: str

    def verify(self, body: bytes, signature: str | None) -> bool: ...


class NullVerifier:
    """Accepts everything; used when no webhook secret is configured."""

    header = ""

    def verify(self, body: bytes, signature: str | None) -> bool:
        return True


class HmacSha256Verifier:
    """HMAC-SHA256 over the raw body, hex encoded, optionally `sha256=` prefixed."""

    def __init__(self, secret: str, header: str, require_signature: bool = False) -> None:
        self.secret = secret.encode("utf-8")
        self.header = header
        self.require_signature = require_signature

    def sign(self, body: bytes) -> str:
        return hmac.new(self.secret, body, hashlib.sha256).hexdigest()

    def verify(self, body: bytes, signature: str | None) -> bool:
        if not signature:
            if self.require_signature:
                logger.warning("webhook signature missing header=%s", self.header)
                return False
            logger.warning("webhook signature missing header=%s; accepting unsigned body", self.header)
            return True
        provided = signature.strip().lower()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        return hmac.compare_digest(self.sign(body), provided)


class SharedSecretVerifier:
    """Provider echoes the shared secret in a header (KkiaPay style)."""

    def __init__(self, secret: str, header: str, require_signature: bool = False) -> None:
        self.secret = secret
        self.header = header
        self.require_signature = require_signature

    def verify(self, body: bytes, signature: str | None) -> bool:
        if not signature:
            if self.require_signature:
                return False
            logger.warning("webhook secret header missing header=%s; accepting", self.header)
            return True
        return hmac.compare_digest(signature.strip().encode("utf-8"), self.secret.encode("utf-8"))


def verifier_for(provider: str, config) -> SignatureVerifier:
    """Build the verifier configured for one provider."""

    if provider == FEDAPAY and config.fedapay_webhook_secret:
        return HmacSha256Verifier(
            config.fedapay_webhook_secret,
            header="x-fedapay-signature",
            require_signature=config.require_webhook_signature,
        )
    if provider == KKIAPAY and config.kkiapay_webhook_secret:
        return SharedSecretVerifier(
            config.kkiapay_webhook_secret,
            header="x-kkiapay-secret",
            require_signature=config.require_webhook_signature,
        )
    return NullVerifier()
