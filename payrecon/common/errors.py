"""Error taxonomy for payment reconciliation.

Caller errors (`MalformedPayload`, `InvalidIdentifier`) are `ValueError`
subclasses and surface as HTTP 400. The remaining errors are recoverable: they
are logged and recorded, never propagated to the provider as a retryable
failure.
"""


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""


class MalformedPayload(ReconciliationError, ValueError):
    """Provider body is not JSON or carries no transaction identifier."""

    def __init__(self, reason: str, provider: str = "unknown", body_excerpt: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.provider = provider
        self.body_excerpt = body_excerpt


class InvalidIdentifier(ReconciliationError, ValueError):
    """Contact identifier (phone number) outside the accepted shape."""


class InsufficientContext(ReconciliationError):
    """No payment exists and the event cannot create one."""


class RequestNotFound(ReconciliationError):
    """Owning request row is missing while mirroring payment status."""

    def __init__(self, request_type: str, request_id: str) -> None:
        super().__init__(f"{request_type} request {request_id} not found")
        self.request_type = request_type
        self.request_id = request_id


class RequestAccessDenied(ReconciliationError):
    """Caller does not own the request it tries to pay for."""


class NotifierUnavailable(ReconciliationError):
    """Email collaborator rejected or could not be reached."""
