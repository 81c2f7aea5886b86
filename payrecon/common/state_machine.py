"""Payment status transitions enforced by the reconciliation core.

`pending` is the only non-terminal status. A later authoritative provider event
may move a payment between the two terminal statuses (e.g. a charge-back
turning `approved` into `failed`); nothing moves a terminal payment back to
`pending`.
"""

PENDING = "pending"
APPROVED = "approved"
FAILED = "failed"

PAYMENT_STATUSES = (PENDING, APPROVED, FAILED)
TERMINAL_STATUSES = frozenset({APPROVED, FAILED})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {APPROVED, FAILED},
    APPROVED: {FAILED},
    FAILED: {APPROVED},
}

# Transition classifications returned by `classify_transition`.
APPLY = "apply"
CORRECTIVE = "corrective"
DUPLICATE = "duplicate"
NOOP = "noop"
STALE = "stale"


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def classify_transition(current: str, target: str) -> str:
    """Decide what an event reporting `target` does to a payment in `current`."""

    if current == target:
        return DUPLICATE if current in TERMINAL_STATUSES else NOOP
    if target == PENDING:
        return STALE
    validate_transition(current, target)
    return CORRECTIVE if current in TERMINAL_STATUSES else APPLY
