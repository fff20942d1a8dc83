"""Payment state machine transitions enforced by the lifecycle engine."""

from enum import Enum


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATES: frozenset[str] = frozenset({PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"PROCESSING"},
    # PENDING here is either a retry re-entry or an orphan reclaim.
    "PROCESSING": {"COMPLETED", "FAILED", "PENDING"},
    "COMPLETED": set(),
    "FAILED": set(),
}


class InvalidTransition(ValueError):
    """Raised for a status change that has no edge in `ALLOWED_TRANSITIONS`."""

    code = "INVALID_TRANSITION"


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
