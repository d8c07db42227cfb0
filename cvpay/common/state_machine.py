"""Payment and CV state machines enforced by the reconciliation service."""

from enum import Enum


class Outcome(str, Enum):
    """Financial outcome reported by the gateway for one order."""

    SUCCESS = "success"
    FAILURE = "failure"


PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    # `pending` may finish directly when the payer used the hosted checkout page.
    PENDING: {PROCESSING, COMPLETED, FAILED},
    PROCESSING: {COMPLETED, FAILED},
    COMPLETED: set(),
    FAILED: set(),
}
TERMINAL_PAYMENT_STATES = frozenset(state for state, targets in PAYMENT_TRANSITIONS.items() if not targets)

CV_DRAFT = "draft"
CV_PENDING_PAYMENT = "pending_payment"
CV_PAID = "paid"
CV_DOWNLOADED = "downloaded"

CV_TRANSITIONS: dict[str, set[str]] = {
    CV_DRAFT: {CV_PENDING_PAYMENT},
    # A new payment attempt for an unpaid CV keeps it pending.
    CV_PENDING_PAYMENT: {CV_PENDING_PAYMENT, CV_PAID},
    CV_PAID: {CV_DOWNLOADED},
    CV_DOWNLOADED: {CV_DOWNLOADED},
}


class InvalidTransition(ValueError):
    """Raised when a requested status change is not in the transition table."""


def validate_transition(current: str, new: str, table: dict[str, set[str]] = PAYMENT_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in table.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")


def sources_for(new: str, table: dict[str, set[str]] = PAYMENT_TRANSITIONS) -> list[str]:
    """States from which `new` is reachable in one step."""

    return sorted(state for state, targets in table.items() if new in targets)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_PAYMENT_STATES


def target_status(outcome: Outcome) -> str:
    return COMPLETED if outcome is Outcome.SUCCESS else FAILED
