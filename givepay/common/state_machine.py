"""Reconciliation unit-of-work states and the transitions between them."""

from enum import Enum


class ReconciliationState(str, Enum):
    STARTED = "STARTED"
    DEDUPLICATED = "DEDUPLICATED"
    DONOR_RESOLVED = "DONOR_RESOLVED"
    PAYMENT_UPSERTED = "PAYMENT_UPSERTED"
    LEDGER_APPENDED = "LEDGER_APPENDED"
    COMMITTED = "COMMITTED"
    IGNORED = "IGNORED"
    ROLLED_BACK = "ROLLED_BACK"


S = ReconciliationState

ALLOWED_TRANSITIONS: dict[ReconciliationState, set[ReconciliationState]] = {
    S.STARTED: {S.DEDUPLICATED, S.IGNORED, S.ROLLED_BACK},
    S.DEDUPLICATED: {S.DONOR_RESOLVED, S.ROLLED_BACK},
    S.DONOR_RESOLVED: {S.PAYMENT_UPSERTED, S.ROLLED_BACK},
    S.PAYMENT_UPSERTED: {S.LEDGER_APPENDED, S.ROLLED_BACK},
    S.LEDGER_APPENDED: {S.COMMITTED, S.ROLLED_BACK},
    S.COMMITTED: set(),
    S.IGNORED: set(),
    S.ROLLED_BACK: set(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)


def validate_transition(current: ReconciliationState, new: ReconciliationState) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current.value} -> {new.value}")
