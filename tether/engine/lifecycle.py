"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> RUNNING ──┬──> COMPLETED ──> RUNNING (next query)
                       │
                       ├──> FAILED ──> RUNNING (retry)
                       │
                       └──> INTERRUPTED ──> RUNNING

    Any non-running state ──> CLOSED  (terminal)
"""
from __future__ import annotations

from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {
        SessionState.RUNNING,
        SessionState.CLOSED,
    },
    SessionState.RUNNING: {
        SessionState.COMPLETED,
        SessionState.FAILED,
        SessionState.INTERRUPTED,
    },
    SessionState.COMPLETED: {
        SessionState.RUNNING,
        SessionState.CLOSED,
    },
    SessionState.FAILED: {
        SessionState.RUNNING,
        SessionState.CLOSED,
    },
    SessionState.INTERRUPTED: {
        SessionState.RUNNING,
        SessionState.CLOSED,
    },
    SessionState.CLOSED: set(),
}


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
