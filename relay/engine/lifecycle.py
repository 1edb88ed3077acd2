"""Query lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> PROCESSING ──┬──> RUNNING ──┬──> COMPLETED
      │                   │              ├──> STOPPED
      │                   │              ├──> SUSPENDED
      │                   │              └──> FAILED
      │                   ├──> STOPPED  (stop honored before spawn)
      │                   └──> IDLE     (claim released, nothing ran)
      └──────────────────────> RUNNING

    Terminal states ──> IDLE  (query finished, session ready again)
"""
from __future__ import annotations

from .models import QueryPhase

_NEXT_QUERY = {QueryPhase.IDLE, QueryPhase.PROCESSING, QueryPhase.RUNNING}

VALID_TRANSITIONS: dict[QueryPhase, set[QueryPhase]] = {
    QueryPhase.IDLE: {
        QueryPhase.PROCESSING,
        QueryPhase.RUNNING,
    },
    QueryPhase.PROCESSING: {
        QueryPhase.RUNNING,
        QueryPhase.STOPPED,
        QueryPhase.FAILED,
        QueryPhase.IDLE,
    },
    QueryPhase.RUNNING: {
        QueryPhase.COMPLETED,
        QueryPhase.STOPPED,
        QueryPhase.SUSPENDED,
        QueryPhase.FAILED,
    },
    # A finished query may be followed directly by the next claim.
    QueryPhase.COMPLETED: set(_NEXT_QUERY),
    QueryPhase.STOPPED: set(_NEXT_QUERY),
    QueryPhase.SUSPENDED: set(_NEXT_QUERY),
    QueryPhase.FAILED: set(_NEXT_QUERY),
}

TERMINAL_PHASES = frozenset({
    QueryPhase.COMPLETED,
    QueryPhase.STOPPED,
    QueryPhase.SUSPENDED,
    QueryPhase.FAILED,
})


def validate_transition(current: QueryPhase, target: QueryPhase) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
