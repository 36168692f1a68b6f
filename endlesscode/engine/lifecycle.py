"""Session and prompt lifecycle state machines.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError (a ValueError) rather than silently proceeding.

Session:

    ACTIVE <──> PAUSED
      │           │
      └─────┬─────┘
            └──> TERMINATED   (terminal)

Prompt:

    PENDING ──┬──> RESPONDED
              ├──> TIMED_OUT
              └──> CANCELLED      (all terminal)
"""
from __future__ import annotations

from enum import Enum

from endlesscode.shared.models.session import SessionState

from .errors import InvalidTransitionError


class PromptState(str, Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


SESSION_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.ACTIVE: {
        SessionState.PAUSED,
        SessionState.TERMINATED,
    },
    SessionState.PAUSED: {
        SessionState.ACTIVE,
        SessionState.TERMINATED,
    },
    SessionState.TERMINATED: set(),
}

PROMPT_TRANSITIONS: dict[PromptState, set[PromptState]] = {
    PromptState.PENDING: {
        PromptState.RESPONDED,
        PromptState.TIMED_OUT,
        PromptState.CANCELLED,
    },
    PromptState.RESPONDED: set(),
    PromptState.TIMED_OUT: set(),
    PromptState.CANCELLED: set(),
}


def validate_transition(current: Enum, target: Enum) -> None:
    """Validate a state transition. Raises InvalidTransitionError if invalid."""
    if isinstance(current, SessionState):
        table = SESSION_TRANSITIONS
    elif isinstance(current, PromptState):
        table = PROMPT_TRANSITIONS
    else:
        raise TypeError(f"No transition table for {type(current).__name__}")
    allowed = table.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise InvalidTransitionError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def is_terminal(state: Enum) -> bool:
    if isinstance(state, SessionState):
        return not SESSION_TRANSITIONS[state]
    return not PROMPT_TRANSITIONS[state]
