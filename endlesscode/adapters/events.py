"""Event types emitted by the session engine.

The SessionManager publishes these onto the EventBus; the server's
event consumer turns them into WebSocket messages for subscribers.
"""
from __future__ import annotations

from dataclasses import dataclass

from endlesscode.shared.models.message import AskUserQuestion, ParsedMessage


@dataclass
class SessionEvent:
    """Base event scoped to one session."""
    event_type: str = ""
    session_id: str = ""


@dataclass
class CliOutput(SessionEvent):
    event_type: str = "cli_output"
    message: ParsedMessage | None = None


@dataclass
class SessionStateChanged(SessionEvent):
    event_type: str = "session_state_changed"
    state: str = ""
    error: str | None = None
    error_code: str | None = None


@dataclass
class PromptRequested(SessionEvent):
    event_type: str = "prompt_requested"
    prompt_id: str = ""
    question: AskUserQuestion | None = None
    timeout_seconds: float = 0.0


@dataclass
class PromptStateChanged(SessionEvent):
    """Fired synchronously on every prompt transition."""
    event_type: str = "prompt_state_changed"
    prompt_id: str = ""
    old_state: str = ""
    new_state: str = ""
