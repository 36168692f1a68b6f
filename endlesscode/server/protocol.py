"""WebSocket wire protocol.

Every frame is a JSON object with a ``type`` discriminator.

Client -> server: ``user_message``, ``prompt_response``,
``session_control``, ``ping``.
Server -> client: ``cli_output``, ``session_state``, ``prompt_request``,
``error``, ``sync``, ``pong``.

Session-scoped server messages carry a per-session ``seq`` assigned at
broadcast time; clients send the last one they saw when reconnecting.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from endlesscode.engine.errors import InvalidMessageError
from endlesscode.shared.models.message import (
    AskUserQuestion,
    ParsedMessage,
    message_from_dto,
    message_to_dto,
    parse_timestamp,
)
from endlesscode.shared.models.session import Session


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Client messages ──


class SessionAction(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    TERMINATE = "terminate"


@dataclass
class UserMessage:
    session_id: str
    content: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class PromptResponse:
    session_id: str
    prompt_id: str
    selected_options: list[str] = field(default_factory=list)
    custom_input: str | None = None


@dataclass
class SessionControl:
    action: SessionAction
    session_id: str | None = None
    project_id: str | None = None


@dataclass
class Ping:
    pass


ClientMessage = Union[UserMessage, PromptResponse, SessionControl, Ping]


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidMessageError(f"'{key}' must be a non-empty string")
    return value


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidMessageError(f"'{key}' must be a string")
    return value


def decode_client_message(raw: str | bytes) -> ClientMessage:
    """Parse one client frame. Raises InvalidMessageError on any defect."""
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as exc:
        raise InvalidMessageError(f"not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidMessageError("frame must be a JSON object")

    kind = data.get("type")
    if kind == "user_message":
        content = data.get("content")
        if not isinstance(content, str):
            raise InvalidMessageError("'content' must be a string")
        timestamp = _utcnow()
        if isinstance(data.get("timestamp"), str):
            try:
                timestamp = parse_timestamp(data["timestamp"])
            except ValueError as exc:
                raise InvalidMessageError(f"bad timestamp: {exc}") from exc
        return UserMessage(
            session_id=_require_str(data, "sessionId"),
            content=content,
            timestamp=timestamp,
        )
    if kind == "prompt_response":
        options = data.get("selectedOptions", [])
        if not isinstance(options, list) or not all(isinstance(o, str) for o in options):
            raise InvalidMessageError("'selectedOptions' must be a list of strings")
        return PromptResponse(
            session_id=_require_str(data, "sessionId"),
            prompt_id=_require_str(data, "promptId"),
            selected_options=options,
            custom_input=_optional_str(data, "customInput"),
        )
    if kind == "session_control":
        try:
            action = SessionAction(data.get("action"))
        except ValueError as exc:
            raise InvalidMessageError(f"unknown action {data.get('action')!r}") from exc
        return SessionControl(
            action=action,
            session_id=_optional_str(data, "sessionId"),
            project_id=_optional_str(data, "projectId"),
        )
    if kind == "ping":
        return Ping()
    raise InvalidMessageError(f"unknown message type {kind!r}")


def encode_client_message(message: ClientMessage) -> str:
    if isinstance(message, UserMessage):
        data: dict[str, Any] = {
            "type": "user_message",
            "sessionId": message.session_id,
            "content": message.content,
            "timestamp": message.timestamp.isoformat(),
        }
    elif isinstance(message, PromptResponse):
        data = {
            "type": "prompt_response",
            "sessionId": message.session_id,
            "promptId": message.prompt_id,
            "selectedOptions": list(message.selected_options),
            "customInput": message.custom_input,
        }
    elif isinstance(message, SessionControl):
        data = {
            "type": "session_control",
            "action": message.action.value,
            "sessionId": message.session_id,
            "projectId": message.project_id,
        }
    else:
        data = {"type": "ping"}
    return json.dumps(data, ensure_ascii=False)


# ── Server messages ──


@dataclass
class CliOutputMessage:
    session_id: str
    message: ParsedMessage
    timestamp: datetime = field(default_factory=_utcnow)
    seq: int | None = None


@dataclass
class SessionStateMessage:
    session_id: str
    state: str
    error: str | None = None
    seq: int | None = None


@dataclass
class PromptRequestMessage:
    session_id: str
    prompt_id: str
    question: AskUserQuestion
    timeout: int
    seq: int | None = None


@dataclass
class ErrorMessage:
    code: str
    message: str
    session_id: str | None = None


@dataclass
class SyncMessage:
    sessions: list[Session] = field(default_factory=list)
    # Buffered cli_output frames, oldest first.
    recent_messages: list[dict[str, Any]] = field(default_factory=list)
    # session_id -> latest seq, for reconnect cursors.
    cursors: dict[str, int] = field(default_factory=dict)


@dataclass
class Pong:
    pass


ServerMessage = Union[
    CliOutputMessage,
    SessionStateMessage,
    PromptRequestMessage,
    ErrorMessage,
    SyncMessage,
    Pong,
]

# Messages that belong to one session and go through the replay buffer.
SESSION_SCOPED = (CliOutputMessage, SessionStateMessage, PromptRequestMessage)


def server_message_to_dict(message: ServerMessage) -> dict[str, Any]:
    if isinstance(message, CliOutputMessage):
        data: dict[str, Any] = {
            "type": "cli_output",
            "sessionId": message.session_id,
            "message": message_to_dto(message.message),
            "timestamp": message.timestamp.isoformat(),
        }
    elif isinstance(message, SessionStateMessage):
        data = {
            "type": "session_state",
            "sessionId": message.session_id,
            "state": message.state,
            "error": message.error,
        }
    elif isinstance(message, PromptRequestMessage):
        data = {
            "type": "prompt_request",
            "sessionId": message.session_id,
            "promptId": message.prompt_id,
            "question": message_to_dto(message.question)["askUser"],
            "timeout": message.timeout,
        }
    elif isinstance(message, ErrorMessage):
        return {
            "type": "error",
            "code": message.code,
            "message": message.message,
            "sessionId": message.session_id,
        }
    elif isinstance(message, SyncMessage):
        return {
            "type": "sync",
            "sessions": [s.to_dict() for s in message.sessions],
            "recentMessages": message.recent_messages,
            "cursors": message.cursors,
        }
    else:
        return {"type": "pong"}
    if message.seq is not None:
        data["seq"] = message.seq
    return data


def encode_server_message(message: ServerMessage) -> str:
    return json.dumps(server_message_to_dict(message), ensure_ascii=False)


def decode_server_message(raw: str | bytes) -> ServerMessage:
    """Client-side inverse of :func:`encode_server_message`."""
    try:
        data = json.loads(raw)
        kind = data["type"]
        seq = data.get("seq")
        if kind == "cli_output":
            return CliOutputMessage(
                session_id=data["sessionId"],
                message=message_from_dto(data["message"]),
                timestamp=parse_timestamp(data["timestamp"]),
                seq=seq,
            )
        if kind == "session_state":
            return SessionStateMessage(
                session_id=data["sessionId"],
                state=data["state"],
                error=data.get("error"),
                seq=seq,
            )
        if kind == "prompt_request":
            question = message_from_dto(
                {"messageType": "ask_user", "askUser": data["question"]}
            )
            return PromptRequestMessage(
                session_id=data["sessionId"],
                prompt_id=data["promptId"],
                question=question,
                timeout=int(data["timeout"]),
                seq=seq,
            )
        if kind == "error":
            return ErrorMessage(
                code=data["code"],
                message=data["message"],
                session_id=data.get("sessionId"),
            )
        if kind == "sync":
            return SyncMessage(
                sessions=[Session.from_dict(s) for s in data.get("sessions", [])],
                recent_messages=list(data.get("recentMessages", [])),
                cursors=dict(data.get("cursors", {})),
            )
        if kind == "pong":
            return Pong()
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidMessageError(str(exc)) from exc
    raise InvalidMessageError(f"unknown message type {kind!r}")
