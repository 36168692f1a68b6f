"""Typed messages parsed from the CLI's JSONL output.

``ParsedMessage`` is a closed union of frozen dataclasses. Tool inputs keep
their original shape as a ``JsonValue`` tree (str | int | float | bool |
None | list | dict) so nothing the CLI sends is lost.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

JsonValue = Union[
    str, int, float, bool, None, list["JsonValue"], dict[str, "JsonValue"]
]


def coerce_json_value(value: Any) -> JsonValue:
    """Normalize an arbitrary decoded value into a ``JsonValue`` tree."""
    # bool before int: bool is an int subclass
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [coerce_json_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): coerce_json_value(v) for k, v in value.items()}
    return str(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageType(str, Enum):
    """Discriminator used on the WebSocket DTO form."""
    CHAT = "chat"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    ASK_USER = "ask_user"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ChatMessage:
    role: MessageRole
    content: str
    timestamp: datetime = field(default_factory=_utcnow)

    message_type = MessageType.CHAT


@dataclass(frozen=True)
class ToolUse:
    tool_name: str
    tool_input: dict[str, JsonValue]
    tool_use_id: str

    message_type = MessageType.TOOL_USE


@dataclass(frozen=True)
class ToolResult:
    tool_use_id: str
    output: str
    is_error: bool = False

    message_type = MessageType.TOOL_RESULT


@dataclass(frozen=True)
class QuestionOption:
    label: str
    description: str | None = None


@dataclass(frozen=True)
class AskUserQuestion:
    """Interactive question raised through the AskUserQuestion tool."""
    tool_use_id: str
    question: str
    options: tuple[QuestionOption, ...] | None = None
    multi_select: bool = False

    message_type = MessageType.ASK_USER

    def option_labels(self) -> list[str]:
        return [o.label for o in self.options or ()]


@dataclass(frozen=True)
class UnknownMessage:
    raw_text: str

    message_type = MessageType.UNKNOWN


ParsedMessage = Union[
    ChatMessage, ToolUse, ToolResult, AskUserQuestion, UnknownMessage
]


# ── DTO conversion (WebSocket wire form) ──


def _format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def parse_timestamp(raw: str) -> datetime:
    """Parse an ISO-8601 timestamp (accepts a trailing ``Z``)."""
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def message_to_dto(message: ParsedMessage) -> dict[str, Any]:
    """Convert a parsed message to its ``{messageType, ...}`` wire form."""
    if isinstance(message, ChatMessage):
        return {
            "messageType": MessageType.CHAT.value,
            "chat": {
                "role": message.role.value,
                "content": message.content,
                "timestamp": _format_timestamp(message.timestamp),
            },
        }
    if isinstance(message, ToolUse):
        return {
            "messageType": MessageType.TOOL_USE.value,
            "toolUse": {
                "tool_name": message.tool_name,
                "tool_input": message.tool_input,
                "tool_use_id": message.tool_use_id,
            },
        }
    if isinstance(message, ToolResult):
        return {
            "messageType": MessageType.TOOL_RESULT.value,
            "toolResult": {
                "tool_use_id": message.tool_use_id,
                "output": message.output,
                "is_error": message.is_error,
            },
        }
    if isinstance(message, AskUserQuestion):
        options = None
        if message.options is not None:
            options = [
                {"label": o.label, "description": o.description}
                for o in message.options
            ]
        return {
            "messageType": MessageType.ASK_USER.value,
            "askUser": {
                "tool_use_id": message.tool_use_id,
                "question": message.question,
                "options": options,
                "multi_select": message.multi_select,
            },
        }
    return {
        "messageType": MessageType.UNKNOWN.value,
        "rawJSON": message.raw_text,
    }


def message_from_dto(data: dict[str, Any]) -> ParsedMessage:
    """Inverse of :func:`message_to_dto`.

    Raises ``ValueError`` (or ``KeyError``/``TypeError``) on malformed input;
    the protocol layer maps these to ``InvalidMessageError``.
    """
    kind = MessageType(data["messageType"])
    if kind is MessageType.CHAT:
        chat = data["chat"]
        return ChatMessage(
            role=MessageRole(chat["role"]),
            content=str(chat["content"]),
            timestamp=parse_timestamp(chat["timestamp"]),
        )
    if kind is MessageType.TOOL_USE:
        tool = data["toolUse"]
        tool_input = tool.get("tool_input") or {}
        if not isinstance(tool_input, dict):
            raise ValueError("tool_input must be an object")
        return ToolUse(
            tool_name=str(tool["tool_name"]),
            tool_input={
                str(k): coerce_json_value(v) for k, v in tool_input.items()
            },
            tool_use_id=str(tool["tool_use_id"]),
        )
    if kind is MessageType.TOOL_RESULT:
        result = data["toolResult"]
        return ToolResult(
            tool_use_id=str(result["tool_use_id"]),
            output=str(result["output"]),
            is_error=bool(result.get("is_error", False)),
        )
    if kind is MessageType.ASK_USER:
        ask = data["askUser"]
        raw_options = ask.get("options")
        options = None
        if raw_options is not None:
            options = tuple(
                QuestionOption(label=str(o["label"]), description=o.get("description"))
                for o in raw_options
            )
        return AskUserQuestion(
            tool_use_id=str(ask["tool_use_id"]),
            question=str(ask["question"]),
            options=options,
            multi_select=bool(ask.get("multi_select", False)),
        )
    return UnknownMessage(raw_text=str(data.get("rawJSON", "")))
