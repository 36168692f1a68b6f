"""JSONL decoding for the CLI's stream-json output.

The CLI's output schema is not stable across versions, so decoding is
defensive: each message type is decoded strictly first and, failing
that, from whatever subset of fields is usable. A line only becomes
``UnknownMessage`` when it is empty, is not a JSON object, or has no
``type`` discriminator (or an unrecognized one).
"""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from endlesscode.shared.models.message import (
    AskUserQuestion,
    ChatMessage,
    MessageRole,
    ParsedMessage,
    QuestionOption,
    ToolResult,
    ToolUse,
    UnknownMessage,
    coerce_json_value,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

ASK_USER_TOOL = "AskUserQuestion"


class LineBuffer:
    """Re-chunks a text stream into complete lines.

    ``append`` returns every complete, stripped, non-empty line; the
    trailing partial line is held until more text arrives or ``flush``.
    """

    def __init__(self) -> None:
        self._pending = ""

    def append(self, chunk: str) -> list[str]:
        self._pending += chunk
        if "\n" not in self._pending:
            return []
        *complete, self._pending = self._pending.split("\n")
        return [line.strip() for line in complete if line.strip()]

    def flush(self) -> str | None:
        remaining = self._pending.strip()
        self._pending = ""
        return remaining or None


class _StrictDecodeError(ValueError):
    pass


def _expect(obj: dict[str, Any], key: str, kind: type) -> Any:
    """Strict field access: absent is fine (None), wrong type is not."""
    value = obj.get(key)
    if value is None:
        return None
    if isinstance(value, bool) and kind is not bool:
        raise _StrictDecodeError(f"{key}: unexpected bool")
    if not isinstance(value, kind):
        raise _StrictDecodeError(f"{key}: expected {kind}, got {type(value).__name__}")
    return value


def _new_tool_use_id() -> str:
    return str(uuid.uuid4())


class LineParser:
    """Turns one line of CLI output into a ``ParsedMessage``."""

    def parse(self, line: str) -> ParsedMessage:
        """Never raises; unparseable lines become ``UnknownMessage``."""
        message = self.try_parse(line)
        if message is None:
            return UnknownMessage(raw_text=line.strip())
        return message

    def try_parse(self, line: str) -> ParsedMessage | None:
        """Like ``parse`` but returns None for empty or non-JSON lines."""
        text = line.strip()
        if not text:
            return None
        try:
            obj = json.loads(text)
        except (ValueError, RecursionError):
            logger.debug("Non-JSON line skipped: %.120s", text)
            return None
        if not isinstance(obj, dict):
            return None

        kind = obj.get("type")
        if not isinstance(kind, str):
            return UnknownMessage(raw_text=text)
        if kind == "message":
            return self._decode_chat(obj)
        if kind == "tool_use":
            if obj.get("tool_name") == ASK_USER_TOOL:
                question = self._decode_ask_user(obj)
                if question is not None:
                    return question
            return self._decode_tool_use(obj)
        if kind == "tool_result":
            return self._decode_tool_result(obj)
        return UnknownMessage(raw_text=text)

    # ── message ──

    def _decode_chat(self, obj: dict[str, Any]) -> ChatMessage:
        try:
            role_raw = _expect(obj, "role", str)
            content = _expect(obj, "content", str)
            ts_raw = _expect(obj, "timestamp", str)
            role = MessageRole(role_raw) if role_raw is not None else MessageRole.ASSISTANT
            timestamp = parse_timestamp(ts_raw) if ts_raw is not None else None
        except ValueError:
            return self._decode_chat_partial(obj)
        if timestamp is None:
            return ChatMessage(role=role, content=content or "")
        return ChatMessage(role=role, content=content or "", timestamp=timestamp)

    def _decode_chat_partial(self, obj: dict[str, Any]) -> ChatMessage:
        content = obj.get("content")
        role_raw = obj.get("role")
        try:
            role = MessageRole(role_raw) if isinstance(role_raw, str) else MessageRole.ASSISTANT
        except ValueError:
            role = MessageRole.ASSISTANT
        return ChatMessage(
            role=role,
            content=content if isinstance(content, str) else "",
        )

    # ── tool_use ──

    def _decode_tool_use(self, obj: dict[str, Any]) -> ToolUse:
        try:
            name = _expect(obj, "tool_name", str)
            tool_input = _expect(obj, "tool_input", dict)
            tool_use_id = _expect(obj, "tool_use_id", str)
        except ValueError:
            return self._decode_tool_use_partial(obj)
        return ToolUse(
            tool_name=name or "unknown",
            tool_input={
                str(k): coerce_json_value(v) for k, v in (tool_input or {}).items()
            },
            tool_use_id=tool_use_id or _new_tool_use_id(),
        )

    def _decode_tool_use_partial(self, obj: dict[str, Any]) -> ToolUse:
        name = obj.get("tool_name")
        tool_use_id = obj.get("tool_use_id")
        raw_input = obj.get("tool_input")
        return ToolUse(
            tool_name=name if isinstance(name, str) else "unknown",
            tool_input=(
                {str(k): coerce_json_value(v) for k, v in raw_input.items()}
                if isinstance(raw_input, dict) else {}
            ),
            tool_use_id=tool_use_id if isinstance(tool_use_id, str) else _new_tool_use_id(),
        )

    def _decode_ask_user(self, obj: dict[str, Any]) -> AskUserQuestion | None:
        tool_input = obj.get("tool_input")
        if not isinstance(tool_input, dict):
            return None
        tool_use_id = obj.get("tool_use_id")
        if not isinstance(tool_use_id, str):
            tool_use_id = _new_tool_use_id()

        question = ""
        options: tuple[QuestionOption, ...] | None = None
        multi_select = False
        questions = tool_input.get("questions")
        if isinstance(questions, list) and questions and isinstance(questions[0], dict):
            first = questions[0]
            if isinstance(first.get("question"), str):
                question = first["question"]
            multi_select = first.get("multiSelect") is True
            raw_options = first.get("options")
            if isinstance(raw_options, list):
                options = tuple(
                    QuestionOption(
                        label=o["label"],
                        description=(
                            o.get("description")
                            if isinstance(o.get("description"), str) else None
                        ),
                    )
                    for o in raw_options
                    if isinstance(o, dict) and isinstance(o.get("label"), str)
                )
        elif isinstance(tool_input.get("question"), str):
            question = tool_input["question"]

        return AskUserQuestion(
            tool_use_id=tool_use_id,
            question=question,
            options=options,
            multi_select=multi_select,
        )

    # ── tool_result ──

    def _decode_tool_result(self, obj: dict[str, Any]) -> ToolResult:
        try:
            tool_use_id = _expect(obj, "tool_use_id", str)
            output = _expect(obj, "output", str)
            is_error = _expect(obj, "is_error", bool)
        except ValueError:
            return self._decode_tool_result_partial(obj)
        return ToolResult(
            tool_use_id=tool_use_id or "",
            output=output or "",
            is_error=bool(is_error),
        )

    def _decode_tool_result_partial(self, obj: dict[str, Any]) -> ToolResult:
        tool_use_id = obj.get("tool_use_id")
        output = obj.get("output")
        is_error = obj.get("is_error")
        return ToolResult(
            tool_use_id=tool_use_id if isinstance(tool_use_id, str) else "",
            output=output if isinstance(output, str) else "",
            is_error=is_error if isinstance(is_error, bool) else False,
        )

