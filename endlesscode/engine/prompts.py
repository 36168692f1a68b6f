"""Interactive question tracking.

When the CLI calls the AskUserQuestion tool it blocks until a
``tool_result`` arrives on stdin. Each such question becomes a
``PendingPrompt`` with a deadline; exactly one terminal transition is
allowed (responded, cancelled or timed out).

Deadline timers only transition the prompt. Delivery of timeouts to
clients goes through ``cleanup_expired_prompts()``, which the server's
cleanup loop calls and forwards to subscribers.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from endlesscode.adapters.event_bus import EventDispatcher
from endlesscode.adapters.events import PromptStateChanged
from endlesscode.shared.models.message import AskUserQuestion

from .errors import PromptNotFoundError, PromptNotPendingError
from .lifecycle import PromptState, validate_transition

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_TIMEOUT_SECONDS = 1800.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PendingPrompt:
    id: str
    session_id: str
    question: AskUserQuestion
    created_at: datetime
    expires_at: datetime
    state: PromptState = PromptState.PENDING
    # Formatted response text once RESPONDED.
    response: str | None = None

    @property
    def tool_use_id(self) -> str:
        return self.question.tool_use_id

    @property
    def timeout_seconds(self) -> float:
        return (self.expires_at - self.created_at).total_seconds()

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _utcnow()) >= self.expires_at


def format_response(
    question: AskUserQuestion,
    selected_options: Sequence[str],
    custom_input: str | None = None,
) -> str:
    """Render a user's answer the way the CLI expects it.

    Custom input wins over selections. One selection is sent verbatim;
    several become a JSON array for multi-select questions and a
    comma-joined string otherwise.
    """
    if custom_input:
        return custom_input
    if not selected_options:
        return ""
    if len(selected_options) == 1:
        return selected_options[0]
    if question.multi_select:
        return json.dumps(list(selected_options), ensure_ascii=False)
    return ", ".join(selected_options)


def tool_result_envelope(tool_use_id: str, content: str) -> str:
    return json.dumps(
        {"type": "tool_result", "tool_use_id": tool_use_id, "content": content},
        ensure_ascii=False,
    )


class PromptCoordinator:
    """Tracks pending prompts and their deadlines."""

    def __init__(self, timeout_seconds: float = DEFAULT_PROMPT_TIMEOUT_SECONDS) -> None:
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")
        self.timeout_seconds = timeout_seconds
        self._prompts: dict[str, PendingPrompt] = {}
        # tool_use_id -> prompt id, pending prompts only
        self._pending_by_tool_use: dict[str, str] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        # Timed out by a deadline timer, not yet returned by a sweep.
        self._unreported: dict[str, PendingPrompt] = {}
        self._events: EventDispatcher[PromptStateChanged] = EventDispatcher()

    def subscribe(
        self, listener: Callable[[PromptStateChanged], None]
    ) -> Callable[[], None]:
        """Listen for transitions; called synchronously in registration order."""
        return self._events.subscribe(listener)

    # ── Queries ──

    def get_prompt(self, prompt_id: str) -> PendingPrompt:
        prompt = self._prompts.get(prompt_id)
        if prompt is None:
            raise PromptNotFoundError(prompt_id)
        return prompt

    def pending_prompts(self, session_id: str) -> list[PendingPrompt]:
        return [
            p for p in self._prompts.values()
            if p.session_id == session_id and p.state is PromptState.PENDING
        ]

    def all_pending_prompts(self) -> list[PendingPrompt]:
        return [p for p in self._prompts.values() if p.state is PromptState.PENDING]

    # ── Transitions ──

    def register_prompt(self, session_id: str, question: AskUserQuestion) -> PendingPrompt:
        """Track *question* and arm its deadline. Never blocks."""
        existing_id = self._pending_by_tool_use.get(question.tool_use_id)
        if existing_id is not None:
            # Same tool call seen again (e.g. replayed after a resume).
            return self._prompts[existing_id]

        now = _utcnow()
        prompt = PendingPrompt(
            id=str(uuid.uuid4()),
            session_id=session_id,
            question=question,
            created_at=now,
            expires_at=now + timedelta(seconds=self.timeout_seconds),
        )
        self._prompts[prompt.id] = prompt
        self._pending_by_tool_use[question.tool_use_id] = prompt.id

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._timers[prompt.id] = loop.call_later(
                self.timeout_seconds, self._on_deadline, prompt.id
            )
        logger.info(
            "Prompt %s registered session=%s tool_use=%s timeout=%.0fs",
            prompt.id, session_id, question.tool_use_id, self.timeout_seconds,
        )
        return prompt

    def respond_to_prompt(
        self,
        prompt_id: str,
        selected_options: Sequence[str] = (),
        custom_input: str | None = None,
    ) -> str:
        """Resolve the prompt and return the tool_result line for stdin."""
        content = self.prepare_response(prompt_id, selected_options, custom_input)
        prompt = self.complete_response(prompt_id, content)
        return tool_result_envelope(prompt.tool_use_id, content)

    def prepare_response(
        self,
        prompt_id: str,
        selected_options: Sequence[str] = (),
        custom_input: str | None = None,
    ) -> str:
        """Format the answer for a pending prompt without resolving it.

        Callers that must deliver the answer first (to the CLI's stdin) call
        ``complete_response`` once delivery succeeded; on failure the prompt
        stays pending and can be answered again.
        """
        prompt = self.get_prompt(prompt_id)
        if prompt.state is not PromptState.PENDING:
            raise PromptNotPendingError(prompt_id, prompt.state.value)
        if prompt.is_expired():
            self._unreported[prompt_id] = self._transition(prompt, PromptState.TIMED_OUT)
            raise PromptNotPendingError(prompt_id, PromptState.TIMED_OUT.value)
        return format_response(prompt.question, selected_options, custom_input)

    def complete_response(self, prompt_id: str, content: str) -> PendingPrompt:
        """Mark a prompt responded with *content*, already formatted."""
        prompt = self.get_prompt(prompt_id)
        if prompt.state is not PromptState.PENDING:
            raise PromptNotPendingError(prompt_id, prompt.state.value)
        return self._transition(prompt, PromptState.RESPONDED, response=content)

    def cancel_prompt(self, prompt_id: str) -> PendingPrompt:
        prompt = self.get_prompt(prompt_id)
        if prompt.state is not PromptState.PENDING:
            raise PromptNotPendingError(prompt_id, prompt.state.value)
        return self._transition(prompt, PromptState.CANCELLED)

    def cleanup_expired_prompts(self) -> list[PendingPrompt]:
        """Time out overdue prompts; return every timeout not yet reported."""
        now = _utcnow()
        for prompt in self.all_pending_prompts():
            if prompt.is_expired(now):
                self._unreported[prompt.id] = self._transition(prompt, PromptState.TIMED_OUT)
        expired = list(self._unreported.values())
        self._unreported.clear()
        if expired:
            logger.info("Prompt sweep: %d timed out", len(expired))
        return expired

    def cleanup_session(self, session_id: str) -> list[PendingPrompt]:
        """Cancel pending prompts of *session_id* and forget all of its prompts."""
        cancelled = [
            self._transition(p, PromptState.CANCELLED)
            for p in self.pending_prompts(session_id)
        ]
        for prompt_id in [
            pid for pid, p in self._prompts.items() if p.session_id == session_id
        ]:
            del self._prompts[prompt_id]
            self._unreported.pop(prompt_id, None)
        return cancelled

    def cleanup_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._prompts.clear()
        self._pending_by_tool_use.clear()
        self._unreported.clear()

    def _on_deadline(self, prompt_id: str) -> None:
        self._timers.pop(prompt_id, None)
        prompt = self._prompts.get(prompt_id)
        if prompt is None or prompt.state is not PromptState.PENDING:
            return
        self._unreported[prompt_id] = self._transition(prompt, PromptState.TIMED_OUT)

    def _transition(
        self,
        prompt: PendingPrompt,
        target: PromptState,
        response: str | None = None,
    ) -> PendingPrompt:
        validate_transition(prompt.state, target)
        updated = replace(prompt, state=target, response=response)
        self._prompts[prompt.id] = updated
        if self._pending_by_tool_use.get(prompt.tool_use_id) == prompt.id:
            del self._pending_by_tool_use[prompt.tool_use_id]
        timer = self._timers.pop(prompt.id, None)
        if timer is not None:
            timer.cancel()
        logger.info(
            "Prompt %s session=%s: %s -> %s",
            prompt.id, prompt.session_id, prompt.state.value, target.value,
        )
        self._events.publish(PromptStateChanged(
            session_id=prompt.session_id,
            prompt_id=prompt.id,
            old_state=prompt.state.value,
            new_state=target.value,
        ))
        return updated
