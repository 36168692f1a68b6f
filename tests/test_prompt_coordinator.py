"""Tests for PromptCoordinator and response formatting."""
from __future__ import annotations

import asyncio
import json

import pytest

from endlesscode.engine.errors import (
    InvalidTransitionError,
    PromptNotFoundError,
    PromptNotPendingError,
)
from endlesscode.engine.lifecycle import PromptState, is_terminal, validate_transition
from endlesscode.engine.prompts import PromptCoordinator, format_response
from endlesscode.shared.models.message import AskUserQuestion, QuestionOption


def _question(tool_use_id: str = "tu-1", multi_select: bool = False) -> AskUserQuestion:
    return AskUserQuestion(
        tool_use_id=tool_use_id,
        question="Which one?",
        options=(QuestionOption("A"), QuestionOption("B"), QuestionOption("C")),
        multi_select=multi_select,
    )


# ── Formatting ──


def test_format_single_selection() -> None:
    assert format_response(_question(), ["B"]) == "B"


def test_format_multi_select_as_json_array() -> None:
    formatted = format_response(_question(multi_select=True), ["A", "C"])
    assert json.loads(formatted) == ["A", "C"]


def test_format_several_without_multi_select_joins() -> None:
    assert format_response(_question(), ["A", "C"]) == "A, C"


def test_format_custom_input_wins() -> None:
    assert format_response(_question(), ["A"], custom_input="my own") == "my own"


def test_format_empty() -> None:
    assert format_response(_question(), []) == ""


# ── Lifecycle table ──


def test_prompt_terminal_states() -> None:
    assert not is_terminal(PromptState.PENDING)
    for state in (PromptState.RESPONDED, PromptState.TIMED_OUT, PromptState.CANCELLED):
        assert is_terminal(state)
        with pytest.raises(InvalidTransitionError):
            validate_transition(state, PromptState.PENDING)


# ── Coordinator ──


@pytest.mark.asyncio
async def test_respond_returns_tool_result_envelope() -> None:
    coordinator = PromptCoordinator(timeout_seconds=60)
    prompt = coordinator.register_prompt("s1", _question(multi_select=True))
    assert prompt.state is PromptState.PENDING
    assert prompt.timeout_seconds == pytest.approx(60)

    envelope = json.loads(coordinator.respond_to_prompt(prompt.id, ["A", "C"]))
    assert envelope["type"] == "tool_result"
    assert envelope["tool_use_id"] == "tu-1"
    assert json.loads(envelope["content"]) == ["A", "C"]

    resolved = coordinator.get_prompt(prompt.id)
    assert resolved.state is PromptState.RESPONDED
    assert coordinator.pending_prompts("s1") == []


@pytest.mark.asyncio
async def test_second_response_rejected() -> None:
    coordinator = PromptCoordinator(timeout_seconds=60)
    prompt = coordinator.register_prompt("s1", _question())
    coordinator.respond_to_prompt(prompt.id, ["A"])
    with pytest.raises(PromptNotPendingError) as exc_info:
        coordinator.respond_to_prompt(prompt.id, ["B"])
    assert exc_info.value.state == "responded"


@pytest.mark.asyncio
async def test_prepare_leaves_prompt_pending_until_completed() -> None:
    coordinator = PromptCoordinator(timeout_seconds=60)
    prompt = coordinator.register_prompt("s1", _question())

    content = coordinator.prepare_response(prompt.id, ["B"])
    assert content == "B"
    assert coordinator.get_prompt(prompt.id).state is PromptState.PENDING

    done = coordinator.complete_response(prompt.id, content)
    assert done.state is PromptState.RESPONDED
    assert done.response == "B"
    with pytest.raises(PromptNotPendingError):
        coordinator.complete_response(prompt.id, content)


@pytest.mark.asyncio
async def test_unknown_prompt() -> None:
    coordinator = PromptCoordinator()
    with pytest.raises(PromptNotFoundError):
        coordinator.respond_to_prompt("missing", ["A"])


@pytest.mark.asyncio
async def test_same_tool_use_registered_once() -> None:
    coordinator = PromptCoordinator(timeout_seconds=60)
    first = coordinator.register_prompt("s1", _question("tu-9"))
    again = coordinator.register_prompt("s1", _question("tu-9"))
    assert again.id == first.id
    assert len(coordinator.all_pending_prompts()) == 1


@pytest.mark.asyncio
async def test_prompt_times_out_and_is_reported_once() -> None:
    coordinator = PromptCoordinator(timeout_seconds=1)
    prompt = coordinator.register_prompt("s1", _question())
    await asyncio.sleep(2)

    with pytest.raises(PromptNotPendingError) as exc_info:
        coordinator.respond_to_prompt(prompt.id, ["A"])
    assert exc_info.value.state == "timed_out"

    expired = coordinator.cleanup_expired_prompts()
    assert [p.id for p in expired] == [prompt.id]
    assert expired[0].state is PromptState.TIMED_OUT
    assert coordinator.cleanup_expired_prompts() == []


@pytest.mark.asyncio
async def test_sweep_times_out_overdue_prompt_without_timer() -> None:
    coordinator = PromptCoordinator(timeout_seconds=0.05)
    prompt = coordinator.register_prompt("s1", _question())
    # Drop the armed timer so only the sweep can notice the deadline.
    coordinator._timers.pop(prompt.id).cancel()
    await asyncio.sleep(0.1)
    expired = coordinator.cleanup_expired_prompts()
    assert [p.id for p in expired] == [prompt.id]


@pytest.mark.asyncio
async def test_response_cancels_deadline() -> None:
    coordinator = PromptCoordinator(timeout_seconds=0.1)
    prompt = coordinator.register_prompt("s1", _question())
    coordinator.respond_to_prompt(prompt.id, ["A"])
    await asyncio.sleep(0.2)
    assert coordinator.get_prompt(prompt.id).state is PromptState.RESPONDED
    assert coordinator.cleanup_expired_prompts() == []


@pytest.mark.asyncio
async def test_cancel_prompt() -> None:
    coordinator = PromptCoordinator(timeout_seconds=60)
    prompt = coordinator.register_prompt("s1", _question())
    cancelled = coordinator.cancel_prompt(prompt.id)
    assert cancelled.state is PromptState.CANCELLED
    with pytest.raises(PromptNotPendingError):
        coordinator.cancel_prompt(prompt.id)


@pytest.mark.asyncio
async def test_cleanup_session_cancels_and_forgets() -> None:
    coordinator = PromptCoordinator(timeout_seconds=60)
    p1 = coordinator.register_prompt("s1", _question("a"))
    p2 = coordinator.register_prompt("s2", _question("b"))
    cancelled = coordinator.cleanup_session("s1")
    assert [p.id for p in cancelled] == [p1.id]
    with pytest.raises(PromptNotFoundError):
        coordinator.get_prompt(p1.id)
    assert [p.id for p in coordinator.all_pending_prompts()] == [p2.id]

    coordinator.cleanup_all()
    assert coordinator.all_pending_prompts() == []


@pytest.mark.asyncio
async def test_listeners_see_each_transition_in_order() -> None:
    coordinator = PromptCoordinator(timeout_seconds=60)
    seen: list[tuple[str, str, str]] = []
    unsubscribe = coordinator.subscribe(
        lambda e: seen.append((e.prompt_id, e.old_state, e.new_state))
    )
    p1 = coordinator.register_prompt("s1", _question("a"))
    p2 = coordinator.register_prompt("s1", _question("b"))
    coordinator.respond_to_prompt(p1.id, ["A"])
    coordinator.cancel_prompt(p2.id)
    assert seen == [
        (p1.id, "pending", "responded"),
        (p2.id, "pending", "cancelled"),
    ]

    unsubscribe()
    p3 = coordinator.register_prompt("s1", _question("c"))
    coordinator.cancel_prompt(p3.id)
    assert len(seen) == 2


def test_register_without_running_loop() -> None:
    coordinator = PromptCoordinator(timeout_seconds=60)
    prompt = coordinator.register_prompt("s1", _question())
    assert prompt.state is PromptState.PENDING


def test_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError):
        PromptCoordinator(timeout_seconds=0)
