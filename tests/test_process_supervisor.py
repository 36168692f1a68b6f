"""Tests for ProcessSupervisor.

Covers:
- Concurrent-session cap and duplicate ids
- Slot release when spawning fails
- Restart with backoff, resume flag and restart cap
- stdin write retries
- Idle cleanup and termination
- ParsedMessageStream ordering and cancellation safety
"""
from __future__ import annotations

import asyncio
import json

import pytest

from endlesscode.engine.config import RetryPolicy, ServerConfig
from endlesscode.engine.errors import (
    MaxRestartsExceededError,
    ProcessStartError,
    ProcessWriteError,
    SessionAlreadyExistsError,
    SessionLimitExceededError,
    SessionNotFoundError,
    SessionNotRunningError,
)
from endlesscode.engine.process_runner import (
    OutputChannel,
    OverflowPolicy,
    ProcessState,
    ProcessStatus,
)
from endlesscode.engine.supervisor import ProcessSupervisor
from endlesscode.shared.models.message import ChatMessage, ToolUse, UnknownMessage

NO_DELAY = RetryPolicy(max_retries=3, initial_delay=0.0, max_delay=0.0)


# ── Fakes ──


class FakeRunner:
    def __init__(
        self, session_id: str, resume: bool, fail_start: bool = False, start_delay: float = 0.0
    ) -> None:
        self.session_id = session_id
        self.resume = resume
        self.fail_start = fail_start
        self.start_delay = start_delay
        self.stdout = OutputChannel("stdout", 100)
        self.stderr = OutputChannel("stderr", 100, OverflowPolicy.DROP_OLDEST)
        self.state = ProcessState(ProcessStatus.IDLE)
        self.pid: int | None = None
        self.written: list[str] = []
        self.write_failures = 0
        self.terminated = False

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    async def start(self) -> None:
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.fail_start:
            self.state = ProcessState(ProcessStatus.FAILED, error="boom")
            raise ProcessStartError("boom")
        self.state = ProcessState(ProcessStatus.RUNNING)
        self.pid = 4242

    async def write_line(self, text: str) -> None:
        if self.write_failures:
            self.write_failures -= 1
            raise ProcessWriteError("pipe closed")
        self.written.append(text)

    async def emit(self, *lines: str) -> None:
        for line in lines:
            await self.stdout.put(line + "\n")

    def exit(self, code: int) -> None:
        self.state = ProcessState(ProcessStatus.TERMINATED, exit_code=code)
        self.stdout.close()
        self.stderr.close()

    async def terminate(self) -> None:
        self.terminated = True
        if self.state.is_running:
            self.exit(-15)


class RunnerFactory:
    def __init__(self) -> None:
        self.runners: list[FakeRunner] = []
        self.fail_next = False
        self.start_delay = 0.0

    def __call__(self, cli_path: str, project_path: str, session_id: str, resume: bool) -> FakeRunner:
        runner = FakeRunner(
            session_id, resume, fail_start=self.fail_next, start_delay=self.start_delay
        )
        self.runners.append(runner)
        return runner

    def latest(self, session_id: str) -> FakeRunner:
        return [r for r in self.runners if r.session_id == session_id][-1]


def _build(max_sessions: int = 5, restart: RetryPolicy = NO_DELAY) -> tuple[ProcessSupervisor, RunnerFactory]:
    factory = RunnerFactory()
    config = ServerConfig(max_concurrent_sessions=max_sessions)
    supervisor = ProcessSupervisor(
        config,
        runner_factory=factory,
        restart_policy=restart,
        send_policy=NO_DELAY,
    )
    return supervisor, factory


def _chat(text: str) -> str:
    return json.dumps({"type": "message", "role": "assistant", "content": text})


# ── Start / limits ──


@pytest.mark.asyncio
async def test_start_session_streams_messages_in_order() -> None:
    supervisor, factory = _build()
    stream = await supervisor.start_session("s1", "/tmp/project")
    runner = factory.latest("s1")
    assert runner.resume is False
    await runner.emit(_chat("one"), "garbage", json.dumps({"type": "tool_use", "tool_name": "Bash"}))
    runner.exit(0)

    messages = [m async for m in stream]
    assert isinstance(messages[0], ChatMessage)
    assert messages[0].content == "one"
    assert isinstance(messages[1], UnknownMessage)
    assert isinstance(messages[2], ToolUse)


@pytest.mark.asyncio
async def test_session_limit_enforced() -> None:
    supervisor, _ = _build(max_sessions=2)
    await supervisor.start_session("s1", "/p")
    await supervisor.start_session("s2", "/p")
    with pytest.raises(SessionLimitExceededError) as exc_info:
        await supervisor.start_session("s3", "/p")
    assert exc_info.value.current == 2
    assert exc_info.value.maximum == 2
    assert supervisor.active_session_count == 2

    await supervisor.terminate_session("s1")
    await supervisor.start_session("s3", "/p")
    assert sorted(supervisor.session_ids()) == ["s2", "s3"]


@pytest.mark.asyncio
async def test_duplicate_session_rejected() -> None:
    supervisor, _ = _build()
    await supervisor.start_session("s1", "/p")
    with pytest.raises(SessionAlreadyExistsError):
        await supervisor.start_session("s1", "/p")


@pytest.mark.asyncio
async def test_failed_start_releases_slot() -> None:
    supervisor, factory = _build(max_sessions=1)
    factory.fail_next = True
    with pytest.raises(ProcessStartError):
        await supervisor.start_session("s1", "/p")
    assert not supervisor.has_session("s1")
    factory.fail_next = False
    await supervisor.start_session("s1", "/p")
    assert supervisor.has_session("s1")


@pytest.mark.asyncio
async def test_session_state_snapshot() -> None:
    supervisor, _ = _build()
    await supervisor.start_session("s1", "/work")
    snapshot = supervisor.session_state("s1")
    assert snapshot.project_path == "/work"
    assert snapshot.process_state.is_running
    assert snapshot.restart_count == 0
    assert snapshot.pid == 4242
    with pytest.raises(SessionNotFoundError):
        supervisor.session_state("missing")


# ── Restart ──


@pytest.mark.asyncio
async def test_resume_running_session_returns_same_stream() -> None:
    supervisor, factory = _build()
    stream = await supervisor.start_session("s1", "/p")
    assert await supervisor.resume_session("s1") is stream
    assert len(factory.runners) == 1


@pytest.mark.asyncio
async def test_resume_dead_session_restarts_with_resume_flag() -> None:
    supervisor, factory = _build()
    await supervisor.start_session("s1", "/p")
    factory.latest("s1").exit(1)

    stream = await supervisor.resume_session("s1")
    runner = factory.latest("s1")
    assert len(factory.runners) == 2
    assert runner.resume is True
    assert supervisor.session_state("s1").restart_count == 1

    await runner.emit(_chat("back"))
    message = await asyncio.wait_for(stream.__anext__(), 1.0)
    assert message.content == "back"


@pytest.mark.asyncio
async def test_restart_cap() -> None:
    policy = RetryPolicy(max_retries=2, initial_delay=0.0, max_delay=0.0)
    supervisor, factory = _build(restart=policy)
    await supervisor.start_session("s1", "/p")
    for _ in range(2):
        factory.latest("s1").exit(1)
        await supervisor.resume_session("s1")
    factory.latest("s1").exit(1)
    with pytest.raises(MaxRestartsExceededError) as exc_info:
        await supervisor.resume_session("s1")
    assert exc_info.value.restart_count == 2
    assert len(factory.runners) == 3


@pytest.mark.asyncio
async def test_restart_waits_for_backoff_delay() -> None:
    policy = RetryPolicy(max_retries=3, initial_delay=0.2, max_delay=1.0)
    supervisor, factory = _build(restart=policy)
    await supervisor.start_session("s1", "/p")
    factory.latest("s1").exit(1)
    loop = asyncio.get_running_loop()
    started = loop.time()
    await supervisor.resume_session("s1")
    assert loop.time() - started >= 0.15


@pytest.mark.asyncio
async def test_terminate_during_backoff_aborts_restart() -> None:
    policy = RetryPolicy(max_retries=3, initial_delay=0.3, max_delay=1.0)
    supervisor, factory = _build(restart=policy)
    await supervisor.start_session("s1", "/p")
    factory.latest("s1").exit(1)

    restart = asyncio.create_task(supervisor.resume_session("s1"))
    await asyncio.sleep(0.05)
    await supervisor.terminate_session("s1")
    with pytest.raises(SessionNotFoundError):
        await restart
    assert len(factory.runners) == 1
    assert not supervisor.has_session("s1")


@pytest.mark.asyncio
async def test_terminate_during_restart_spawn_leaves_no_live_process() -> None:
    supervisor, factory = _build()
    await supervisor.start_session("s1", "/p")
    factory.latest("s1").exit(1)

    factory.start_delay = 0.05
    restart = asyncio.create_task(supervisor.resume_session("s1"))
    await asyncio.sleep(0.01)
    assert len(factory.runners) == 2
    await supervisor.terminate_session("s1")

    await restart
    assert not supervisor.has_session("s1")
    assert all(not r.is_running for r in factory.runners)
    assert factory.latest("s1").terminated


@pytest.mark.asyncio
async def test_terminate_during_first_spawn_waits_for_start() -> None:
    supervisor, factory = _build()
    factory.start_delay = 0.05
    start = asyncio.create_task(supervisor.start_session("s1", "/p"))
    await asyncio.sleep(0.01)
    await supervisor.terminate_session("s1")

    await start
    assert not supervisor.has_session("s1")
    assert not factory.latest("s1").is_running


# ── Messaging ──


@pytest.mark.asyncio
async def test_send_message_writes_line() -> None:
    supervisor, factory = _build()
    await supervisor.start_session("s1", "/p")
    await supervisor.send_message("s1", "hello")
    assert factory.latest("s1").written == ["hello"]


@pytest.mark.asyncio
async def test_send_message_retries_transient_failures() -> None:
    supervisor, factory = _build()
    await supervisor.start_session("s1", "/p")
    runner = factory.latest("s1")
    runner.write_failures = 2
    await supervisor.send_message("s1", "hello")
    assert runner.written == ["hello"]


@pytest.mark.asyncio
async def test_send_message_gives_up_after_max_attempts() -> None:
    supervisor, factory = _build()
    await supervisor.start_session("s1", "/p")
    runner = factory.latest("s1")
    runner.write_failures = 10
    with pytest.raises(ProcessWriteError):
        await supervisor.send_message("s1", "hello")
    assert runner.write_failures == 10 - NO_DELAY.max_retries
    assert runner.written == []


@pytest.mark.asyncio
async def test_send_message_requires_running_process() -> None:
    supervisor, factory = _build()
    await supervisor.start_session("s1", "/p")
    factory.latest("s1").exit(0)
    with pytest.raises(SessionNotRunningError):
        await supervisor.send_message("s1", "hello")
    with pytest.raises(SessionNotFoundError):
        await supervisor.send_message("nope", "hello")


# ── Cleanup ──


@pytest.mark.asyncio
async def test_cleanup_idle_sessions() -> None:
    supervisor, factory = _build()
    await supervisor.start_session("idle", "/p")
    await supervisor.start_session("busy", "/p")
    assert await supervisor.cleanup_idle_sessions(60) == []

    await asyncio.sleep(0.05)
    supervisor.touch("busy")
    removed = await supervisor.cleanup_idle_sessions(0.03)
    assert removed == ["idle"]
    assert factory.latest("idle").terminated
    assert supervisor.session_ids() == ["busy"]


@pytest.mark.asyncio
async def test_terminate_unknown_session() -> None:
    supervisor, _ = _build()
    with pytest.raises(SessionNotFoundError):
        await supervisor.terminate_session("ghost")


@pytest.mark.asyncio
async def test_terminate_all_sessions() -> None:
    supervisor, factory = _build()
    for sid in ("a", "b", "c"):
        await supervisor.start_session(sid, "/p")
    await supervisor.terminate_all_sessions()
    assert supervisor.active_session_count == 0
    assert all(r.terminated for r in factory.runners)


# ── Stream ──


@pytest.mark.asyncio
async def test_stream_survives_cancelled_read() -> None:
    supervisor, factory = _build()
    stream = await supervisor.start_session("s1", "/p")
    runner = factory.latest("s1")

    pending = asyncio.create_task(stream.__anext__())
    await asyncio.sleep(0.01)
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    await runner.stdout.put('{"type": "message", "con')
    await runner.stdout.put('tent": "joined"}\n')
    message = await asyncio.wait_for(stream.__anext__(), 1.0)
    assert message.content == "joined"


@pytest.mark.asyncio
async def test_stream_delivers_unterminated_last_line() -> None:
    supervisor, factory = _build()
    stream = await supervisor.start_session("s1", "/p")
    runner = factory.latest("s1")
    await runner.stdout.put(_chat("tail"))
    runner.exit(0)
    messages = [m async for m in stream]
    assert [m.content for m in messages] == ["tail"]
