"""Per-session process supervision.

Keeps at most one ``ManagedSession`` (a live CLI subprocess) per session
id, enforces the concurrent-session cap, restarts dead processes with
capped exponential backoff, and retries transient stdin write failures.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from endlesscode.shared.models.message import ParsedMessage

from .config import RetryPolicy, ServerConfig
from .errors import (
    MaxRestartsExceededError,
    ProcessWriteError,
    SessionAlreadyExistsError,
    SessionLimitExceededError,
    SessionNotFoundError,
    SessionNotRunningError,
)
from .line_parser import LineBuffer, LineParser
from .locks import KeyedLocks
from .process_runner import OutputChannel, ProcessRunner, ProcessState

logger = logging.getLogger(__name__)

# (cli_path, project_path, session_id, resume) -> unstarted runner
RunnerFactory = Callable[[str, str, str, bool], ProcessRunner]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ParsedMessageStream:
    """Async iterator of ``ParsedMessage`` over one runner's stdout.

    Lines are delivered in emission order. Malformed lines come through
    as ``UnknownMessage``; they never end the stream. Safe to cancel
    mid-``__anext__`` and resume iterating later.
    """

    def __init__(
        self,
        channel: OutputChannel,
        parser: LineParser,
        on_activity: Callable[[], None] | None = None,
    ) -> None:
        self._channel = channel
        self._parser = parser
        self._on_activity = on_activity
        self._buffer = LineBuffer()
        self._pending: deque[str] = deque()
        self._exhausted = False

    def __aiter__(self) -> ParsedMessageStream:
        return self

    async def __anext__(self) -> ParsedMessage:
        while not self._pending:
            if self._exhausted:
                raise StopAsyncIteration
            chunk = await self._channel.receive()
            if chunk is None:
                self._exhausted = True
                tail = self._buffer.flush()
                if tail:
                    self._pending.append(tail)
                continue
            self._pending.extend(self._buffer.append(chunk))
        line = self._pending.popleft()
        if self._on_activity is not None:
            self._on_activity()
        return self._parser.parse(line)


@dataclass
class ManagedSession:
    session_id: str
    project_path: str
    runner: ProcessRunner
    restart_count: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    stream: ParsedMessageStream | None = None
    stderr_task: asyncio.Task | None = field(default=None, repr=False)


@dataclass(frozen=True)
class SessionProcessState:
    """Read-only snapshot of a managed session."""
    session_id: str
    project_path: str
    process_state: ProcessState
    restart_count: int
    started_at: datetime
    last_activity_at: datetime
    pid: int | None = None


class ProcessSupervisor:
    """Owns the ``{session_id -> ManagedSession}`` table."""

    def __init__(
        self,
        config: ServerConfig,
        parser: LineParser | None = None,
        runner_factory: RunnerFactory | None = None,
        restart_policy: RetryPolicy | None = None,
        send_policy: RetryPolicy | None = None,
    ) -> None:
        self._config = config
        self._parser = parser or LineParser()
        self._runner_factory = runner_factory or self._default_runner_factory
        self._restart_policy = restart_policy or config.restart_policy
        self._send_policy = send_policy or config.message_send_policy
        self._sessions: dict[str, ManagedSession] = {}
        self._locks = KeyedLocks()

    def _default_runner_factory(
        self, cli_path: str, project_path: str, session_id: str, resume: bool
    ) -> ProcessRunner:
        return ProcessRunner.for_claude_cli(
            cli_path=cli_path,
            project_path=project_path,
            session_id=session_id,
            resume=resume,
            output_queue_size=self._config.output_queue_size,
        )

    # ── Queries ──

    @property
    def active_session_count(self) -> int:
        return len(self._sessions)

    @property
    def max_sessions(self) -> int:
        return self._config.max_concurrent_sessions

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def session_state(self, session_id: str) -> SessionProcessState:
        managed = self._require(session_id)
        return SessionProcessState(
            session_id=managed.session_id,
            project_path=managed.project_path,
            process_state=managed.runner.state,
            restart_count=managed.restart_count,
            started_at=managed.started_at,
            last_activity_at=managed.last_activity_at,
            pid=managed.runner.pid,
        )

    def _require(self, session_id: str) -> ManagedSession:
        managed = self._sessions.get(session_id)
        if managed is None:
            raise SessionNotFoundError(session_id)
        return managed

    # ── Lifecycle ──

    async def start_session(
        self, session_id: str, project_path: str, resume: bool = False
    ) -> ParsedMessageStream:
        """Spawn the CLI for *session_id* and return its message stream."""
        async with self._locks.for_key(session_id):
            if len(self._sessions) >= self.max_sessions:
                raise SessionLimitExceededError(len(self._sessions), self.max_sessions)
            if session_id in self._sessions:
                raise SessionAlreadyExistsError(session_id)

            runner = self._runner_factory(
                self._config.resolved_cli_path, project_path, session_id, resume
            )
            managed = ManagedSession(
                session_id=session_id, project_path=project_path, runner=runner,
            )
            # Reserve the slot before awaiting so concurrent starts see it.
            self._sessions[session_id] = managed
            try:
                await self._start_runner(managed, runner)
            except Exception:
                if self._sessions.get(session_id) is managed:
                    del self._sessions[session_id]
                raise
            self._attach(managed)
        logger.info(
            "Session %s started pid=%s project=%s resume=%s (%d/%d)",
            session_id, runner.pid, project_path, resume,
            len(self._sessions), self.max_sessions,
        )
        return managed.stream

    async def resume_session(self, session_id: str) -> ParsedMessageStream:
        """Existing stream if the process is alive, else restart it."""
        async with self._locks.for_key(session_id):
            managed = self._require(session_id)
            if managed.runner.is_running and managed.stream is not None:
                return managed.stream
            delay = self._restart_delay(managed)

        logger.warning(
            "Session %s: process %s, restarting in %.2fs (attempt %d/%d)",
            session_id, managed.runner.state.describe(), delay,
            managed.restart_count + 1, self._restart_policy.max_retries,
        )
        # Backoff runs unlocked; terminate_session may cut it short.
        await asyncio.sleep(delay)

        async with self._locks.for_key(session_id):
            if self._sessions.get(session_id) is not managed:
                # Terminated while we were backing off.
                raise SessionNotFoundError(session_id)
            if managed.runner.is_running and managed.stream is not None:
                return managed.stream
            return await self._restart(managed)

    def _restart_delay(self, managed: ManagedSession) -> float:
        policy = self._restart_policy
        if managed.restart_count >= policy.max_retries:
            logger.error(
                "Session %s: restart cap reached (%d/%d)",
                managed.session_id, managed.restart_count, policy.max_retries,
            )
            raise MaxRestartsExceededError(managed.session_id, managed.restart_count)
        return policy.delay(managed.restart_count)

    async def _restart(self, managed: ManagedSession) -> ParsedMessageStream:
        """Swap in a fresh ``--resume`` runner. Caller holds the session lock."""
        self._restart_delay(managed)
        self._detach(managed)
        runner = self._runner_factory(
            self._config.resolved_cli_path, managed.project_path, managed.session_id, True
        )
        managed.runner = runner
        managed.stream = None
        managed.restart_count += 1
        await self._start_runner(managed, runner)
        self._attach(managed)
        logger.info(
            "Session %s restarted pid=%s (restart_count=%d)",
            managed.session_id, runner.pid, managed.restart_count,
        )
        return managed.stream

    async def _start_runner(self, managed: ManagedSession, runner: ProcessRunner) -> None:
        await runner.start()
        if self._sessions.get(managed.session_id) is not managed:
            # The entry went away mid-spawn; the new process has no owner.
            await runner.terminate()
            raise SessionNotFoundError(managed.session_id)

    def _attach(self, managed: ManagedSession) -> None:
        session_id = managed.session_id
        managed.last_activity_at = _utcnow()
        managed.stream = ParsedMessageStream(
            managed.runner.stdout,
            self._parser,
            on_activity=lambda: self.touch(session_id),
        )
        managed.stderr_task = asyncio.create_task(
            self._log_stderr(session_id, managed.runner.stderr)
        )

    def _detach(self, managed: ManagedSession) -> None:
        if managed.stderr_task is not None and not managed.stderr_task.done():
            managed.stderr_task.cancel()
        managed.stderr_task = None

    async def _log_stderr(self, session_id: str, channel: OutputChannel) -> None:
        buffer = LineBuffer()
        async for chunk in channel:
            for line in buffer.append(chunk):
                logger.debug("Session %s stderr: %s", session_id, line)
        tail = buffer.flush()
        if tail:
            logger.debug("Session %s stderr: %s", session_id, tail)

    async def send_message(self, session_id: str, text: str) -> None:
        """Write one line to the session's stdin, retrying transient failures."""
        managed = self._require(session_id)
        if not managed.runner.is_running:
            raise SessionNotRunningError(session_id)

        policy = self._send_policy
        attempts = max(1, policy.max_retries)
        for attempt in range(attempts):
            try:
                await managed.runner.write_line(text)
                managed.last_activity_at = _utcnow()
                return
            except ProcessWriteError as exc:
                if attempt + 1 >= attempts:
                    logger.error(
                        "Session %s: write failed after %d attempt(s): %s",
                        session_id, attempts, exc,
                    )
                    raise
                delay = policy.delay(attempt)
                logger.warning(
                    "Session %s: write failed (%s), retrying in %.2fs",
                    session_id, exc, delay,
                )
                await asyncio.sleep(delay)

    def touch(self, session_id: str) -> None:
        managed = self._sessions.get(session_id)
        if managed is not None:
            managed.last_activity_at = _utcnow()

    async def terminate_session(self, session_id: str) -> None:
        """Stop the process and drop the entry. ``SessionNotFound`` if absent."""
        async with self._locks.for_key(session_id):
            managed = self._sessions.pop(session_id, None)
            if managed is None:
                raise SessionNotFoundError(session_id)
            self._detach(managed)
            await managed.runner.terminate()
        self._locks.discard(session_id)
        logger.info(
            "Session %s terminated (%s)", session_id, managed.runner.state.describe()
        )

    async def cleanup_idle_sessions(self, timeout_seconds: float) -> list[str]:
        """Terminate sessions idle for longer than *timeout_seconds*."""
        cutoff = _utcnow() - timedelta(seconds=timeout_seconds)
        idle = [
            sid for sid, managed in self._sessions.items()
            if managed.last_activity_at < cutoff
        ]
        removed: list[str] = []
        for session_id in idle:
            try:
                await self.terminate_session(session_id)
            except SessionNotFoundError:
                continue
            removed.append(session_id)
        if removed:
            logger.info("Cleaned up %d idle session(s): %s", len(removed), removed)
        return removed

    async def terminate_all_sessions(self) -> None:
        session_ids = list(self._sessions)
        if not session_ids:
            return
        logger.info("Terminating %d session(s)", len(session_ids))
        results = await asyncio.gather(
            *(self.terminate_session(sid) for sid in session_ids),
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results):
            if isinstance(result, Exception) and not isinstance(result, SessionNotFoundError):
                logger.error("Failed to terminate session %s: %s", session_id, result)
