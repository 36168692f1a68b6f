"""Session lifecycle coordinator.

Ties the SessionRegistry (logical sessions), the ProcessSupervisor
(live processes) and the PromptCoordinator together, and runs one
output task per active session that turns parsed CLI output into
events on the EventBus.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from endlesscode.adapters.event_bus import EventBus
from endlesscode.adapters.events import CliOutput, PromptRequested, SessionStateChanged
from endlesscode.shared.models.message import AskUserQuestion, ParsedMessage
from endlesscode.shared.models.session import Session, SessionState

from .config import ServerConfig
from .errors import (
    EndlessCodeError,
    MaxRestartsExceededError,
    MissingParameterError,
    ProcessError,
    PromptNotFoundError,
    PromptNotPendingError,
    SessionNotActiveError,
    SessionNotFoundError,
    SessionNotRunningError,
)
from .history import HistoryTailer, SessionHistory
from .locks import KeyedLocks
from .projects import ClaudeProjectLookup, ProjectInfo, ProjectLookup
from .prompts import PromptCoordinator, tool_result_envelope
from .session_registry import SessionRegistry
from .supervisor import ParsedMessageStream, ProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass
class IdleSweep:
    """Outcome of one idle sweep.

    ``terminated`` lost their process; ``removed`` left the registry.
    """
    terminated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


class SessionManager:
    """Create, resume, pause and terminate sessions end to end."""

    def __init__(
        self,
        config: ServerConfig,
        projects: ProjectLookup,
        supervisor: ProcessSupervisor,
        prompts: PromptCoordinator,
        history: HistoryTailer,
        event_bus: EventBus,
        registry: SessionRegistry | None = None,
    ) -> None:
        self.config = config
        self.projects = projects
        self.supervisor = supervisor
        self.prompts = prompts
        self.history = history
        self.event_bus = event_bus
        self.registry = registry or SessionRegistry(
            projects, process_probe=supervisor.has_session
        )
        self._handlers: dict[str, asyncio.Task] = {}
        self._locks = KeyedLocks()

    @classmethod
    def create_default(
        cls, config: ServerConfig, event_bus: EventBus | None = None
    ) -> SessionManager:
        return cls(
            config=config,
            projects=ClaudeProjectLookup(config.claude_base_path),
            supervisor=ProcessSupervisor(config),
            prompts=PromptCoordinator(config.prompt_timeout_seconds),
            history=HistoryTailer(config.claude_base_path),
            event_bus=event_bus or EventBus(),
        )

    # ── Queries ──

    async def list_projects(self) -> list[ProjectInfo]:
        return await self.projects.list_projects()

    def list_sessions(self, project_id: str) -> list[Session]:
        return self.registry.list_sessions(project_id)

    def all_sessions(self) -> list[Session]:
        return self.registry.all_sessions()

    def get_session(self, session_id: str) -> Session:
        return self.registry.require_session(session_id)

    def has_output_handler(self, session_id: str) -> bool:
        task = self._handlers.get(session_id)
        return task is not None and not task.done()

    def stats(self) -> dict[str, Any]:
        return {
            "sessions": self.registry.statistics().to_dict(),
            "runningProcesses": self.supervisor.active_session_count,
            "maxProcesses": self.supervisor.max_sessions,
            "pendingPrompts": len(self.prompts.all_pending_prompts()),
            "droppedEvents": self.event_bus.dropped_events(),
        }

    # ── Lifecycle ──

    async def create_session(self, project_id: str) -> Session:
        project = await self.registry.resolve_project(project_id)
        session = await self.registry.create_session(project_id)
        async with self._locks.for_key(session.id):
            try:
                stream = await self.supervisor.start_session(session.id, project.path)
            except Exception:
                self.registry.delete_session(session.id)
                raise
            self._start_handler(session.id, stream)
        await self._emit_state(session.id, SessionState.ACTIVE)
        return self.registry.require_session(session.id)

    async def resume_session(self, session_id: str) -> Session:
        async with self._locks.for_key(session_id):
            session = self.registry.require_session(session_id)
            if session.state is SessionState.ACTIVE and self.has_output_handler(session_id):
                return session
            if session.state is SessionState.TERMINATED:
                # Validates and raises: terminated is final.
                self.registry.update_session_state(session_id, SessionState.ACTIVE)

            if self.supervisor.has_session(session_id):
                stream = await self.supervisor.resume_session(session_id)
            else:
                project = await self.registry.resolve_project(session.project_id)
                stream = await self.supervisor.start_session(
                    session_id, project.path, resume=True
                )
            session = self.registry.update_session_state(session_id, SessionState.ACTIVE)
            self._start_handler(session_id, stream)
        await self._emit_state(session_id, SessionState.ACTIVE)
        return session

    async def pause_session(self, session_id: str) -> Session:
        """Stop forwarding output. The process is kept; its stdout backs up."""
        async with self._locks.for_key(session_id):
            self.registry.require_session(session_id)
            await self._stop_handler(session_id)
            session = self.registry.update_session_state(session_id, SessionState.PAUSED)
        await self._emit_state(session_id, SessionState.PAUSED)
        return session

    async def terminate_session(self, session_id: str) -> Session:
        async with self._locks.for_key(session_id):
            session = self.registry.require_session(session_id)
            await self._stop_handler(session_id)
            await self._release(session_id)
            if session.state is not SessionState.TERMINATED:
                session = self.registry.update_session_state(
                    session_id, SessionState.TERMINATED
                )
        self._locks.discard(session_id)
        await self._emit_state(session_id, SessionState.TERMINATED)
        return session

    async def delete_session(self, session_id: str) -> None:
        """Terminate if needed, then drop the registry entry."""
        await self.terminate_session(session_id)
        self.registry.delete_session(session_id)

    async def _release(self, session_id: str) -> None:
        if self.supervisor.has_session(session_id):
            try:
                await self.supervisor.terminate_session(session_id)
            except SessionNotFoundError:
                pass
        self.prompts.cleanup_session(session_id)

    # ── Messaging ──

    async def send_message(self, session_id: str, text: str) -> None:
        session = self.registry.require_session(session_id)
        if session.state is not SessionState.ACTIVE:
            raise SessionNotActiveError(session_id, session.state.value)
        await self.supervisor.send_message(session_id, text)
        self.registry.increment_message_count(session_id)

    async def respond_to_prompt(
        self,
        session_id: str,
        prompt_id: str,
        selected_options: Sequence[str] = (),
        custom_input: str | None = None,
    ) -> None:
        """Deliver an answer to the CLI, then mark the prompt responded.

        A failed write leaves the prompt pending so the client can retry.
        """
        prompt = self.prompts.get_prompt(prompt_id)
        if prompt.session_id != session_id:
            raise PromptNotFoundError(prompt_id)
        async with self._locks.for_key(session_id):
            if not self.supervisor.session_state(session_id).process_state.is_running:
                raise SessionNotRunningError(session_id)
            content = self.prompts.prepare_response(prompt_id, selected_options, custom_input)
            await self.supervisor.send_message(
                session_id, tool_result_envelope(prompt.tool_use_id, content)
            )
            try:
                self.prompts.complete_response(prompt_id, content)
            except PromptNotPendingError as exc:
                # Deadline fired while the write was in flight.
                logger.warning(
                    "Session %s: answer delivered but prompt already %s", session_id, exc.state
                )
        self.registry.touch_session(session_id)

    # ── History ──

    async def get_session_history(
        self,
        session_id: str,
        limit: int = 1000,
        offset: int = 0,
        project_id: str | None = None,
    ) -> SessionHistory:
        project_id = self._history_project(session_id, project_id)
        return await asyncio.to_thread(
            self.history.load_session_history, project_id, session_id, limit, offset
        )

    async def get_recent_messages(
        self, session_id: str, count: int = 100, project_id: str | None = None
    ) -> list[ParsedMessage]:
        project_id = self._history_project(session_id, project_id)
        return await asyncio.to_thread(
            self.history.load_session_recent, project_id, session_id, count
        )

    def _history_project(self, session_id: str, project_id: str | None) -> str:
        if project_id:
            return project_id
        session = self.registry.get_session(session_id)
        if session is None:
            raise MissingParameterError("projectId")
        return session.project_id

    # ── Cleanup ──

    async def cleanup_idle_sessions(self, timeout_seconds: float) -> IdleSweep:
        """Terminate idle processes, then drop registry entries idle as long."""
        terminated = await self.supervisor.cleanup_idle_sessions(timeout_seconds)
        for session_id in terminated:
            await self._stop_handler(session_id)
            self.prompts.cleanup_session(session_id)
            session = self.registry.get_session(session_id)
            if session is not None and session.state is not SessionState.TERMINATED:
                self.registry.update_session_state(session_id, SessionState.TERMINATED)
                await self._emit_state(
                    session_id, SessionState.TERMINATED, error="Session idle timeout"
                )
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=timeout_seconds)
        removed = self.registry.cleanup_old_sessions(cutoff)
        for session_id in removed:
            self.prompts.cleanup_session(session_id)
        return IdleSweep(terminated=terminated, removed=removed)

    async def terminate_all_sessions(self) -> None:
        for session in self.registry.all_sessions():
            if session.state is SessionState.TERMINATED and not self.supervisor.has_session(session.id):
                continue
            try:
                await self.terminate_session(session.id)
            except EndlessCodeError as exc:
                logger.error("Failed to terminate session %s: %s", session.id, exc)
        # Processes started outside the registry, if any.
        await self.supervisor.terminate_all_sessions()
        self.prompts.cleanup_all()

    # ── Output handling ──

    def _start_handler(self, session_id: str, stream: ParsedMessageStream) -> None:
        previous = self._handlers.get(session_id)
        if previous is not None and not previous.done():
            previous.cancel()
        self._handlers[session_id] = asyncio.create_task(
            self._forward_output(session_id, stream),
            name=f"session-output-{session_id}",
        )

    async def _stop_handler(self, session_id: str) -> None:
        task = self._handlers.pop(session_id, None)
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.wait({task})

    async def _forward_output(self, session_id: str, stream: ParsedMessageStream) -> None:
        current: ParsedMessageStream | None = stream
        try:
            while current is not None:
                async for message in current:
                    await self._handle_message(session_id, message)
                current = await self._handle_stream_end(session_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Session %s: output handler failed", session_id)
        if self._handlers.get(session_id) is asyncio.current_task():
            del self._handlers[session_id]

    async def _handle_message(self, session_id: str, message: ParsedMessage) -> None:
        if session_id in self.registry:
            self.registry.touch_session(session_id)
        if isinstance(message, AskUserQuestion):
            prompt = self.prompts.register_prompt(session_id, message)
            await self.event_bus.emit(PromptRequested(
                session_id=session_id,
                prompt_id=prompt.id,
                question=message,
                timeout_seconds=prompt.timeout_seconds,
            ))
            return
        await self.event_bus.emit(CliOutput(session_id=session_id, message=message))

    async def _handle_stream_end(self, session_id: str) -> ParsedMessageStream | None:
        """Decide what follows the end of a session's output.

        Returns the next stream after an automatic restart, or None when the
        session is finished.
        """
        if not self.supervisor.has_session(session_id):
            return None
        process_state = self.supervisor.session_state(session_id).process_state
        if process_state.exit_code == 0:
            logger.info("Session %s: CLI exited normally", session_id)
            await self._finish(session_id)
            return None

        logger.warning(
            "Session %s: CLI died (%s)", session_id, process_state.describe()
        )
        while True:
            try:
                return await self.supervisor.resume_session(session_id)
            except MaxRestartsExceededError as exc:
                await self._finish(session_id, error=str(exc), error_code=exc.code)
                return None
            except SessionNotFoundError:
                return None
            except ProcessError as exc:
                logger.warning("Session %s: restart failed: %s", session_id, exc)

    async def _finish(
        self,
        session_id: str,
        error: str | None = None,
        error_code: str | None = None,
    ) -> None:
        await self._release(session_id)
        session = self.registry.get_session(session_id)
        if session is not None and session.state is not SessionState.TERMINATED:
            self.registry.update_session_state(session_id, SessionState.TERMINATED)
        await self._emit_state(
            session_id, SessionState.TERMINATED, error=error, error_code=error_code
        )

    async def _emit_state(
        self,
        session_id: str,
        state: SessionState,
        error: str | None = None,
        error_code: str | None = None,
    ) -> None:
        await self.event_bus.emit(SessionStateChanged(
            session_id=session_id,
            state=state.value,
            error=error,
            error_code=error_code,
        ))
