"""Logical session registry.

CRUD and lifecycle for ``Session`` entities, independent of whether a
process is backing them. Deletion is refused while the supervisor still
holds a process for the session, so a registry entry can never be
dropped out from under a running CLI.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone

from endlesscode.shared.models.session import Session, SessionState, SessionStatistics

from .errors import (
    InvalidProjectPathError,
    ProjectNotFoundError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
    SessionStillRunningError,
)
from .lifecycle import validate_transition
from .projects import ProjectInfo, ProjectLookup

logger = logging.getLogger(__name__)

# session_id -> True while a backing process exists
ProcessProbe = Callable[[str], bool]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRegistry:
    def __init__(
        self,
        projects: ProjectLookup,
        process_probe: ProcessProbe | None = None,
    ) -> None:
        self._projects = projects
        self._has_process: ProcessProbe = process_probe or (lambda _sid: False)
        self._sessions: dict[str, Session] = {}
        self._by_project: dict[str, set[str]] = {}

    async def resolve_project(self, project_id: str) -> ProjectInfo:
        """Look up *project_id* and check its path is accessible."""
        info = await self._projects.project_info(project_id)
        if info is None:
            raise ProjectNotFoundError(project_id)
        if not await self._projects.validate_project(info.path):
            raise InvalidProjectPathError(info.path)
        return info

    async def create_session(
        self, project_id: str, session_id: str | None = None
    ) -> Session:
        await self.resolve_project(project_id)
        session = Session(project_id=project_id)
        if session_id is not None:
            if session_id in self._sessions:
                raise SessionAlreadyExistsError(session_id)
            session.id = session_id
        self._sessions[session.id] = session
        self._by_project.setdefault(project_id, set()).add(session.id)
        logger.info("Session %s created for project %s", session.id, project_id)
        return replace(session)

    # ── Reads (copies; the registry owns the originals) ──

    def get_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return replace(session) if session else None

    def require_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return replace(session)

    def list_sessions(self, project_id: str) -> list[Session]:
        ids = self._by_project.get(project_id, set())
        return self._sorted(self._sessions[sid] for sid in ids)

    def all_sessions(self) -> list[Session]:
        return self._sorted(self._sessions.values())

    def active_sessions(self) -> list[Session]:
        return self._sorted(
            s for s in self._sessions.values() if s.state is SessionState.ACTIVE
        )

    @staticmethod
    def _sorted(sessions) -> list[Session]:
        return [
            replace(s)
            for s in sorted(sessions, key=lambda s: s.last_active_at, reverse=True)
        ]

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Mutations ──

    def _mutable(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def update_session_state(self, session_id: str, state: SessionState) -> Session:
        session = self._mutable(session_id)
        if session.state is not state:
            validate_transition(session.state, state)
            logger.info(
                "Session %s: %s -> %s", session_id, session.state.value, state.value
            )
            session.state = state
        session.last_active_at = _utcnow()
        return replace(session)

    def update_session(self, session: Session) -> Session:
        """Store the mutable fields of *session* (state, counters, timestamps).

        The project binding cannot change; state changes are validated.
        """
        current = self._mutable(session.id)
        if session.project_id != current.project_id:
            raise ValueError(
                f"Session {session.id} belongs to project {current.project_id}"
            )
        if session.state is not current.state:
            validate_transition(current.state, session.state)
        current.state = session.state
        current.message_count = session.message_count
        current.last_active_at = session.last_active_at
        return replace(current)

    def touch_session(self, session_id: str) -> None:
        self._mutable(session_id).last_active_at = _utcnow()

    def increment_message_count(self, session_id: str, by: int = 1) -> int:
        session = self._mutable(session_id)
        session.message_count += by
        session.last_active_at = _utcnow()
        return session.message_count

    def delete_session(self, session_id: str) -> Session:
        session = self._mutable(session_id)
        if self._has_process(session_id):
            raise SessionStillRunningError(session_id)
        self._remove(session)
        logger.info("Session %s deleted", session_id)
        return session

    def delete_sessions_for_project(self, project_id: str) -> list[str]:
        deleted = []
        for session_id in sorted(self._by_project.get(project_id, set())):
            try:
                self.delete_session(session_id)
            except SessionStillRunningError:
                logger.warning(
                    "Keeping session %s of project %s: process still running",
                    session_id, project_id,
                )
                continue
            deleted.append(session_id)
        return deleted

    def cleanup_old_sessions(self, cutoff: datetime) -> list[str]:
        """Drop sessions inactive since before *cutoff* that have no process."""
        removed = []
        for session in list(self._sessions.values()):
            if session.last_active_at >= cutoff:
                continue
            if self._has_process(session.id):
                logger.warning(
                    "Skipping cleanup of session %s: process still running", session.id
                )
                continue
            self._remove(session)
            removed.append(session.id)
        if removed:
            logger.info("Removed %d old session(s)", len(removed))
        return removed

    def _remove(self, session: Session) -> None:
        del self._sessions[session.id]
        ids = self._by_project.get(session.project_id)
        if ids is not None:
            ids.discard(session.id)
            if not ids:
                del self._by_project[session.project_id]

    def statistics(self) -> SessionStatistics:
        counts = {state: 0 for state in SessionState}
        total_messages = 0
        for session in self._sessions.values():
            counts[session.state] += 1
            total_messages += session.message_count
        return SessionStatistics(
            total=len(self._sessions),
            active=counts[SessionState.ACTIVE],
            paused=counts[SessionState.PAUSED],
            terminated=counts[SessionState.TERMINATED],
            total_messages=total_messages,
        )
