"""Exception hierarchy for the session server.

Every error carries a stable wire ``code`` and an HTTP status so the
WebSocket and REST layers can report it without leaking internals.
"""
from __future__ import annotations


class EndlessCodeError(Exception):
    """Base exception for all server errors."""

    code = "INTERNAL_ERROR"
    http_status = 500


# ── Process errors ──


class ProcessError(EndlessCodeError):
    """Base class for subprocess failures."""

    code = "CLI_CRASHED"


class ExecutableNotFoundError(ProcessError):
    """CLI executable path does not exist or is not on PATH."""

    code = "CLI_NOT_FOUND"
    http_status = 503

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Executable not found: {path}")


class ProcessAlreadyRunningError(ProcessError):
    """start() was called on a runner that is not idle."""

    code = "INVALID_STATE"
    http_status = 409

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Process already started (status: {status})")


class ProcessNotRunningError(ProcessError):
    """write() was called while the process is not running."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Process is not running (status: {status})")


class ProcessStartError(ProcessError):
    """Spawning the subprocess failed."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to start process: {reason}")


class ProcessWriteError(ProcessError):
    """Writing to the subprocess stdin failed."""

    code = "NETWORK_ERROR"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to write to process: {reason}")


# ── Supervisor / session errors ──


class SessionLimitExceededError(EndlessCodeError):
    """Concurrent session cap reached."""

    code = "SESSION_LIMIT"
    http_status = 429

    def __init__(self, current: int, maximum: int):
        self.current = current
        self.maximum = maximum
        super().__init__(
            f"Session limit exceeded: {current}/{maximum} sessions running"
        )


class SessionAlreadyExistsError(EndlessCodeError):
    """A managed process already exists for this session id."""

    code = "INVALID_STATE"
    http_status = 409

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session already exists: {session_id}")


class SessionNotFoundError(EndlessCodeError):
    """Unknown session id."""

    code = "SESSION_NOT_FOUND"
    http_status = 404

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionNotRunningError(EndlessCodeError):
    """Session exists but its process is not running."""

    code = "CLI_CRASHED"
    http_status = 409

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session process is not running: {session_id}")


class SessionNotActiveError(EndlessCodeError):
    """Session is paused or terminated."""

    code = "SESSION_NOT_ACTIVE"
    http_status = 409

    def __init__(self, session_id: str, state: str):
        self.session_id = session_id
        self.state = state
        super().__init__(f"Session {session_id} is not active (state: {state})")


class SessionStillRunningError(EndlessCodeError):
    """Registry deletion refused while a backing process is alive."""

    code = "INVALID_STATE"
    http_status = 409

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"Session {session_id} still has a running process; terminate it first"
        )


class MaxRestartsExceededError(EndlessCodeError):
    """Restart attempts exhausted for a session."""

    code = "CLI_CRASHED"
    http_status = 503

    def __init__(self, session_id: str, restart_count: int):
        self.session_id = session_id
        self.restart_count = restart_count
        super().__init__(
            f"Session {session_id} exceeded max restarts ({restart_count})"
        )


class InvalidTransitionError(EndlessCodeError, ValueError):
    """Lifecycle transition not allowed from the current state."""

    code = "INVALID_STATE"
    http_status = 409


# ── Prompt errors ──


class PromptNotFoundError(EndlessCodeError):
    """Unknown prompt id."""

    code = "PROMPT_NOT_FOUND"
    http_status = 404

    def __init__(self, prompt_id: str):
        self.prompt_id = prompt_id
        super().__init__(f"Prompt not found: {prompt_id}")


class PromptNotPendingError(EndlessCodeError):
    """Prompt already reached a terminal state."""

    code = "PROMPT_NOT_PENDING"
    http_status = 409

    def __init__(self, prompt_id: str, state: str):
        self.prompt_id = prompt_id
        self.state = state
        super().__init__(f"Prompt {prompt_id} is not pending (state: {state})")


# ── Project errors ──


class ProjectNotFoundError(EndlessCodeError):
    code = "PROJECT_NOT_FOUND"
    http_status = 404

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class InvalidProjectPathError(EndlessCodeError):
    code = "PROJECT_NOT_FOUND"
    http_status = 400

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Project path is not accessible: {path}")


# ── Connection errors ──


class AuthenticationFailedError(EndlessCodeError):
    code = "AUTH_FAILED"
    http_status = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)


class ConnectionLimitExceededError(EndlessCodeError):
    code = "CONNECTION_LIMIT"
    http_status = 503

    def __init__(self, maximum: int):
        self.maximum = maximum
        super().__init__(f"Connection limit exceeded (max {maximum})")


class ConnectionNotFoundError(EndlessCodeError):
    code = "NETWORK_ERROR"
    http_status = 404

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection not found: {connection_id}")


class MissingParameterError(EndlessCodeError):
    code = "INVALID_MESSAGE"
    http_status = 400

    def __init__(self, parameter: str):
        self.parameter = parameter
        super().__init__(f"Missing required parameter: {parameter}")


class InvalidMessageError(EndlessCodeError):
    code = "INVALID_MESSAGE"
    http_status = 400

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid message: {reason}")


# ── History errors ──


class HistoryFileNotFoundError(EndlessCodeError):
    code = "SESSION_NOT_FOUND"
    http_status = 404

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Session history file not found: {path}")
