"""Session engine: CLI processes, output parsing, prompts and history."""
from .config import RetryPolicy, ServerConfig
from .errors import (
    EndlessCodeError,
    MaxRestartsExceededError,
    ProcessError,
    SessionLimitExceededError,
    SessionNotFoundError,
)
from .history import HistoryTailer, SessionHistory
from .line_parser import LineBuffer, LineParser
from .process_runner import ProcessRunner, ProcessState, ProcessStatus
from .prompts import PendingPrompt, PromptCoordinator
from .session_manager import SessionManager
from .session_registry import SessionRegistry
from .supervisor import ProcessSupervisor

__all__ = [
    # Config
    "RetryPolicy",
    "ServerConfig",
    # Errors
    "EndlessCodeError",
    "MaxRestartsExceededError",
    "ProcessError",
    "SessionLimitExceededError",
    "SessionNotFoundError",
    # Components
    "HistoryTailer",
    "LineBuffer",
    "LineParser",
    "PendingPrompt",
    "ProcessRunner",
    "ProcessState",
    "ProcessStatus",
    "PromptCoordinator",
    "ProcessSupervisor",
    "SessionHistory",
    "SessionManager",
    "SessionRegistry",
]
