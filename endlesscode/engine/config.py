"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via ENDLESSCODE_* env vars
(and CLAUDE_CLI_PATH for the executable).
"""
from __future__ import annotations

import logging
import math
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff.

    Delays are in seconds. ``delay(attempt)`` is
    ``min(initial_delay * multiplier ** attempt, max_delay)``.
    """

    max_retries: int
    initial_delay: float
    max_delay: float
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")

    def delay(self, attempt: int) -> float:
        attempt = max(0, attempt)
        try:
            value = self.initial_delay * (self.multiplier ** attempt)
        except OverflowError:
            return self.max_delay
        if math.isinf(value) or math.isnan(value):
            return self.max_delay
        return min(value, self.max_delay)

    @classmethod
    def from_dict(cls, raw: dict, base: RetryPolicy) -> RetryPolicy:
        return cls(
            max_retries=int(raw.get("max_retries", base.max_retries)),
            initial_delay=float(raw.get("initial_delay", base.initial_delay)),
            max_delay=float(raw.get("max_delay", base.max_delay)),
            multiplier=float(raw.get("multiplier", base.multiplier)),
        )


# Presets mirroring the client/server defaults.
CLI_RESTART = RetryPolicy(max_retries=3, initial_delay=0.5, max_delay=5.0)
MESSAGE_SEND = RetryPolicy(max_retries=3, initial_delay=0.1, max_delay=1.0)
WEBSOCKET_RECONNECT = RetryPolicy(max_retries=10, initial_delay=1.0, max_delay=60.0)


def resolve_command(command: str) -> str:
    """Resolve a bare command name via PATH; explicit paths pass through."""
    if os.sep in command or (os.altsep and os.altsep in command):
        return os.path.expanduser(command)
    return shutil.which(command) or command


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (expected integer)", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (expected number)", name, raw)
        return default


@dataclass
class ServerConfig:
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8080
    cli_path: str = "claude"
    # Root of the CLI's data directory; session logs live under
    # <claude_base_path>/projects/<projectId>/<sessionId>.jsonl
    claude_base_path: str = field(
        default_factory=lambda: str(Path.home() / ".claude")
    )

    max_concurrent_sessions: int = 5
    max_websocket_connections: int = 100
    # Idle sessions are terminated after this many seconds.
    session_timeout_seconds: float = 900.0
    prompt_timeout_seconds: float = 1800.0
    stale_connection_timeout_seconds: float = 120.0
    cleanup_interval_seconds: float = 60.0

    replay_buffer_size: int = 100
    # Per-process stdout chunk queue bound.
    output_queue_size: int = 1000

    log_level: str = "INFO"
    # None disables WebSocket authentication.
    auth_token: str | None = field(default=None, repr=False)

    restart_policy: RetryPolicy = CLI_RESTART
    message_send_policy: RetryPolicy = MESSAGE_SEND
    connection_send_policy: RetryPolicy = MESSAGE_SEND

    @property
    def resolved_cli_path(self) -> str:
        return resolve_command(self.cli_path)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load configuration from ENDLESSCODE_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("ENDLESSCODE_")
        }
        if env_vars:
            logger.info(
                "ServerConfig.from_env: ENDLESSCODE_* env overrides: %s",
                ", ".join(
                    f"{k}={'***' if k == 'ENDLESSCODE_AUTH_TOKEN' else v}"
                    for k, v in sorted(env_vars.items())
                ),
            )
        else:
            logger.debug("ServerConfig.from_env: no ENDLESSCODE_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            host=os.getenv("ENDLESSCODE_HOST", defaults.host),
            port=_env_int("ENDLESSCODE_PORT", defaults.port),
            cli_path=os.getenv("CLAUDE_CLI_PATH", defaults.cli_path),
            claude_base_path=os.getenv(
                "ENDLESSCODE_CLAUDE_HOME", defaults.claude_base_path
            ),
            max_concurrent_sessions=_env_int(
                "ENDLESSCODE_MAX_SESSIONS", defaults.max_concurrent_sessions
            ),
            max_websocket_connections=_env_int(
                "ENDLESSCODE_MAX_CONNECTIONS", defaults.max_websocket_connections
            ),
            session_timeout_seconds=_env_float(
                "ENDLESSCODE_SESSION_TIMEOUT", defaults.session_timeout_seconds
            ),
            prompt_timeout_seconds=_env_float(
                "ENDLESSCODE_PROMPT_TIMEOUT", defaults.prompt_timeout_seconds
            ),
            stale_connection_timeout_seconds=_env_float(
                "ENDLESSCODE_STALE_TIMEOUT",
                defaults.stale_connection_timeout_seconds,
            ),
            cleanup_interval_seconds=_env_float(
                "ENDLESSCODE_CLEANUP_INTERVAL", defaults.cleanup_interval_seconds
            ),
            log_level=os.getenv("ENDLESSCODE_LOG_LEVEL", defaults.log_level).upper(),
            auth_token=os.getenv("ENDLESSCODE_AUTH_TOKEN") or None,
        )
        logger.info(
            "ServerConfig.from_env: host=%s port=%d cli=%s max_sessions=%d auth=%s",
            config.host, config.port, config.cli_path,
            config.max_concurrent_sessions,
            "on" if config.auth_token else "off",
        )
        return config
