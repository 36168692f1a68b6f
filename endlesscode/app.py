"""EndlessCode server command-line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from endlesscode.engine.config import ServerConfig
from endlesscode.engine.yaml_config import load_yaml_config

logger = logging.getLogger(__name__)


def configure_logging(level: str, log_dir: Path | None = None) -> Path:
    """Install the rotating file + stderr handlers on the root logger."""
    log_dir = log_dir or Path.home() / ".endlesscode" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "endlesscode-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="endlesscode",
        description="EndlessCode: WebSocket server for remote Claude CLI sessions",
    )
    parser.add_argument(
        "--host", metavar="HOST",
        help="Interface to bind (default: 127.0.0.1 or ENDLESSCODE_HOST)",
    )
    parser.add_argument(
        "--port", type=int,
        help="Port to listen on (default: 8080 or ENDLESSCODE_PORT)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file with server: and retry: sections",
    )
    parser.add_argument(
        "--cli-path", metavar="PATH",
        help="Claude CLI executable (default: claude on PATH or CLAUDE_CLI_PATH)",
    )
    parser.add_argument(
        "--auth-token", metavar="TOKEN",
        help="Require this bearer token on WebSocket connections",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    return parser


def resolve_config(args: argparse.Namespace) -> ServerConfig:
    """Environment, then YAML, then command-line flags."""
    config = ServerConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.cli_path:
        overrides["cli_path"] = args.cli_path
    if args.auth_token:
        overrides["auth_token"] = args.auth_token
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    if overrides:
        config = replace(config, **overrides)
    return config


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    config = resolve_config(args)
    log_file = configure_logging(config.log_level)
    logger.info(
        "Starting EndlessCode server cwd=%s host=%s port=%s config=%s log=%s",
        Path.cwd(),
        config.host,
        config.port,
        args.config or "<none>",
        log_file,
    )
    logger.info(
        "Claude CLI: %s (base=%s)",
        config.resolved_cli_path,
        os.path.expanduser(config.claude_base_path),
    )

    from endlesscode.server.server import EndlessCodeServer

    server = EndlessCodeServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted; server stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
