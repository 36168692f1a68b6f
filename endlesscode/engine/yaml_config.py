"""YAML configuration loader.

Layers an optional YAML file over the environment-derived config.

Example YAML:
    server:
      host: 0.0.0.0
      port: 9000
      cli_path: /usr/local/bin/claude
      max_concurrent_sessions: 8
      prompt_timeout_seconds: 600

    retry:
      restart:
        max_retries: 5
        initial_delay: 1.0
        max_delay: 30.0
      message_send:
        max_retries: 2
"""
from __future__ import annotations

import logging
from dataclasses import fields, replace
from pathlib import Path

import yaml

from .config import RetryPolicy, ServerConfig

logger = logging.getLogger(__name__)

_RETRY_SECTIONS = {
    "restart": "restart_policy",
    "message_send": "message_send_policy",
    "connection_send": "connection_send_policy",
}


def load_yaml_config(
    path: str | Path,
    base: ServerConfig | None = None,
) -> ServerConfig:
    """Load a YAML config file and apply it over *base*.

    *base* defaults to ``ServerConfig.from_env()``. Unknown keys are
    logged and ignored.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    config = base if base is not None else ServerConfig.from_env()

    server_raw = raw.get("server") or {}
    known = {
        f.name for f in fields(ServerConfig) if not f.name.endswith("_policy")
    }
    overrides: dict = {}
    for key, value in server_raw.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown server key %r", key)
            continue
        overrides[key] = value
    if overrides:
        config = replace(config, **overrides)

    retry_raw = raw.get("retry") or {}
    for section, value in retry_raw.items():
        attr = _RETRY_SECTIONS.get(section)
        if attr is None:
            logger.warning("load_yaml_config: ignoring unknown retry section %r", section)
            continue
        policy = RetryPolicy.from_dict(value or {}, getattr(config, attr))
        config = replace(config, **{attr: policy})

    for section in sorted(set(raw) - {"server", "retry"}):
        logger.warning("load_yaml_config: ignoring unknown section %r", section)

    logger.info(
        "Parsed YAML config %s: host=%s port=%s max_sessions=%d",
        path.name, config.host, config.port, config.max_concurrent_sessions,
    )
    return config
