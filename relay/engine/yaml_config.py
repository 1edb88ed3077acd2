"""YAML configuration loader.

Overlays a single YAML file on an EngineConfig (by default the one
built from env vars). Keys are grouped by concern:

Example YAML:
    cli:
      path: /usr/local/bin/claude
      model: claude-sonnet-4-5
      system_prompt: "Be concise."
      mcp_config: ~/.relay/mcp.json
      allowed_paths: [~/code, ~/notes]

    session:
      working_dir: ~/code/project
      file: ~/.relay/sessions.json
      history_capacity: 5

    streaming:
      throttle_seconds: 0.5
      text_min_length: 20
      context_window: 200000

    ask_bridge:
      dir: /tmp
      tool_prefix: mcp__ask-user
      initial_delay_seconds: 0.2
      retry_interval_seconds: 0.1
      attempts: 3

    retry:
      max_crash_retries: 1
      queue_size: 3
      kill_grace_seconds: 5

    logging:
      level: DEBUG
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

# section -> {yaml key: (EngineConfig field, converter)}
_SECTION_FIELDS: dict[str, dict[str, tuple[str, Any]]] = {
    "cli": {
        "path": ("cli_path", str),
        "model": ("model", str),
        "system_prompt": ("system_prompt", str),
        "mcp_config": ("mcp_config", "path"),
        "allowed_paths": ("allowed_paths", "paths"),
    },
    "session": {
        "working_dir": ("working_dir", "path"),
        "file": ("session_file", "path"),
        "history_capacity": ("history_capacity", int),
        "title_max_length": ("title_max_length", int),
    },
    "streaming": {
        "throttle_seconds": ("streaming_throttle_seconds", float),
        "text_min_length": ("text_min_length", int),
        "context_window": ("default_context_window", int),
    },
    "ask_bridge": {
        "dir": ("ask_dir", "path"),
        "tool_prefix": ("ask_tool_prefix", str),
        "initial_delay_seconds": ("ask_initial_delay_seconds", float),
        "retry_interval_seconds": ("ask_retry_interval_seconds", float),
        "attempts": ("ask_attempts", int),
    },
    "retry": {
        "max_crash_retries": ("max_crash_retries", int),
        "queue_size": ("queue_size", int),
        "kill_grace_seconds": ("kill_grace_seconds", float),
    },
    "logging": {
        "level": ("log_level", lambda v: str(v).upper()),
    },
}


def _expand(value: Any) -> str:
    return os.path.expandvars(os.path.expanduser(str(value)))


def _convert(converter: Any, value: Any) -> Any:
    if converter == "path":
        return _expand(value)
    if converter == "paths":
        if isinstance(value, str):
            value = [p for p in value.split(",") if p.strip()]
        return [_expand(p).strip() for p in value]
    return converter(value)


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Load a YAML file and overlay it on *base* (default: from env)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(
            f"{path}: top-level YAML document must be a mapping, "
            f"got {type(raw).__name__}"
        )

    config = base if base is not None else EngineConfig.from_env()
    overrides: dict[str, Any] = {}

    for section, values in raw.items():
        fields = _SECTION_FIELDS.get(section)
        if fields is None:
            logger.warning("load_yaml_config: unknown section '%s' ignored", section)
            continue
        if not isinstance(values, dict):
            logger.warning(
                "load_yaml_config: section '%s' is not a mapping, ignored",
                section,
            )
            continue
        for key, value in values.items():
            target = fields.get(key)
            if target is None:
                logger.warning(
                    "load_yaml_config: unknown key '%s.%s' ignored", section, key,
                )
                continue
            if value is None:
                continue
            field_name, converter = target
            overrides[field_name] = _convert(converter, value)

    # Allowed paths default to the working dir; follow a new working dir
    # unless the file lists its own.
    if "working_dir" in overrides and "allowed_paths" not in overrides:
        overrides["allowed_paths"] = [
            overrides["working_dir"]
            if p == config.working_dir else p
            for p in config.allowed_paths
        ]

    logger.info(
        "Parsed YAML config %s, overrides: %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(none)",
    )
    return dataclasses.replace(config, **overrides)
