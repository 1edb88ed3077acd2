"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CLAUDE_* and
RELAY_* env vars, or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import AskRequest, StatusKind

logger = logging.getLogger(__name__)


# Delivery sink for streaming updates.
# Signature: async def sink(kind, content, segment_id) -> None
StatusSink = Callable[["StatusKind", str, "int | None"], Awaitable[None]]

# Renders an ask-user request as an interactive choice.
# Signature: async def presenter(request) -> None
AskPresenter = Callable[["AskRequest"], Awaitable[None]]


async def fire_callback(
    callback: Callable[..., Awaitable[Any]] | None,
    *args: Any,
) -> bool:
    """Invoke an external callback, logging and swallowing its errors.

    Returns True if the callback ran without raising.
    """
    if callback is None:
        return False
    try:
        await callback(*args)
    except Exception:
        logger.warning("Callback %r failed", callback, exc_info=True)
        return False
    return True


def _default_allowed_paths(working_dir: str) -> list[str]:
    home = Path.home()
    return [
        working_dir,
        str(home / "Documents"),
        str(home / "Downloads"),
        str(home / "Desktop"),
        str(home / ".claude"),
    ]


def _split_paths(raw: str) -> list[str]:
    return [p.strip() for p in raw.split(",") if p.strip()]


@dataclass
class EngineConfig:
    """Session engine configuration."""

    # Agent CLI invocation
    cli_path: str = "claude"
    working_dir: str = field(default_factory=lambda: str(Path.home()))
    allowed_paths: list[str] = field(default_factory=list)
    model: str | None = None
    system_prompt: str | None = None
    mcp_config: str | None = None

    # Persistence and side channel
    session_file: str = field(
        default_factory=lambda: str(
            Path(tempfile.gettempdir()) / "claude-relay-session.json"
        )
    )
    history_capacity: int = 5
    ask_dir: str = field(default_factory=tempfile.gettempdir)
    ask_tool_prefix: str = "mcp__ask-user"
    ask_initial_delay_seconds: float = 0.2
    ask_retry_interval_seconds: float = 0.1
    ask_attempts: int = 3

    # Streaming delivery
    streaming_throttle_seconds: float = 0.5
    text_min_length: int = 20
    default_context_window: int = 200_000

    # Process supervision
    kill_grace_seconds: float = 5.0

    # Caller-level policy
    max_crash_retries: int = 1
    queue_size: int = 3
    title_max_length: int = 50

    # Logging
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.allowed_paths:
            self.allowed_paths = _default_allowed_paths(self.working_dir)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CLAUDE_* and RELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("RELAY_")
        }
        if relay_vars:
            logger.info(
                "EngineConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no RELAY_* env vars set, using defaults")

        working_dir = os.getenv("CLAUDE_WORKING_DIR") or str(Path.home())
        allowed_raw = os.getenv("ALLOWED_PATHS", "")
        defaults = cls(working_dir=working_dir)

        config = cls(
            cli_path=os.getenv("CLAUDE_CLI_PATH") or cls.cli_path,
            working_dir=working_dir,
            allowed_paths=(
                _split_paths(allowed_raw)
                if allowed_raw else _default_allowed_paths(working_dir)
            ),
            model=os.getenv("CLAUDE_MODEL") or None,
            system_prompt=os.getenv("CLAUDE_SYSTEM_PROMPT") or None,
            mcp_config=os.getenv("RELAY_MCP_CONFIG") or None,
            session_file=os.getenv("RELAY_SESSION_FILE") or defaults.session_file,
            ask_dir=os.getenv("RELAY_ASK_DIR") or defaults.ask_dir,
            streaming_throttle_seconds=float(os.getenv(
                "RELAY_STREAMING_THROTTLE", str(cls.streaming_throttle_seconds)
            )),
            kill_grace_seconds=float(os.getenv(
                "RELAY_KILL_GRACE", str(cls.kill_grace_seconds)
            )),
            max_crash_retries=int(os.getenv(
                "RELAY_MAX_CRASH_RETRIES", str(cls.max_crash_retries)
            )),
            log_level=os.getenv("RELAY_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: cli=%s cwd=%s model=%s log_level=%s",
            config.cli_path, config.working_dir,
            config.model or "<default>", config.log_level,
        )
        return config
