"""Claude Code CLI provider.

Runs `claude -p` in non-interactive mode with line-streaming JSON
output. Auth is whatever the installed CLI already uses.
"""
from __future__ import annotations

import logging
import shutil

from ..config import EngineConfig
from .base import Provider

logger = logging.getLogger(__name__)

# Set by the CLI for its own children; a spawned CLI that sees it
# refuses to start, believing it is a nested session.
_NESTED_SESSION_ENV = ("CLAUDECODE",)


class ClaudeProvider(Provider):
    """Provider backed by the Claude Code CLI.

    Flags come from static configuration: allowed filesystem roots,
    optional model, system-prompt append and MCP config. None of them
    are renegotiated mid-query.
    """

    def __init__(self, config: EngineConfig) -> None:
        self._config = config
        self._command = self.resolve_command(config.cli_path, "claude")

    @property
    def name(self) -> str:
        return "claude"

    @property
    def command(self) -> str:
        return self._command

    def build_query_cmd(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        env_overrides: dict[str, str] | None = None,
    ) -> tuple[list[str], dict[str, str], str]:
        cmd = [
            self._command,
            "-p",
            "--verbose",
            "--output-format",
            "stream-json",
            "--include-partial-messages",
            "--dangerously-skip-permissions",
        ]

        if self._config.allowed_paths:
            cmd.append("--add-dir")
            cmd.extend(self._config.allowed_paths)

        if session_id:
            cmd.extend(["--resume", session_id])

        if self._config.model:
            cmd.extend(["--model", self._config.model])

        if self._config.system_prompt:
            cmd.extend(["--append-system-prompt", self._config.system_prompt])

        if self._config.mcp_config:
            cmd.extend(["--mcp-config", self._config.mcp_config])

        env = self.build_env(strip=_NESTED_SESSION_ENV, overrides=env_overrides)
        return cmd, env, prompt

    def is_available(self) -> bool:
        """Check if claude CLI is installed."""
        return shutil.which(self._command) is not None
