"""Abstract base for agent CLI providers.

A provider knows how to turn one query (prompt + optional resume id)
into a subprocess invocation. Spawning, streaming and termination
belong to the ProcessSupervisor; decoding belongs to the decoder.
"""
from __future__ import annotations

import abc
import logging
import os
import shutil

logger = logging.getLogger(__name__)


class Provider(abc.ABC):
    """Abstract provider interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'claude')."""

    @abc.abstractmethod
    def build_query_cmd(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        env_overrides: dict[str, str] | None = None,
    ) -> tuple[list[str], dict[str, str], str]:
        """Build the CLI invocation for one query.

        Returns (command_list, env_dict, stdin_payload). The prompt is
        always delivered through stdin, never on the command line.
        """

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this provider's CLI is installed."""

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug(
                "Command %s not found; falling back to %s for provider %s",
                command, fallback, self.name,
            )
            return fallback
        return command or fallback or ""

    @staticmethod
    def build_env(
        strip: tuple[str, ...] = (),
        overrides: dict[str, str] | None = None,
    ) -> dict[str, str]:
        """Copy the current environment minus *strip*, plus *overrides*."""
        env = {k: v for k, v in os.environ.items() if k not in strip}
        if overrides:
            env.update(overrides)
        return env
