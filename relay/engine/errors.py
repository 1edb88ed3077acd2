"""Exception hierarchy for the session engine.

Specific exceptions for each failure mode. Non-error outcomes
(stop, suspension, context limit) are returned as QueryResult
values instead of raised.
"""
from __future__ import annotations

STDERR_TAIL_CHARS = 200


class RelayError(Exception):
    """Base exception for all session engine errors."""


class CliNotFoundError(RelayError):
    """The agent CLI binary could not be found."""
    def __init__(self, command: str):
        self.command = command
        super().__init__(
            f"'{command}' CLI not found. Install it or set CLAUDE_CLI_PATH."
        )


class CliStartError(RelayError):
    """The agent CLI was found but the OS refused to start it."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Could not start '{command}': {reason}")


class WorkingDirectoryError(RelayError):
    """The session's working directory is missing or not a directory."""
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Working directory not found: {path}")


class QueryInProgressError(RelayError):
    """A second query was started while one is still running."""
    def __init__(self, session_id: str | None):
        self.session_id = session_id
        label = session_id[:8] if session_id else "<new>"
        super().__init__(f"A query is already running for session {label}")


class QueryFailedError(RelayError):
    """The CLI reported an error result for the query."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"CLI error: {message}")


class AgentCrashedError(RelayError):
    """The CLI exited non-zero without a stop or suspension in effect.

    This is the only failure class the retry policy treats as
    retryable.
    """
    def __init__(self, returncode: int, stderr: str):
        self.returncode = returncode
        self.stderr = stderr[:STDERR_TAIL_CHARS]
        super().__init__(
            f"exited with code {returncode}: {self.stderr}"
        )
