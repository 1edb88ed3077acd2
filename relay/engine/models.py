"""Core data models for the session engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

ERROR_TRUNCATE_CHARS = 100
UNTITLED_SESSION = "Untitled session"


class StatusKind(str, Enum):
    """Kinds of updates delivered to the sink."""
    THINKING = "thinking"
    TOOL = "tool"
    TEXT = "text"
    SEGMENT_END = "segment_end"
    DONE = "done"


class QueryPhase(str, Enum):
    """Query lifecycle phases. See lifecycle.py for transition rules."""
    IDLE = "idle"
    PROCESSING = "processing"
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    FAILED = "failed"


class QueryOutcome(str, Enum):
    """Non-error terminal outcomes of a query."""
    COMPLETED = "completed"
    STOPPED = "stopped"
    SUSPENDED = "suspended"
    CONTEXT_LIMIT = "context_limit"
    CANCELLED = "cancelled"


class StopCause(str, Enum):
    """Why a stop was requested."""
    USER = "user"
    INTERRUPT = "interrupt"


class StopResult(str, Enum):
    """What a stop request did."""
    STOPPED = "stopped"
    PENDING = "pending"
    NOTHING = "nothing"


class AskStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


@dataclass
class TokenUsage:
    """Token counters reported by the terminal result event."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenUsage:
        return cls(
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            cache_read_input_tokens=int(data.get("cache_read_input_tokens") or 0),
            cache_creation_input_tokens=int(
                data.get("cache_creation_input_tokens") or 0
            ),
        )

    @property
    def total(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_input_tokens
            + self.cache_creation_input_tokens
        )


@dataclass
class SavedSession:
    """Point-in-time snapshot of a resumable session."""
    session_id: str
    saved_at: str
    working_dir: str | None = None
    title: str = UNTITLED_SESSION

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SavedSession:
        return cls(
            session_id=str(data["session_id"]),
            saved_at=str(data.get("saved_at") or ""),
            working_dir=data.get("working_dir") or None,
            title=data.get("title") or UNTITLED_SESSION,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "saved_at": self.saved_at,
            "working_dir": self.working_dir,
            "title": self.title,
        }


@dataclass
class AskRequest:
    """Side-channel request written by the ask-user tool."""
    request_id: str
    chat_id: str
    question: str = "Please choose:"
    options: list[str] = field(default_factory=list)
    status: AskStatus = AskStatus.PENDING

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AskRequest:
        options = data.get("options") or []
        if not isinstance(options, list):
            raise ValueError("ask request options must be a list")
        return cls(
            request_id=str(data.get("request_id") or ""),
            chat_id=str(data.get("chat_id") or ""),
            question=data.get("question") or "Please choose:",
            options=[str(o) for o in options],
            status=AskStatus(data.get("status") or AskStatus.PENDING.value),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "chat_id": self.chat_id,
            "question": self.question,
            "options": list(self.options),
            "status": self.status.value,
        }


# ── Stream events (one per decoded stdout line, never persisted) ──


@dataclass
class ThinkingBlock:
    thinking: str = ""


@dataclass
class TextBlock:
    text: str = ""


@dataclass
class ToolUseBlock:
    id: str
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


MessageBlock = Union[ThinkingBlock, TextBlock, ToolUseBlock, None]


@dataclass
class SessionMeta:
    """Any event that only matters for the session id it carries."""
    session_id: str | None = None


@dataclass
class AssistantTurn:
    turn_id: str | None
    blocks: list[MessageBlock] = field(default_factory=list)
    session_id: str | None = None


@dataclass
class ResultEvent:
    result: str | None = None
    is_error: bool = False
    error: str | None = None
    usage: TokenUsage | None = None
    model_usage: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


StreamEvent = Union[SessionMeta, AssistantTurn, ResultEvent]


@dataclass
class QueryResult:
    """Terminal, non-error outcome of one query."""
    outcome: QueryOutcome
    text: str = ""


@dataclass
class Session:
    """Mutable conversation context owned by one engine.

    Identity fields (session_id, title, last_activity) are cleared by
    reset(); configuration such as working_dir survives it.
    """
    working_dir: str
    session_id: str | None = None
    conversation_title: str | None = None
    last_activity: datetime | None = None
    query_started: datetime | None = None
    current_tool: str | None = None
    last_tool: str | None = None
    last_error: str | None = None
    last_error_time: datetime | None = None
    last_usage: TokenUsage | None = None
    last_message: str | None = None
    context_percent: int | None = None

    @property
    def is_active(self) -> bool:
        return self.session_id is not None

    @property
    def short_id(self) -> str:
        return (self.session_id or "")[:8]

    def adopt_session_id(self, session_id: str) -> bool:
        """Set the identity if none is held yet. Returns True if adopted."""
        if self.session_id is not None or not session_id:
            return False
        self.session_id = session_id
        return True

    def reset(self) -> None:
        self.session_id = None
        self.last_activity = None
        self.conversation_title = None

    def set_working_dir(self, path: str) -> None:
        if not os.path.isdir(path):
            raise NotADirectoryError(f"Directory does not exist: {path}")
        self.working_dir = path

    def record_error(self, error: BaseException | str) -> None:
        self.last_error = truncate(str(error), ERROR_TRUNCATE_CHARS)
        self.last_error_time = _utcnow()

    def clear_error(self) -> None:
        self.last_error = None
        self.last_error_time = None

    def touch(self) -> None:
        self.last_activity = _utcnow()

    def status_snapshot(self, *, running: bool = False) -> dict[str, Any]:
        """Plain-dict view of the session for status displays."""
        now = _utcnow()
        snapshot: dict[str, Any] = {
            "active": self.is_active,
            "session_id": self.short_id or None,
            "title": self.conversation_title,
            "running": running,
            "working_dir": self.working_dir,
            "context_percent": (
                min(self.context_percent, 100)
                if self.context_percent is not None else None
            ),
        }
        if running:
            snapshot["elapsed_seconds"] = (
                int((now - self.query_started).total_seconds())
                if self.query_started else 0
            )
            snapshot["current_tool"] = self.current_tool
        snapshot["last_tool"] = self.last_tool
        if self.last_activity:
            snapshot["idle_seconds"] = int(
                (now - self.last_activity).total_seconds()
            )
        if self.last_usage:
            snapshot["usage"] = {
                "input_tokens": self.last_usage.input_tokens,
                "output_tokens": self.last_usage.output_tokens,
                "cache_read_input_tokens": self.last_usage.cache_read_input_tokens,
                "cache_creation_input_tokens": (
                    self.last_usage.cache_creation_input_tokens
                ),
            }
        if self.last_error:
            snapshot["last_error"] = self.last_error
            snapshot["last_error_age_seconds"] = (
                int((now - self.last_error_time).total_seconds())
                if self.last_error_time else None
            )
        return snapshot
