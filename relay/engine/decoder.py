"""Event stream decoder for the CLI's stream-json output.

Each stdout line is one JSON event. Assistant events repeat the full
cumulative content of the in-flight turn every time a partial message
arrives, so blocks are deduplicated by position (length already seen)
and tool_use blocks by id (seen at most once per query).
"""
from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Awaitable, Callable
from typing import Any

from ..shared.formatters.tool_status import format_tool_status
from .errors import QueryFailedError
from .models import (
    AssistantTurn,
    MessageBlock,
    ResultEvent,
    Session,
    SessionMeta,
    StreamEvent,
    TextBlock,
    ThinkingBlock,
    TokenUsage,
    ToolUseBlock,
)
from .segments import SegmentEmitter

logger = logging.getLogger(__name__)

# Free-text matching against the CLI's human-readable errors. Wording
# changes in the CLI will silently break detection.
PROMPT_TOO_LONG_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"input length and max_tokens exceed context limit", re.IGNORECASE),
    re.compile(r"exceed context limit", re.IGNORECASE),
    re.compile(r"context limit.*exceeded", re.IGNORECASE),
    re.compile(r"prompt.*too.*long", re.IGNORECASE),
    re.compile(r"conversation is too long", re.IGNORECASE),
)


def is_prompt_too_long(text: str | None) -> bool:
    if not text:
        return False
    return any(p.search(text) for p in PROMPT_TOO_LONG_PATTERNS)


# ── Parsing ──


def _parse_block(raw: Any) -> MessageBlock:
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type")
    if kind == "thinking" and isinstance(raw.get("thinking"), str):
        return ThinkingBlock(thinking=raw["thinking"])
    if kind == "text" and isinstance(raw.get("text"), str):
        return TextBlock(text=raw["text"])
    if kind == "tool_use" and raw.get("id"):
        tool_input = raw.get("input")
        return ToolUseBlock(
            id=str(raw["id"]),
            name=str(raw.get("name") or ""),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    # Unknown block types keep their position so indices stay aligned.
    return None


def parse_event(line: str | bytes) -> StreamEvent | None:
    """Decode one stdout line. Returns None for non-JSON noise."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON line: %s", line[:120])
        return None
    if not isinstance(data, dict):
        return None

    session_id = data.get("session_id") or None
    kind = data.get("type")

    if kind == "assistant":
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            return AssistantTurn(
                turn_id=message.get("id"),
                blocks=[_parse_block(b) for b in content],
                session_id=session_id,
            )

    if kind == "result":
        usage = data.get("usage")
        model_usage = data.get("modelUsage")
        return ResultEvent(
            result=data.get("result") or None,
            is_error=bool(data.get("is_error")) or data.get("subtype") == "error",
            error=data.get("error") or None,
            usage=TokenUsage.from_dict(usage) if isinstance(usage, dict) else None,
            model_usage=model_usage if isinstance(model_usage, dict) else {},
            session_id=session_id,
        )

    return SessionMeta(session_id=session_id)


def compute_context_percent(
    model_usage: dict[str, Any],
    default_window: int = 200_000,
) -> tuple[int, int, int] | None:
    """Context usage from the first per-model usage breakdown.

    Returns (percent, total_tokens, context_window), or None when no
    breakdown was reported. Rounds half up.
    """
    if not model_usage:
        return None
    first = next(iter(model_usage.values()))
    if not isinstance(first, dict):
        return None
    total = sum(
        int(first.get(key) or 0)
        for key in (
            "inputTokens",
            "outputTokens",
            "cacheReadInputTokens",
            "cacheCreationInputTokens",
        )
    )
    window = int(first.get("contextWindow") or default_window)
    percent = math.floor(total / window * 100 + 0.5)
    return percent, total, window


# ── Dedup ──


class BlockDedupTracker:
    """Turns cumulative block content into deltas.

    Per-position lengths are scoped to one assistant turn; tool ids are
    scoped to the whole query.
    """

    def __init__(self) -> None:
        self.turn_id: str | None = None
        self._lengths: dict[int, int] = {}
        self._tool_ids: set[str] = set()

    def begin_turn(self, turn_id: str | None) -> bool:
        """Start tracking *turn_id*. Returns True if it is a new turn."""
        if turn_id == self.turn_id:
            return False
        self.turn_id = turn_id
        self._lengths = {}
        return True

    def delta(self, index: int, text: str) -> str | None:
        """Suffix of *text* beyond what was seen at *index*, or None."""
        previous = self._lengths.get(index, 0)
        if len(text) <= previous:
            return None
        self._lengths[index] = len(text)
        return text[previous:]

    def first_sight(self, tool_id: str, index: int | None = None) -> bool:
        """True the first time *tool_id* is seen in this query."""
        if tool_id in self._tool_ids:
            return False
        self._tool_ids.add(tool_id)
        if index is not None:
            self._lengths[index] = 1
        return True


# ── Decoder ──


class QueryDecoder:
    """Applies decoded events of one query to the session and emitter.

    ``feed`` returns True when decoding must stop early because an
    ask-user request was surfaced (the query is suspended).
    """

    def __init__(
        self,
        session: Session,
        emitter: SegmentEmitter,
        *,
        on_session_id: Callable[[str], None] | None = None,
        ask_poll: Callable[[], Awaitable[bool]] | None = None,
        ask_tool_prefix: str = "mcp__ask-user",
        default_context_window: int = 200_000,
    ) -> None:
        self.session = session
        self.emitter = emitter
        self.tracker = BlockDedupTracker()
        self._on_session_id = on_session_id
        self._ask_poll = ask_poll
        self._ask_tool_prefix = ask_tool_prefix
        self._default_context_window = default_context_window

        self.response_parts: list[str] = []
        self.result_text: str | None = None
        self.got_result = False
        self.prompt_too_long = False
        self.suspended = False

    @property
    def response_text(self) -> str:
        """Result text if reported, else the streamed text."""
        return self.result_text or "".join(self.response_parts)

    async def feed(self, event: StreamEvent) -> bool:
        if event.session_id and self.session.adopt_session_id(event.session_id):
            logger.info("GOT session_id: %s...", event.session_id[:8])
            if self._on_session_id is not None:
                self._on_session_id(event.session_id)

        if isinstance(event, AssistantTurn):
            await self._on_assistant(event)
            return self.suspended
        if isinstance(event, ResultEvent):
            self._on_result(event)
        return False

    async def _on_assistant(self, turn: AssistantTurn) -> None:
        if self.tracker.begin_turn(turn.turn_id):
            logger.debug("New assistant turn %s", turn.turn_id)

        for index, block in enumerate(turn.blocks):
            if isinstance(block, ThinkingBlock):
                if block.thinking and self.tracker.delta(index, block.thinking) is not None:
                    logger.debug("THINKING: %s...", block.thinking[:100])
                    # The sink replaces its status with the full text.
                    await self.emitter.thinking(block.thinking)

            elif isinstance(block, TextBlock):
                delta = self.tracker.delta(index, block.text) if block.text else None
                if delta is not None:
                    self.response_parts.append(delta)
                    await self.emitter.append_text(delta)

            elif isinstance(block, ToolUseBlock):
                if self.tracker.first_sight(block.id, index):
                    await self._on_tool_use(block)

    async def _on_tool_use(self, block: ToolUseBlock) -> None:
        await self.emitter.close_segment()

        display = format_tool_status(block.name, block.input)
        self.session.current_tool = display
        self.session.last_tool = display
        logger.info("Tool: %s", display)

        if not block.name.startswith(self._ask_tool_prefix):
            await self.emitter.tool(display)
            return

        # Ask-user tools have no visible status; the choice prompt is enough.
        if self._ask_poll is not None and not self.suspended:
            if await self._ask_poll():
                logger.info("Ask-user request surfaced; suspending query")
                self.suspended = True

    def _on_result(self, event: ResultEvent) -> None:
        logger.info("Response complete")
        self.got_result = True
        self.result_text = event.result

        if event.usage is not None:
            self.session.last_usage = event.usage
            u = event.usage
            logger.info(
                "Usage: in=%d out=%d cache_read=%d cache_create=%d",
                u.input_tokens, u.output_tokens,
                u.cache_read_input_tokens, u.cache_creation_input_tokens,
            )

        context = compute_context_percent(
            event.model_usage, self._default_context_window,
        )
        if context is not None:
            percent, total, window = context
            self.session.context_percent = percent
            logger.info("Context: %d%% (%d/%d)", percent, total, window)

        if is_prompt_too_long(event.result):
            self.prompt_too_long = True

        if event.is_error:
            message = event.error or event.result or "Unknown CLI error"
            if is_prompt_too_long(message):
                self.prompt_too_long = True
            raise QueryFailedError(message)
