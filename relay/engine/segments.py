"""Segment emitter: drives the external delivery sink.

Response text is grouped into segments separated by tool calls. Text
updates are throttled per segment; ``segment_end`` always carries the
segment's full text. Sink failures are logged and ignored.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .config import StatusSink, fire_callback
from .models import StatusKind

logger = logging.getLogger(__name__)


class SegmentEmitter:
    """Ordered delivery of thinking/tool/text/segment_end/done updates."""

    def __init__(
        self,
        sink: StatusSink | None,
        *,
        throttle_seconds: float = 0.5,
        min_length: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._throttle = throttle_seconds
        self._min_length = min_length
        self._clock = clock

        self.segment_id = 0
        self.text = ""
        self._last_sent_at: float | None = None
        self._last_sent_text: str | None = None

    async def _deliver(
        self, kind: StatusKind, content: str, segment_id: int | None = None,
    ) -> None:
        await fire_callback(self._sink, kind, content, segment_id)

    async def thinking(self, text: str) -> None:
        await self._deliver(StatusKind.THINKING, text)

    async def tool(self, display: str) -> None:
        await self._deliver(StatusKind.TOOL, display)

    async def append_text(self, delta: str) -> None:
        """Add *delta* to the current segment; deliver if due."""
        self.text += delta
        if len(self.text) <= self._min_length:
            return
        if self.text == self._last_sent_text:
            return
        now = self._clock()
        if self._last_sent_at is not None and now - self._last_sent_at < self._throttle:
            return
        await self._deliver(StatusKind.TEXT, self.text, self.segment_id)
        self._last_sent_at = now
        self._last_sent_text = self.text

    async def close_segment(self) -> bool:
        """End the current segment if it holds text. Returns True if ended.

        An empty segment is left open so segment ids stay gapless.
        """
        if not self.text:
            return False
        await self._deliver(StatusKind.SEGMENT_END, self.text, self.segment_id)
        self.segment_id += 1
        self.text = ""
        self._last_sent_at = None
        self._last_sent_text = None
        return True

    async def done(self) -> None:
        await self._deliver(StatusKind.DONE, "")
