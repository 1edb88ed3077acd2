"""Terminal delivery sink built on rich.

thinking/tool/text updates drive a single transient status line;
each finished segment is printed once as markdown. ``done`` clears the
status line.
"""
from __future__ import annotations

import logging

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.status import Status
from rich.text import Text

from relay.engine.models import AskRequest, StatusKind

logger = logging.getLogger(__name__)

_STATUS_PREVIEW_CHARS = 80


def _last_line(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return ""
    line = lines[-1].strip()
    if len(line) > _STATUS_PREVIEW_CHARS:
        line = line[: _STATUS_PREVIEW_CHARS - 3] + "..."
    return line


class ConsoleSink:
    """StatusSink for one query attempt."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self._status: Status | None = None
        self.segments_printed = 0

    def _show(self, message: str) -> None:
        if self._status is None:
            self._status = self.console.status(message, spinner="dots")
            self._status.start()
        else:
            self._status.update(message)

    def _clear(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    async def __call__(
        self,
        kind: StatusKind,
        content: str,
        segment_id: int | None = None,
    ) -> None:
        if kind is StatusKind.THINKING:
            self._show(f"\U0001f9e0 [dim]{escape(_last_line(content))}[/dim]")
        elif kind is StatusKind.TOOL:
            self._show(escape(content))
        elif kind is StatusKind.TEXT:
            self._show(f"✍️  writing... ({len(content)} chars)")
        elif kind is StatusKind.SEGMENT_END:
            self._clear()
            self.console.print(Markdown(content))
            self.console.print()
            self.segments_printed += 1
        elif kind is StatusKind.DONE:
            self._clear()
        else:
            logger.debug("Unknown status kind %r", kind)


class ConsoleAskPresenter:
    """Prints an ask-user request and remembers it for the answer."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self.pending: AskRequest | None = None

    async def __call__(self, request: AskRequest) -> None:
        body = Text()
        for i, option in enumerate(request.options, start=1):
            body.append(f"  {i}. ", style="bold cyan")
            body.append(f"{option}\n")
        self.console.print(
            Panel(body, title=f"❓ {escape(request.question)}", title_align="left"),
        )
        self.console.print("[dim]Reply with the option number.[/dim]")
        self.pending = request
