"""Adapters package - delivery sinks that render engine updates."""
from __future__ import annotations

__all__ = [
    "ConsoleAskPresenter",
    "ConsoleSink",
]

from relay.adapters.console_sink import ConsoleAskPresenter, ConsoleSink
