"""Agent CLI command construction."""
from .base import Provider
from .claude_provider import ClaudeProvider

__all__ = [
    "Provider",
    "ClaudeProvider",
]
