"""One-line tool status formatting.

Turns a tool_use block (name + input dict) into the short status
shown while the agent works, e.g. ``📄 Read engine/models.py``.

Adding a new tool format requires only a single decorated function:

    @tool_formatter("MyTool")
    def _format_my_tool(name, args):
        return ToolStatus(icon="🔧", label=name, summary=...)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlparse


@dataclass
class ToolStatus:
    """Structured form of a tool status line."""

    icon: str = "\U0001f527"
    label: str = ""
    summary: str = ""

    @property
    def text(self) -> str:
        head = f"{self.icon} {self.label}".strip()
        return f"{head} {self.summary}".strip() if self.summary else head


_FORMATTERS: dict[str, Callable[[str, dict[str, Any]], ToolStatus]] = {}
_TOOL_NAME_ALIASES: dict[str, str] = {
    "read": "Read",
    "read_file": "Read",
    "write": "Write",
    "write_file": "Write",
    "edit": "Edit",
    "multiedit": "Edit",
    "bash": "Bash",
    "run_shell_command": "Bash",
    "glob": "Glob",
    "grep": "Grep",
    "askuserquestion": "ask_user",
}


def tool_formatter(name: str):
    """Decorator to register a formatter for a given tool name."""

    def decorator(fn: Callable[[str, dict[str, Any]], ToolStatus]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


def _normalize_tool_name(name: str) -> str:
    """Strip an MCP server prefix and map aliases to canonical names.

    E.g. ``mcp__ask-user__ask_user`` → ``ask_user`` and ``bash`` → ``Bash``.
    """
    if name.startswith("mcp__") and name.count("__") >= 2:
        name = name.split("__", 2)[2]
    return _TOOL_NAME_ALIASES.get(name.lower(), name)


def _basename(path: str) -> str:
    """Extract a short display path (last 2 components)."""
    if not path:
        return ""
    parts = path.replace("\\", "/").rstrip("/").split("/")
    return "/".join(parts[-2:]) if len(parts) >= 2 else parts[-1]


def _trunc(text: str, length: int = 60) -> str:
    if not text:
        return ""
    text = " ".join(str(text).split())
    if len(text) <= length:
        return text
    return text[: length - 3] + "..."


def format_tool_status(name: str, tool_input: dict[str, Any] | None) -> str:
    """Dispatch to a registered formatter or the default."""
    args = tool_input if isinstance(tool_input, dict) else {}
    formatter = _FORMATTERS.get(name)
    if formatter is None:
        formatter = _FORMATTERS.get(_normalize_tool_name(name), _format_default)
    return formatter(name, args).text


def _format_default(name: str, args: dict[str, Any]) -> ToolStatus:
    label = _normalize_tool_name(name)
    if name.startswith("mcp__") and name.count("__") >= 2:
        server = name.split("__", 2)[1]
        label = f"{server}: {label}"
    return ToolStatus(icon="\U0001f527", label=label)


@tool_formatter("Read")
def _format_read(name: str, args: dict[str, Any]) -> ToolStatus:
    file_path = args.get("file_path", "")
    return ToolStatus(
        icon="\U0001f4c4", label="Read", summary=_basename(file_path),
    )


@tool_formatter("Write")
def _format_write(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(
        icon="\U0001f4dd", label="Write",
        summary=_basename(args.get("file_path", "")),
    )


@tool_formatter("Edit")
def _format_edit(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(
        icon="✏️", label="Edit",
        summary=_basename(args.get("file_path", "")),
    )


@tool_formatter("Bash")
def _format_bash(name: str, args: dict[str, Any]) -> ToolStatus:
    command = args.get("description") or args.get("command", "")
    return ToolStatus(icon="▶️", label="Bash", summary=_trunc(command, 50))


@tool_formatter("Glob")
def _format_glob(name: str, args: dict[str, Any]) -> ToolStatus:
    pattern = args.get("pattern", "")
    path = args.get("path", "")
    summary = f"{pattern} in {_basename(path)}" if path else pattern
    return ToolStatus(icon="\U0001f50d", label="Glob", summary=summary)


@tool_formatter("Grep")
def _format_grep(name: str, args: dict[str, Any]) -> ToolStatus:
    pattern = args.get("pattern", "")
    scope = args.get("glob", "") or _basename(args.get("path", ""))
    summary = f'"{_trunc(pattern, 30)}"'
    if scope:
        summary += f" in {scope}"
    return ToolStatus(icon="\U0001f50e", label="Grep", summary=summary)


@tool_formatter("Task")
def _format_task(name: str, args: dict[str, Any]) -> ToolStatus:
    description = args.get("description", "") or args.get("prompt", "")
    return ToolStatus(icon="\U0001f500", label="Task", summary=_trunc(description, 50))


@tool_formatter("TodoWrite")
def _format_todo_write(name: str, args: dict[str, Any]) -> ToolStatus:
    todos = args.get("todos", [])
    items = [t for t in todos if isinstance(t, dict)] if isinstance(todos, list) else []
    done = sum(1 for t in items if t.get("status") == "completed")
    summary = f"{done}/{len(items)} done" if items else "empty"
    return ToolStatus(icon="☑", label="Todos", summary=summary)


@tool_formatter("WebFetch")
def _format_web_fetch(name: str, args: dict[str, Any]) -> ToolStatus:
    url = args.get("url", "")
    domain = urlparse(url).netloc if url else ""
    return ToolStatus(
        icon="\U0001f310", label="Fetch", summary=domain or _trunc(url, 40),
    )


@tool_formatter("WebSearch")
def _format_web_search(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(
        icon="\U0001f50d", label="Search",
        summary=_trunc(args.get("query", ""), 50),
    )


@tool_formatter("ask_user")
def _format_ask_user(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(
        icon="❓", label="Asking",
        summary=_trunc(args.get("question", ""), 50),
    )
