"""Stdio MCP server exposing the ask_user tool to the agent CLI.

The CLI runs this server as a child process. When the agent calls
``ask_user``, a pending ``ask-user-<request_id>.json`` file is written
to the ask directory; the engine's AskBridge picks it up, shows the
options to the user, and the user's choice comes back to the agent as
the next message. The tool itself returns immediately.

Usage:
    python -m relay.engine.mcp_server.ask_user_server
    python -m relay.engine.mcp_server.ask_user_server --write-config mcp.json

The chat id is read from RELAY_CHAT_ID, which the engine sets on the
CLI subprocess and the CLI passes on to its MCP servers.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
import tempfile
import uuid
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from ...shared.services.durable_write import atomic_write_json
from ..ask_bridge import request_filename
from ..models import AskRequest

logger = logging.getLogger(__name__)

SERVER_NAME = "ask-user"
CHAT_ID_ENV = "RELAY_CHAT_ID"
ASK_DIR_ENV = "RELAY_ASK_DIR"


def _ask_dir() -> Path:
    return Path(os.getenv(ASK_DIR_ENV) or tempfile.gettempdir())


def write_ask_request(
    question: str,
    options: list[str],
    *,
    chat_id: str,
    ask_dir: str | Path | None = None,
) -> AskRequest:
    """Write a pending request file and return the record."""
    if not options:
        raise ValueError("ask_user needs at least one option")
    request = AskRequest(
        request_id=uuid.uuid4().hex[:12],
        chat_id=str(chat_id),
        question=question or "Please choose:",
        options=[str(o) for o in options],
    )
    directory = Path(ask_dir) if ask_dir is not None else _ask_dir()
    atomic_write_json(directory / request_filename(request.request_id), request.to_dict())
    logger.info(
        "Wrote ask-user request %s for chat %s (%d options)",
        request.request_id, request.chat_id, len(request.options),
    )
    return request


def build_mcp_config(ask_dir: str | None = None) -> dict:
    """Config for the CLI's --mcp-config flag pointing at this server."""
    server: dict = {
        "command": sys.executable,
        "args": ["-m", "relay.engine.mcp_server.ask_user_server"],
    }
    if ask_dir:
        server["env"] = {ASK_DIR_ENV: ask_dir}
    return {"mcpServers": {SERVER_NAME: server}}


def write_mcp_config(path: str | Path, ask_dir: str | None = None) -> Path:
    path = Path(path)
    atomic_write_json(path, build_mcp_config(ask_dir))
    return path


mcp = FastMCP(
    name=SERVER_NAME,
    instructions=(
        "Use ask_user when you need the user to pick between a few "
        "concrete options. The options are shown as buttons; the "
        "user's choice arrives as their next message. After calling "
        "ask_user, end your turn and wait."
    ),
)


@mcp.tool(
    name="ask_user",
    description=(
        "Ask the user a multiple-choice question. Provide a short "
        "question and 2-6 short option labels. Returns immediately; "
        "the selected option arrives as the user's next message."
    ),
)
async def ask_user(question: str, options: list[str]) -> str:
    chat_id = os.getenv(CHAT_ID_ENV)
    if not chat_id:
        return "Error: no chat is attached to this session; ask in plain text instead."
    if not options:
        return "Error: provide at least one option."
    write_ask_request(question, options, chat_id=chat_id)
    return (
        "Question sent to the user. Their selection will arrive as the "
        "next message. Stop here and wait."
    )


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="relay-ask-user",
        description="ask_user MCP server for the agent CLI",
    )
    parser.add_argument(
        "--write-config",
        metavar="PATH",
        default=None,
        help="Write an --mcp-config file for this server and exit",
    )
    parser.add_argument(
        "--ask-dir",
        default=None,
        help=f"Directory for request files (default: ${ASK_DIR_ENV} or temp dir)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Entry point for the MCP server."""
    args = _parse_args(argv)
    if args.ask_dir:
        os.environ[ASK_DIR_ENV] = args.ask_dir

    if args.write_config:
        path = write_mcp_config(args.write_config, args.ask_dir)
        print(f"Wrote MCP config to {path}")
        return

    # stdout belongs to the MCP protocol; log to stderr only.
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger.info("Starting ask-user MCP server (pid=%s)", os.getpid())
    try:
        mcp.run(transport="stdio")
    except Exception:
        logger.exception("Fatal ask-user MCP server error (pid=%s)", os.getpid())
        raise


if __name__ == "__main__":
    main()
