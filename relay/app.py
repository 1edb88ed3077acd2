"""relay CLI: interactive terminal chat on top of the session engine."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from relay.adapters.console_sink import ConsoleAskPresenter, ConsoleSink
from relay.engine.config import EngineConfig
from relay.engine.dispatch import MessageDispatcher
from relay.engine.engine import SessionEngine
from relay.engine.models import QueryOutcome, QueryResult, StopResult

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
HELP_TEXT = (
    "/new  start fresh   /stop  stop query   /status  session info\n"
    "/sessions  saved sessions   /resume [ID|N]  resume   /retry  resend last\n"
    "/cd [DIR]  show or switch working directory (starts fresh)\n"
    "/quit  exit   Ctrl+C stops a running query; prefix ! to interrupt it"
)


def setup_logging(level: str = "INFO", verbose: bool = False) -> Path:
    """Rotating file log under ~/.relay/logs, plus stderr when verbose."""
    log_dir = Path.home() / ".relay" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "relay.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def context_bar(percent: int | None) -> str | None:
    if percent is None:
        return None
    clamped = min(percent, 100)
    filled = min(round(clamped / 10), 10)
    return "█" * filled + "░" * (10 - filled) + f" {clamped}%"


def with_working_dir(config: EngineConfig, working_dir: str) -> EngineConfig:
    """Copy of *config* rooted at *working_dir*; allowed paths follow."""
    paths = [working_dir if p == config.working_dir else p for p in config.allowed_paths]
    if working_dir not in paths:
        paths.insert(0, working_dir)
    return replace(config, working_dir=working_dir, allowed_paths=paths)


class ChatApp:
    """Line-oriented chat loop. Each message runs as a background task."""

    def __init__(self, engine: SessionEngine, console: Console | None = None) -> None:
        self.console = console or Console()
        self.engine = engine
        self.presenter = ConsoleAskPresenter(self.console)
        self.last_sink: ConsoleSink | None = None
        self.dispatcher = MessageDispatcher(
            engine,
            self._new_sink,
            notify=self._notify,
            chat_id=f"console-{os.getpid()}",
            ask_presenter=self.presenter,
        )
        self._tasks: set[asyncio.Task] = set()

    def _new_sink(self) -> ConsoleSink:
        self.last_sink = ConsoleSink(self.console)
        return self.last_sink

    async def _notify(self, text: str) -> None:
        self.console.print(f"[yellow]{escape(text)}[/yellow]")

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(self._report(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _report(self, coro) -> None:
        try:
            result: QueryResult | None = await coro
        except Exception:
            logger.exception("Unhandled error while processing message")
            self.console.print("[red]Something went wrong. Try again or /new for a fresh session.[/red]")
            return
        if result is None:
            return
        if result.outcome is QueryOutcome.CONTEXT_LIMIT:
            self.console.print(f"[yellow]{escape(result.text)}[/yellow]")
        elif result.outcome is QueryOutcome.COMPLETED:
            if self.last_sink is not None and not self.last_sink.segments_printed:
                self.console.print(Markdown(result.text))
            bar = context_bar(self.engine.session.context_percent)
            if bar:
                self.console.print(f"[dim]{bar}[/dim]")

    def interrupt(self) -> None:
        """Ctrl+C: stop a running query."""
        if self.dispatcher.busy:
            self._spawn(self._stop())
        else:
            self.console.print("[dim]Nothing running. /quit to exit.[/dim]")

    async def _stop(self) -> None:
        result = await self.dispatcher.stop()
        if result is StopResult.NOTHING:
            self.console.print("Nothing running.")
        return None

    # ── Commands ──

    def _print_status(self) -> None:
        snapshot = self.engine.status_snapshot()
        table = Table(show_header=False, box=None)
        for key, value in snapshot.items():
            if isinstance(value, dict):
                value = ", ".join(f"{k}={v}" for k, v in value.items())
            table.add_row(f"[bold]{key}[/bold]", escape(str(value)))
        self.console.print(table)

    def _print_sessions(self) -> None:
        sessions = self.engine.list_sessions()
        if not sessions:
            self.console.print("No saved sessions.")
            return
        table = Table("#", "id", "title", "saved")
        for i, saved in enumerate(sessions, start=1):
            table.add_row(
                str(i), saved.session_id[:8], escape(saved.title), saved.saved_at[:16],
            )
        self.console.print(table)

    def _resume(self, arg: str) -> None:
        if self.dispatcher.busy:
            self.console.print("A query is running. /stop first.")
            return
        if not arg:
            ok, message = self.engine.resume_last()
        else:
            session_id = arg
            sessions = self.engine.list_sessions()
            if arg.isdigit() and 1 <= int(arg) <= len(sessions):
                session_id = sessions[int(arg) - 1].session_id
            else:
                matches = [s.session_id for s in sessions if s.session_id.startswith(arg)]
                if len(matches) == 1:
                    session_id = matches[0]
            ok, message = self.engine.resume(session_id)
        style = "green" if ok else "red"
        self.console.print(f"[{style}]{escape(message)}[/{style}]")

    async def _change_dir(self, arg: str) -> None:
        if not arg:
            self.console.print(f"\U0001f4c2 {escape(self.engine.session.working_dir)}")
            return
        path = os.path.abspath(os.path.expanduser(arg))
        if not os.path.isdir(path):
            self.console.print(f"[red]Directory does not exist: {escape(path)}[/red]")
            return
        # Sessions are tied to the directory they ran in.
        await self.dispatcher.new_session()
        self.presenter.pending = None
        self.engine.set_working_dir(path)
        self.console.print(f"\U0001f4c2 Switched to {escape(path)}. Next message starts fresh.")

    async def handle_line(self, line: str) -> bool:
        """Process one input line. Returns False to quit."""
        line = line.strip()
        if not line:
            return True

        pending = self.presenter.pending
        if pending is not None and line.isdigit():
            self.presenter.pending = None
            self._spawn(self.dispatcher.answer_ask(pending.request_id, int(line) - 1))
            return True

        if not line.startswith("/"):
            self._spawn(self.dispatcher.submit(line))
            return True

        command, _, arg = line.partition(" ")
        arg = arg.strip()
        if command in ("/quit", "/exit"):
            return False
        if command == "/new":
            await self.dispatcher.new_session()
            self.presenter.pending = None
            self.console.print("\U0001f195 Session cleared. Next message starts fresh.")
        elif command == "/stop":
            await self._stop()
        elif command == "/status":
            self._print_status()
        elif command == "/sessions":
            self._print_sessions()
        elif command == "/resume":
            self._resume(arg)
        elif command == "/cd":
            await self._change_dir(arg)
        elif command == "/retry":
            self._spawn(self.dispatcher.retry())
        elif command == "/help":
            self.console.print(HELP_TEXT)
        else:
            self.console.print(f"Unknown command {escape(command)}. /help for commands.")
        return True

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.interrupt)
        except (NotImplementedError, RuntimeError):
            # No loop signal handlers on Windows; Ctrl+C ends the app there.
            pass

        self.console.print(f"[bold]relay[/bold] in {escape(self.engine.session.working_dir)}")
        self.console.print(f"[dim]{HELP_TEXT}[/dim]")
        try:
            while True:
                try:
                    line = await asyncio.to_thread(self.console.input, "[bold cyan]> [/bold cyan]")
                except EOFError:
                    break
                if not await self.handle_line(line):
                    break
        finally:
            if self.dispatcher.busy:
                await self.dispatcher.stop()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="relay",
        description="Chat with an agent CLI from the terminal",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (also read from RELAY_CONFIG_FILE)",
    )
    parser.add_argument(
        "--cwd", metavar="DIR",
        help="Working directory for the agent (default: CLAUDE_WORKING_DIR or home)",
    )
    parser.add_argument(
        "--model", metavar="MODEL",
        help="Model override passed to the CLI",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging to stderr",
    )
    args = parser.parse_args()

    log_file = setup_logging(os.getenv("RELAY_LOG_LEVEL", "INFO"), args.verbose)
    config = EngineConfig.from_env()

    config_path = args.config or os.getenv("RELAY_CONFIG_FILE")
    if config_path:
        from relay.engine.yaml_config import load_yaml_config

        try:
            config = load_yaml_config(config_path, config)
        except (OSError, ValueError) as exc:
            parser.error(f"cannot load config {config_path}: {exc}")
        if not args.verbose:
            logging.getLogger().setLevel(
                getattr(logging, config.log_level.upper(), logging.INFO)
            )

    if args.cwd:
        cwd = os.path.abspath(os.path.expanduser(args.cwd))
        if not os.path.isdir(cwd):
            parser.error(f"directory does not exist: {cwd}")
        config = with_working_dir(config, cwd)
    if args.model:
        config = replace(config, model=args.model)

    logger.info(
        "Starting relay cwd=%s config=%s log=%s",
        config.working_dir, config_path or "<none>", log_file,
    )
    app = ChatApp(SessionEngine(config))
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
