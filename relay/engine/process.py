"""Process supervisor for the agent CLI.

Spawns one CLI subprocess per query in its own session (so the whole
tree shares a process group), pipes the prompt through stdin, monitors
stderr in the background and terminates the tree on request.

Two termination backends exist behind TreeKiller:
- SignalGroupKiller: SIGTERM to the process group, SIGKILL after a
  grace window (POSIX).
- TaskkillKiller: ``taskkill /T /F`` on the whole tree (Windows).
Both treat "already exited" as success.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import signal
from collections.abc import Callable

from .errors import CliNotFoundError, CliStartError, WorkingDirectoryError
from .providers.base import Provider

logger = logging.getLogger(__name__)


async def read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from *stream* with no size limit.

    Unlike ``StreamReader.readline()``, this will never raise
    ``LimitOverrunError``. When the internal buffer fills before a
    newline is found, drain the buffered bytes and keep accumulating
    until the separator appears or EOF is reached. Assistant events
    carrying a large tool input easily exceed the default 64 KiB limit.

    Returns ``b""`` at EOF.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunk = await stream.readuntil(b"\n")
            chunks.append(chunk)
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            # Buffer full, no newline yet: take what is there and continue.
            chunk = await stream.read(exc.consumed)
            chunks.append(chunk)
        except asyncio.IncompleteReadError as exc:
            # EOF before newline.
            chunks.append(exc.partial)
            return b"".join(chunks)


# ── Tree termination backends ──


class TreeKiller(abc.ABC):
    """Terminates a subprocess together with everything it spawned."""

    @abc.abstractmethod
    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        """Kill the tree rooted at *proc*. Must tolerate an exited process."""


class SignalGroupKiller(TreeKiller):
    """SIGTERM the process group, then SIGKILL after the grace window."""

    def __init__(self, grace_seconds: float = 5.0) -> None:
        self.grace_seconds = grace_seconds

    @staticmethod
    def _signal_group(pid: int, sig: int) -> bool:
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError:
            logger.warning("Not permitted to signal process group %d", pid)
            return False
        return True

    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        # start_new_session=True makes the child a group leader, pgid == pid.
        if not self._signal_group(proc.pid, signal.SIGTERM):
            try:
                proc.terminate()
            except ProcessLookupError:
                return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "CLI pid=%d still alive after %.1fs; sending SIGKILL",
                proc.pid, self.grace_seconds,
            )
            if not self._signal_group(proc.pid, signal.SIGKILL):
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            await proc.wait()


class TaskkillKiller(TreeKiller):
    """Forceful whole-tree kill via ``taskkill /T /F``."""

    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            killer = await asyncio.create_subprocess_exec(
                "taskkill", "/pid", str(proc.pid), "/T", "/F",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            rc = await killer.wait()
        except OSError as exc:
            logger.warning("taskkill failed for pid=%d: %s", proc.pid, exc)
            rc = -1
        if rc != 0 and proc.returncode is None:
            # Already gone, or taskkill unavailable: fall back to the leader.
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()


def default_tree_killer(grace_seconds: float = 5.0) -> TreeKiller:
    if os.name == "nt":
        return TaskkillKiller()
    return SignalGroupKiller(grace_seconds)


# ── Stderr monitoring ──


class StderrMonitor:
    """Collects a subprocess's stderr in the background.

    Every line is logged as it arrives and checked against *detector*;
    a match sets ``flagged`` (used for the context-limit fast path).
    """

    def __init__(
        self,
        stream: asyncio.StreamReader | None,
        detector: Callable[[str], bool] | None = None,
    ) -> None:
        self._stream = stream
        self._detector = detector
        self._chunks: list[str] = []
        self.flagged = False
        self._task: asyncio.Task | None = None
        if stream is not None:
            self._task = asyncio.ensure_future(self._pump())

    async def _pump(self) -> None:
        assert self._stream is not None
        while True:
            line = await read_line_unbounded(self._stream)
            if not line:
                return
            text = line.decode("utf-8", errors="replace")
            self._chunks.append(text)
            if text.strip():
                logger.debug("CLI stderr: %s", text.rstrip())
            if self._detector is not None and not self.flagged and self._detector(text):
                logger.warning("CLI stderr reports context limit: %s", text.strip()[:200])
                self.flagged = True

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    async def drain(self, timeout: float = 1.0) -> None:
        """Wait briefly for the pump to reach EOF; cancel it otherwise."""
        if self._task is None or self._task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()


class ProcessHandle:
    """One running CLI subprocess plus its stderr monitor."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        stderr: StderrMonitor,
        killer: TreeKiller,
    ) -> None:
        self.process = process
        self.stderr = stderr
        self._killer = killer

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def stderr_text(self) -> str:
        return self.stderr.text

    @property
    def prompt_too_long(self) -> bool:
        return self.stderr.flagged

    async def read_line(self) -> bytes:
        if self.process.stdout is None:
            return b""
        return await read_line_unbounded(self.process.stdout)

    async def wait(self, timeout: float | None = None) -> int | None:
        """Wait for exit. Returns None if *timeout* elapsed first."""
        try:
            rc = await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        await self.stderr.drain()
        return rc

    async def terminate(self) -> None:
        await self._killer.terminate(self.process)
        await self.stderr.drain()


class ProcessSupervisor:
    """Starts and terminates agent CLI subprocesses."""

    def __init__(
        self,
        provider: Provider,
        *,
        killer: TreeKiller | None = None,
        kill_grace_seconds: float = 5.0,
        stderr_detector: Callable[[str], bool] | None = None,
    ) -> None:
        self._provider = provider
        self._killer = killer or default_tree_killer(kill_grace_seconds)
        self._stderr_detector = stderr_detector

    async def start(
        self,
        prompt: str,
        *,
        session_id: str | None,
        working_dir: str,
        env_overrides: dict[str, str] | None = None,
    ) -> ProcessHandle:
        cmd, env, stdin_payload = self._provider.build_query_cmd(
            prompt, session_id=session_id, env_overrides=env_overrides,
        )
        if session_id:
            logger.info("RESUMING session %s...", session_id[:8])
        else:
            logger.info("STARTING new %s CLI session", self._provider.name)

        # A missing cwd also surfaces as FileNotFoundError from exec.
        if not os.path.isdir(working_dir):
            raise WorkingDirectoryError(working_dir)

        # Array-based exec, no shell; prompt never touches argv.
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=working_dir,
                start_new_session=(os.name != "nt"),
            )
        except FileNotFoundError as exc:
            raise CliNotFoundError(cmd[0]) from exc
        except OSError as exc:
            raise CliStartError(cmd[0], exc.strerror or str(exc)) from exc

        logger.debug("Spawned CLI pid=%d cmd=%s", proc.pid, cmd[0])
        monitor = StderrMonitor(proc.stderr, self._stderr_detector)

        if proc.stdin is not None:
            try:
                proc.stdin.write(stdin_payload.encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.warning("CLI pid=%d closed stdin before the prompt was written", proc.pid)
            finally:
                proc.stdin.close()

        return ProcessHandle(proc, monitor, self._killer)

    async def terminate(self, handle: ProcessHandle) -> None:
        await handle.terminate()
