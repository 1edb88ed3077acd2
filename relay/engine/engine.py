"""Session engine.

Wires the cancellation controller, process supervisor, decoder,
segment emitter, ask-bridge and session store together for one
conversation. Single entry point for running queries.

Usage:
    engine = SessionEngine(EngineConfig.from_env())
    result = await engine.send_message_streaming("Fix the tests", sink)
    if result.outcome is QueryOutcome.SUSPENDED:
        ...  # wait for the user's choice, then send it as a message
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from .ask_bridge import AskBridge
from .cancellation import CancellationController
from .config import AskPresenter, EngineConfig, StatusSink
from .decoder import QueryDecoder, is_prompt_too_long, parse_event
from .errors import AgentCrashedError, QueryFailedError
from .models import (
    QueryOutcome,
    QueryPhase,
    QueryResult,
    SavedSession,
    Session,
    StopCause,
    StopResult,
    _utcnow,
)
from .process import ProcessHandle, ProcessSupervisor
from .providers.claude_provider import ClaudeProvider
from .segments import SegmentEmitter
from .session_store import SessionStore

logger = logging.getLogger(__name__)

CONTEXT_LIMIT_MESSAGE = (
    "⚠️ Context limit reached — session auto-cleared. "
    "Send a new message to start fresh."
)
ASK_WAITING_MESSAGE = "[Waiting for user selection]"
NO_RESPONSE_MESSAGE = "No response from Claude."
CHAT_ID_ENV = "RELAY_CHAT_ID"
ASK_DIR_ENV = "RELAY_ASK_DIR"


def date_preamble(now: datetime | None = None) -> str:
    """Prefix for the first prompt of a new session."""
    now = now or datetime.now().astimezone()
    stamp = f"{now:%A}, {now:%B} {now.day}, {now.year} at {now:%I:%M %p}"
    tz = now.strftime("%Z")
    if tz:
        stamp = f"{stamp} {tz}"
    return f"[Current date/time: {stamp}]\n\n"


class SessionEngine:
    """Runs queries against one Session, one at a time."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        session: Session | None = None,
        supervisor: ProcessSupervisor | None = None,
        store: SessionStore | None = None,
        ask_bridge: AskBridge | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        cfg = self._config
        self.session = session or Session(working_dir=cfg.working_dir)
        self.controller = CancellationController()
        self._supervisor = supervisor or ProcessSupervisor(
            ClaudeProvider(cfg),
            kill_grace_seconds=cfg.kill_grace_seconds,
            stderr_detector=is_prompt_too_long,
        )
        self.store = store or SessionStore(cfg.session_file, cfg.history_capacity)
        self.ask_bridge = ask_bridge or AskBridge(
            cfg.ask_dir,
            initial_delay_seconds=cfg.ask_initial_delay_seconds,
            retry_interval_seconds=cfg.ask_retry_interval_seconds,
            attempts=cfg.ask_attempts,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self.controller.is_running

    @contextmanager
    def processing(self) -> Iterator[CancellationController]:
        """Claim the session for pre-query work; see CancellationController."""
        with self.controller.processing(self.session.session_id) as controller:
            yield controller

    # ── Querying ──

    async def send_message_streaming(
        self,
        message: str,
        sink: StatusSink | None,
        *,
        chat_id: str | int | None = None,
        ask_presenter: AskPresenter | None = None,
    ) -> QueryResult:
        """Run one query, streaming updates to *sink*.

        Returns a QueryResult for every non-error outcome. Raises
        QueryFailedError for an error result, AgentCrashedError for a
        non-zero exit and CliNotFoundError, CliStartError or
        WorkingDirectoryError if the CLI cannot be spawned.
        """
        claimed_here = self.controller.phase is not QueryPhase.PROCESSING
        if claimed_here:
            self.controller.claim(self.session.session_id)
        try:
            return await self._run_query(message, sink, chat_id, ask_presenter)
        finally:
            if claimed_here:
                self.controller.release()

    async def _run_query(
        self,
        message: str,
        sink: StatusSink | None,
        chat_id: str | int | None,
        ask_presenter: AskPresenter | None,
    ) -> QueryResult:
        cfg = self._config
        session = self.session
        prompt = message if session.is_active else date_preamble() + message

        if self.controller.cancelled_before_start():
            return QueryResult(QueryOutcome.CANCELLED)

        # The ask_user tool server inherits these through the CLI.
        env_overrides = {ASK_DIR_ENV: str(cfg.ask_dir)}
        if chat_id is not None:
            env_overrides[CHAT_ID_ENV] = str(chat_id)
        try:
            handle = await self._supervisor.start(
                prompt,
                session_id=session.session_id,
                working_dir=session.working_dir,
                env_overrides=env_overrides,
            )
        except Exception as exc:
            logger.error("Failed to start CLI: %s", exc)
            session.record_error(exc)
            self.controller.finish(QueryPhase.FAILED)
            raise

        self.controller.mark_running(handle.terminate)
        session.query_started = _utcnow()
        session.current_tool = None

        emitter = SegmentEmitter(
            sink,
            throttle_seconds=cfg.streaming_throttle_seconds,
            min_length=cfg.text_min_length,
        )
        ask_poll = None
        if chat_id is not None and ask_presenter is not None:
            async def ask_poll() -> bool:
                return await self.ask_bridge.wait_for_request(str(chat_id), ask_presenter)

        decoder = QueryDecoder(
            session,
            emitter,
            on_session_id=lambda _sid: self.store.save(session),
            ask_poll=ask_poll,
            ask_tool_prefix=cfg.ask_tool_prefix,
            default_context_window=cfg.default_context_window,
        )

        try:
            return await self._drive(handle, decoder, emitter)
        finally:
            if handle.returncode is None:
                await handle.terminate()
            if self.controller.phase is QueryPhase.RUNNING:
                # Left by an exception from outside the decode path.
                self.controller.finish(QueryPhase.FAILED)
            session.query_started = None
            session.current_tool = None

    async def _drive(
        self,
        handle: ProcessHandle,
        decoder: QueryDecoder,
        emitter: SegmentEmitter,
    ) -> QueryResult:
        session = self.session
        stopped = False
        try:
            await self._decode(handle, decoder)
            stopped = self.controller.stop_requested
            if stopped or decoder.suspended:
                # The CLI is abandoned mid-stream; give it the grace window.
                returncode = await handle.wait(timeout=self._config.kill_grace_seconds)
                if returncode is None:
                    await handle.terminate()
            else:
                returncode = await handle.wait()
                if returncode and not self.controller.stop_requested:
                    raise AgentCrashedError(returncode, handle.stderr_text)
                stopped = self.controller.stop_requested
        except (QueryFailedError, AgentCrashedError) as exc:
            if decoder.prompt_too_long or handle.prompt_too_long:
                logger.warning("CLI error matches context limit: %s", exc)
            elif self.controller.stop_requested or decoder.suspended:
                logger.warning("Suppressed post-stop error: %s", exc)
                stopped = self.controller.stop_requested
            else:
                logger.error("Error in CLI query: %s", exc)
                session.record_error(exc)
                self.controller.finish(QueryPhase.FAILED)
                await emitter.done()
                raise

        session.touch()
        session.clear_error()

        if decoder.prompt_too_long or handle.prompt_too_long:
            logger.info("Prompt too long detected - auto-clearing session")
            session.reset()
            self.controller.finish(QueryPhase.COMPLETED)
            await emitter.done()
            return QueryResult(QueryOutcome.CONTEXT_LIMIT, CONTEXT_LIMIT_MESSAGE)

        if decoder.suspended:
            self.controller.finish(QueryPhase.SUSPENDED)
            await emitter.done()
            return QueryResult(QueryOutcome.SUSPENDED, ASK_WAITING_MESSAGE)

        await emitter.close_segment()
        await emitter.done()

        if stopped:
            cause = self.controller.cause
            self.controller.finish(QueryPhase.STOPPED)
            logger.info(
                "Query stopped (%s)", cause.value if cause else StopCause.USER.value,
            )
            return QueryResult(QueryOutcome.STOPPED, decoder.response_text)

        self.controller.finish(QueryPhase.COMPLETED)
        return QueryResult(
            QueryOutcome.COMPLETED, decoder.response_text or NO_RESPONSE_MESSAGE,
        )

    async def _decode(self, handle: ProcessHandle, decoder: QueryDecoder) -> None:
        while True:
            line = await handle.read_line()
            if not line:
                return
            if self.controller.stop_requested:
                logger.info("Query aborted by user")
                return
            event = parse_event(line)
            if event is None:
                continue
            if await decoder.feed(event):
                return

    # ── Control ──

    async def stop(self, cause: StopCause = StopCause.USER) -> StopResult:
        return await self.controller.stop(cause)

    def mark_interrupt(self) -> None:
        self.controller.mark_interrupt()

    def consume_interrupt_flag(self) -> bool:
        return self.controller.consume_interrupt_flag()

    def clear_stop_requested(self) -> None:
        self.controller.clear_stop_requested()

    def reset(self) -> None:
        """Forget the session identity; the next message starts fresh."""
        self.session.reset()
        logger.info("Session cleared")

    def set_working_dir(self, path: str) -> None:
        self.session.set_working_dir(path)
        logger.info("Working directory changed to: %s", path)

    # ── History ──

    def list_sessions(self) -> list[SavedSession]:
        return self.store.list(self.session.working_dir)

    def resume(self, session_id: str) -> tuple[bool, str]:
        return self.store.resume(self.session, session_id)

    def resume_last(self) -> tuple[bool, str]:
        return self.store.resume_last(self.session)

    def status_snapshot(self) -> dict:
        return self.session.status_snapshot(running=self.is_running)
