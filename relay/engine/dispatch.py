"""Caller-level message dispatch for one SessionEngine.

The engine runs one query at a time and knows nothing about queues,
retries or how notices reach the user. The dispatcher adds those:

- ``!`` prefix: interrupt the running query silently, then run this one.
- FIFO queue (bounded) for messages arriving while a query runs.
- Bounded retry on CLI crashes, with the session identity cleared.
- Ask-user answers: resolve the choice, then send it as a message.
- Conversation title taken from the first message of a session.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .config import AskPresenter, StatusSink, fire_callback
from .engine import SessionEngine
from .errors import AgentCrashedError, RelayError
from .models import QueryOutcome, QueryResult, StopCause, StopResult

logger = logging.getLogger(__name__)

INTERRUPT_PREFIX = "!"

# Plain user-facing notice. Signature: async def notify(text) -> None
NoticeSink = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Which failures are retried, how often, and with what pause."""

    max_retries: int = 1
    retry_on: tuple[type[BaseException], ...] = (AgentCrashedError,)
    backoff_seconds: float = 0.0

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        """*attempt* is zero-based: the attempt that just failed."""
        return attempt < self.max_retries and isinstance(exc, self.retry_on)


def make_title(message: str, max_length: int = 50) -> str:
    """Conversation title from a message, truncated with an ellipsis."""
    if len(message) <= max_length:
        return message
    return message[: max_length - 3] + "..."


class MessageDispatcher:
    """Serializes messages onto one SessionEngine."""

    def __init__(
        self,
        engine: SessionEngine,
        sink_factory: Callable[[], StatusSink | None],
        *,
        notify: NoticeSink | None = None,
        retry_policy: RetryPolicy | None = None,
        queue_size: int | None = None,
        chat_id: str | int | None = None,
        ask_presenter: AskPresenter | None = None,
    ) -> None:
        config = engine.config
        self.engine = engine
        self._sink_factory = sink_factory
        self._notify = notify
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=config.max_crash_retries,
        )
        self.queue_size = queue_size if queue_size is not None else config.queue_size
        self._title_max_length = config.title_max_length
        self.chat_id = chat_id
        self._ask_presenter = ask_presenter
        self._queue: deque[str] = deque()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def busy(self) -> bool:
        """True while a query runs or queued messages are being drained."""
        return not self._idle.is_set()

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def _tell(self, text: str) -> None:
        await fire_callback(self._notify, text)

    # ── Entry points ──

    async def submit(self, message: str) -> QueryResult | None:
        """Handle one incoming user message.

        Returns the result of the query run for *message*, or None if
        it was queued, rejected, empty, or failed.
        """
        if message.startswith(INTERRUPT_PREFIX):
            message = message[len(INTERRUPT_PREFIX):].strip()
            if not message:
                return None
            if self.busy:
                logger.info("Interrupting current query for new message")
                await self.engine.stop(StopCause.INTERRUPT)
                # Runs next, ahead of anything already queued.
                self._queue.appendleft(message)
                return None

        if not message.strip():
            return None

        if self.busy:
            if len(self._queue) >= self.queue_size:
                await self._tell("Queue full. Please wait for the current request to finish.")
                return None
            self._queue.append(message)
            await self._tell("Queued - will process after current request.")
            return None

        return await self._run_and_drain(message)

    async def retry(self) -> QueryResult | None:
        """Resubmit the last message when nothing is running."""
        if self.busy:
            await self._tell("A query is already running. Use /stop first.")
            return None
        last = self.engine.session.last_message
        if not last:
            await self._tell("Nothing to retry.")
            return None
        logger.info("Retrying last message")
        return await self._run_and_drain(last)

    async def answer_ask(self, request_id: str, option_index: int) -> QueryResult | None:
        """Deliver an ask-user choice as the next message."""
        try:
            selected = self.engine.ask_bridge.consume(request_id, option_index)
        except LookupError:
            # IndexError is a LookupError too.
            await self._tell("Request expired or invalid.")
            return None

        await self._tell(f"✓ {selected}")
        if self.busy:
            logger.info("Interrupting current query for ask-user answer")
            await self.engine.stop(StopCause.INTERRUPT)
            self._queue.appendleft(selected)
            return None
        return await self._run_and_drain(selected)

    async def stop(self) -> StopResult:
        """Explicit user stop; the stopped query reports it."""
        return await self.engine.stop(StopCause.USER)

    async def new_session(self) -> None:
        """Drop queued messages, stop any query, forget the session."""
        self._queue.clear()
        if self.busy:
            await self.engine.stop(StopCause.INTERRUPT)
            await self._idle.wait()
        self.engine.reset()

    # ── Running ──

    async def _run_and_drain(self, message: str) -> QueryResult | None:
        self._idle.clear()
        try:
            result = await self._process(message)
            while self._queue:
                await self._process(self._queue.popleft())
            return result
        finally:
            self._idle.set()

    async def _process(self, message: str) -> QueryResult | None:
        engine = self.engine
        session = engine.session
        session.last_message = message
        if not session.is_active:
            session.conversation_title = make_title(message, self._title_max_length)

        with engine.processing():
            attempt = 0
            while True:
                try:
                    result = await engine.send_message_streaming(
                        message,
                        self._sink_factory(),
                        chat_id=self.chat_id,
                        ask_presenter=self._ask_presenter,
                    )
                except RelayError as exc:
                    if self.retry_policy.should_retry(exc, attempt):
                        attempt += 1
                        logger.warning(
                            "CLI crashed, retrying (attempt %d/%d): %s",
                            attempt + 1, self.retry_policy.max_retries + 1, exc,
                        )
                        engine.reset()
                        await self._tell("⚠️ Claude crashed, retrying...")
                        if self.retry_policy.backoff_seconds:
                            await asyncio.sleep(self.retry_policy.backoff_seconds)
                        # The failed attempt released the claim; take it again.
                        engine.controller.claim(session.session_id)
                        continue
                    logger.error("Error processing message: %s", exc)
                    await self._tell(f"❌ Error: {str(exc)[:200]}")
                    return None
                break

        if result.outcome in (QueryOutcome.STOPPED, QueryOutcome.CANCELLED):
            if not engine.consume_interrupt_flag():
                await self._tell("🛑 Query stopped.")
        return result
