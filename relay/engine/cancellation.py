"""Cancellation controller for one session.

Coordinates stop requests across the three moments a query can be in:
claimed but not yet spawned (PROCESSING), live (RUNNING), or finished.
A stop during PROCESSING is recorded and honored before spawn; a stop
during RUNNING terminates the subprocess tree right away and the decode
loop notices the flag on its next line.

Two causes share the one stop flag. An explicit user stop should be
surfaced by the caller; an interrupt by a newer message should not.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager

from .errors import QueryInProgressError
from .lifecycle import validate_transition
from .models import QueryPhase, StopCause, StopResult

logger = logging.getLogger(__name__)

Terminator = Callable[[], Awaitable[None]]


class CancellationController:
    """Tracks the query phase and the pending stop request."""

    def __init__(self) -> None:
        self._phase = QueryPhase.IDLE
        self._stop_requested = False
        self._cause: StopCause | None = None
        self._last_cause: StopCause | None = None
        self._interrupted = False
        self._terminator: Terminator | None = None

    @property
    def phase(self) -> QueryPhase:
        return self._phase

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def cause(self) -> StopCause | None:
        """Cause of the pending stop, if any."""
        return self._cause

    @property
    def last_cause(self) -> StopCause | None:
        """Cause of the stop that ended the previous query, if any."""
        return self._last_cause

    @property
    def is_running(self) -> bool:
        return self._phase in (QueryPhase.PROCESSING, QueryPhase.RUNNING)

    def _transition(self, target: QueryPhase) -> None:
        validate_transition(self._phase, target)
        logger.debug("Query phase %s -> %s", self._phase.value, target.value)
        self._phase = target

    # ── Claiming ──

    def claim(self, session_id: str | None = None) -> None:
        """Enter PROCESSING. Raises QueryInProgressError if a query is live."""
        if self.is_running:
            raise QueryInProgressError(session_id)
        self._transition(QueryPhase.PROCESSING)

    def release(self) -> None:
        """Give up a claim that never reached RUNNING."""
        if self._phase is QueryPhase.PROCESSING:
            self._transition(QueryPhase.IDLE)
            self._stop_requested = False
            self._cause = None
            self._interrupted = False

    @contextmanager
    def processing(self, session_id: str | None = None) -> Iterator[CancellationController]:
        """Hold a claim while pre-query work (e.g. transcription) runs.

        If the query is started inside the block, the claim is handed to
        it; otherwise leaving the block releases the claim.
        """
        self.claim(session_id)
        try:
            yield self
        finally:
            self.release()

    def cancelled_before_start(self) -> bool:
        """Honor a stop requested while PROCESSING. Call right before spawn."""
        if self._phase is not QueryPhase.PROCESSING or not self._stop_requested:
            return False
        logger.info("Query cancelled before starting (stop requested during processing)")
        self._transition(QueryPhase.STOPPED)
        self._finish_stop()
        return True

    def mark_running(self, terminator: Terminator) -> None:
        """The subprocess is live; *terminator* kills its tree."""
        self._transition(QueryPhase.RUNNING)
        self._terminator = terminator

    # ── Stopping ──

    async def stop(self, cause: StopCause = StopCause.USER) -> StopResult:
        """Request a stop. Kills the subprocess tree if one is running."""
        if self._phase is QueryPhase.RUNNING:
            self._stop_requested = True
            self._cause = cause
            if cause is StopCause.INTERRUPT:
                self.mark_interrupt()
            logger.info("Stop requested (%s) - killing CLI process", cause.value)
            terminator = self._terminator
            if terminator is not None:
                await terminator()
            return StopResult.STOPPED

        if self._phase is QueryPhase.PROCESSING:
            self._stop_requested = True
            self._cause = cause
            if cause is StopCause.INTERRUPT:
                self.mark_interrupt()
            logger.info("Stop requested (%s) - will cancel before query starts", cause.value)
            return StopResult.PENDING

        return StopResult.NOTHING

    def mark_interrupt(self) -> None:
        """Flag the next stop as superseded by a new message."""
        self._interrupted = True

    def consume_interrupt_flag(self) -> bool:
        """Return and reset the interrupt flag.

        Also clears any pending stop so the superseding message can run.
        """
        was = self._interrupted
        self._interrupted = False
        if was:
            self._stop_requested = False
            self._cause = None
        return was

    def clear_stop_requested(self) -> None:
        self._stop_requested = False
        self._cause = None

    def finish(self, phase: QueryPhase) -> None:
        """Move a running query to its terminal *phase*."""
        self._transition(phase)
        self._terminator = None
        if phase is not QueryPhase.STOPPED:
            # An interrupt that did not end the query must not silence the next stop.
            self._interrupted = False
        self._finish_stop()

    def _finish_stop(self) -> None:
        self._last_cause = self._cause if self._stop_requested else None
        self._stop_requested = False
        self._cause = None
