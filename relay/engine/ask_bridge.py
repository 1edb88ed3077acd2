"""Ask-user side channel over a shared directory.

The ask-user tool running inside the CLI writes one
``ask-user-<request_id>.json`` file per question. The engine polls
for files addressed to its chat, hands each to a presenter and marks
it ``sent``. The file is deleted only when the answer is consumed.

Record lifecycle: pending -> sent -> (deleted). The writer and the
poller share no lock; a file vanishing or being half-written while we
read it is expected and simply skipped.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from ..shared.services.durable_write import atomic_write_json
from .config import AskPresenter, fire_callback
from .models import AskRequest, AskStatus

logger = logging.getLogger(__name__)

ASK_FILE_PREFIX = "ask-user-"
ASK_FILE_SUFFIX = ".json"


def request_filename(request_id: str) -> str:
    return f"{ASK_FILE_PREFIX}{request_id}{ASK_FILE_SUFFIX}"


class AskBridge:
    """Polls, presents and consumes ask-user request files."""

    def __init__(
        self,
        ask_dir: str | Path,
        *,
        initial_delay_seconds: float = 0.2,
        retry_interval_seconds: float = 0.1,
        attempts: int = 3,
    ) -> None:
        self.ask_dir = Path(ask_dir)
        self.initial_delay_seconds = initial_delay_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self.attempts = attempts

    def request_path(self, request_id: str) -> Path:
        return self.ask_dir / request_filename(request_id)

    def scan(self) -> list[Path]:
        try:
            return sorted(self.ask_dir.glob(f"{ASK_FILE_PREFIX}*{ASK_FILE_SUFFIX}"))
        except OSError as exc:
            logger.warning("Cannot scan ask directory %s: %s", self.ask_dir, exc)
            return []

    def load(self, path: Path) -> AskRequest | None:
        """Read a request file. Returns None if missing or malformed."""
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read ask-user file %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            return None
        try:
            return AskRequest.from_dict(data)
        except ValueError as exc:
            logger.warning("Invalid ask-user file %s: %s", path, exc)
            return None

    def mark_sent(self, path: Path, request: AskRequest) -> None:
        request.status = AskStatus.SENT
        atomic_write_json(path, request.to_dict(), indent=None)

    async def poll_pending(
        self,
        chat_id: str,
        presenter: AskPresenter | None,
    ) -> bool:
        """Present every pending request for *chat_id*. True if any was."""
        presented = False
        for path in self.scan():
            request = self.load(path)
            if request is None:
                continue
            if request.status is not AskStatus.PENDING:
                continue
            if request.chat_id != str(chat_id):
                continue
            if not request.options or not request.request_id:
                continue

            if not await fire_callback(presenter, request):
                continue
            presented = True
            try:
                self.mark_sent(path, request)
            except OSError as exc:
                logger.warning("Failed to mark ask-user file %s as sent: %s", path, exc)
            logger.info(
                "Presented ask-user request %s (%d options)",
                request.request_id[:8], len(request.options),
            )
        return presented

    async def wait_for_request(
        self,
        chat_id: str,
        presenter: AskPresenter | None,
    ) -> bool:
        """Poll with a short delay and bounded retries.

        The tool writes its file concurrently with the stream event
        that announced it, so the first look may come too early.
        """
        await asyncio.sleep(self.initial_delay_seconds)
        for attempt in range(self.attempts):
            if await self.poll_pending(chat_id, presenter):
                return True
            if attempt < self.attempts - 1:
                await asyncio.sleep(self.retry_interval_seconds)
        logger.debug("No ask-user request appeared for chat %s", chat_id)
        return False

    def consume(self, request_id: str, option_index: int) -> str:
        """Resolve the user's choice and delete the request file.

        Raises LookupError if the request is gone or unreadable and
        IndexError for an out-of-range option.
        """
        path = self.request_path(request_id)
        request = self.load(path)
        if request is None:
            raise LookupError(f"Request expired or invalid: {request_id}")
        if not 0 <= option_index < len(request.options):
            raise IndexError(f"Invalid option {option_index} for request {request_id}")
        selected = request.options[option_index]
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.debug("Failed to delete ask-user file %s: %s", path, exc)
        logger.info("Consumed ask-user request %s: %s", request_id[:8], selected[:50])
        return selected
