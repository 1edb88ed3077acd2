"""Bounded history of resumable sessions.

The history file holds ``{"sessions": [...]}``, newest first, at most
``capacity`` entries. Every failure degrades to "no history" instead
of propagating: the engine must keep working without a writable disk.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path

from ..shared.services.durable_write import atomic_write_json
from .models import UNTITLED_SESSION, SavedSession, Session, _utcnow

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self, path: str | Path, capacity: int = 5) -> None:
        self.path = Path(path)
        self.capacity = capacity

    def load_history(self) -> list[SavedSession]:
        """Read the history; missing, empty or corrupt files give []."""
        try:
            if not self.path.exists() or self.path.stat().st_size == 0:
                return []
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable session history %s: %s", self.path, exc)
            return []

        raw = data.get("sessions") if isinstance(data, dict) else None
        if not isinstance(raw, list):
            return []
        sessions: list[SavedSession] = []
        for entry in raw:
            if not isinstance(entry, dict) or not entry.get("session_id"):
                continue
            sessions.append(SavedSession.from_dict(entry))
        return sessions

    def save(self, session: Session) -> None:
        """Upsert *session* by id (in place if present, else prepended)."""
        if not session.session_id:
            return
        try:
            history = self.load_history()
            entry = SavedSession(
                session_id=session.session_id,
                saved_at=_utcnow().isoformat(),
                working_dir=session.working_dir,
                title=session.conversation_title or UNTITLED_SESSION,
            )
            for i, existing in enumerate(history):
                if existing.session_id == entry.session_id:
                    history[i] = entry
                    break
            else:
                history.insert(0, entry)
            history = history[: self.capacity]
            atomic_write_json(
                self.path, {"sessions": [s.to_dict() for s in history]},
            )
            logger.info("Session saved to %s", self.path)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Failed to save session: %s", exc)

    def list(self, working_dir: str) -> list[SavedSession]:
        """Sessions with no recorded directory or matching *working_dir*."""
        return [
            s for s in self.load_history()
            if not s.working_dir or s.working_dir == working_dir
        ]

    def resume(self, session: Session, session_id: str) -> tuple[bool, str]:
        """Adopt a saved session into *session*. Returns (ok, message).

        Fails without touching *session* if the id is unknown, recorded
        for another directory, or *session* already has an identity.
        """
        if session.is_active:
            return False, "Session already active"

        saved = next(
            (s for s in self.load_history() if s.session_id == session_id),
            None,
        )
        if saved is None:
            return False, "Session not found"

        if saved.working_dir and saved.working_dir != session.working_dir:
            return False, f"Session is for a different directory: {saved.working_dir}"

        session.session_id = saved.session_id
        session.conversation_title = saved.title
        session.touch()
        logger.info(
            'Resumed session %s... - "%s"', saved.session_id[:8], saved.title,
        )
        return True, f'Resumed session: "{saved.title}"'

    def resume_last(self, session: Session) -> tuple[bool, str]:
        sessions = self.list(session.working_dir)
        if not sessions:
            return False, "No saved sessions"
        return self.resume(session, sessions[0].session_id)
