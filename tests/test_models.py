"""Tests for Session state and persisted record shapes."""

from datetime import timedelta

import pytest

from relay.engine.models import (
    AskRequest,
    AskStatus,
    SavedSession,
    Session,
    TokenUsage,
    _utcnow,
)


class TestSession:
    def test_adopt_only_once(self):
        session = Session(working_dir="/w")
        assert session.adopt_session_id("first")
        assert not session.adopt_session_id("second")
        assert session.session_id == "first"
        assert session.short_id == "first"

    def test_reset_keeps_working_dir(self):
        session = Session(working_dir="/w")
        session.session_id = "abc"
        session.conversation_title = "t"
        session.touch()
        session.reset()
        assert session.session_id is None
        assert session.conversation_title is None
        assert session.last_activity is None
        assert session.working_dir == "/w"

    def test_set_working_dir_validates(self, tmp_path):
        session = Session(working_dir="/w")
        session.set_working_dir(str(tmp_path))
        assert session.working_dir == str(tmp_path)
        with pytest.raises(NotADirectoryError):
            session.set_working_dir(str(tmp_path / "missing"))
        assert session.working_dir == str(tmp_path)

    def test_record_error_truncates(self):
        session = Session(working_dir="/w")
        session.record_error(RuntimeError("e" * 300))
        assert len(session.last_error) == 100
        assert session.last_error_time is not None
        session.clear_error()
        assert session.last_error is None


class TestStatusSnapshot:
    def test_idle(self):
        snapshot = Session(working_dir="/w").status_snapshot()
        assert snapshot["active"] is False
        assert snapshot["session_id"] is None
        assert "elapsed_seconds" not in snapshot
        assert "usage" not in snapshot

    def test_running_with_usage_and_error(self):
        session = Session(working_dir="/w")
        session.session_id = "0123456789abcdef"
        session.query_started = _utcnow() - timedelta(seconds=12)
        session.current_tool = "▶️ Bash ls"
        session.context_percent = 130
        session.last_usage = TokenUsage(input_tokens=5, output_tokens=7)
        session.record_error("boom")

        snapshot = session.status_snapshot(running=True)
        assert snapshot["session_id"] == "01234567"
        assert snapshot["elapsed_seconds"] >= 12
        assert snapshot["current_tool"] == "▶️ Bash ls"
        assert snapshot["context_percent"] == 100
        assert snapshot["usage"]["output_tokens"] == 7
        assert snapshot["last_error"] == "boom"


class TestRecords:
    def test_token_usage_from_dict(self):
        usage = TokenUsage.from_dict({"input_tokens": 3, "cache_read_input_tokens": 4})
        assert usage.total == 7

    def test_saved_session_defaults(self):
        saved = SavedSession.from_dict({"session_id": "s"})
        assert saved.title == "Untitled session"
        assert saved.working_dir is None

    def test_ask_request_from_dict(self):
        request = AskRequest.from_dict({
            "request_id": "r", "chat_id": 5, "options": ["a", 2], "status": "sent",
        })
        assert request.chat_id == "5"
        assert request.options == ["a", "2"]
        assert request.status is AskStatus.SENT
        assert request.question == "Please choose:"

    def test_ask_request_rejects_bad_options(self):
        with pytest.raises(ValueError):
            AskRequest.from_dict({"request_id": "r", "options": "abc"})
