"""Tests for SessionEngine driving a scripted CLI stream."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from relay.engine.config import EngineConfig
from relay.engine.engine import (
    ASK_WAITING_MESSAGE,
    CONTEXT_LIMIT_MESSAGE,
    NO_RESPONSE_MESSAGE,
    SessionEngine,
    date_preamble,
)
from relay.engine.errors import AgentCrashedError, QueryFailedError
from relay.engine.models import QueryOutcome, QueryPhase, StatusKind, StopResult
from relay.engine.process import read_line_unbounded


class FakeHandle:
    """Stands in for ProcessHandle; stdout is an in-memory StreamReader."""

    def __init__(self, events=(), returncode=0, stderr="", too_long=False, eof=True):
        self.reader = asyncio.StreamReader()
        for event in events:
            line = event if isinstance(event, str) else json.dumps(event)
            self.reader.feed_data((line + "\n").encode())
        if eof:
            self.reader.feed_eof()
        self.returncode = None
        self._final = returncode
        self._eof = eof
        self.stderr_text = stderr
        self.prompt_too_long = too_long
        self.terminated = False
        self._dead = asyncio.Event()

    async def read_line(self):
        return await read_line_unbounded(self.reader)

    async def wait(self, timeout=None):
        if self.returncode is None:
            if self._eof:
                self.returncode = self._final
            else:
                try:
                    await asyncio.wait_for(self._dead.wait(), timeout)
                except asyncio.TimeoutError:
                    return None
        return self.returncode

    async def terminate(self):
        self.terminated = True
        if self.returncode is None:
            self.returncode = -15
        self.reader.feed_eof()
        self._dead.set()


class FakeSupervisor:
    def __init__(self, *handles):
        self.handles = list(handles)
        self.starts = []

    async def start(self, prompt, *, session_id, working_dir, env_overrides=None):
        self.starts.append(SimpleNamespace(
            prompt=prompt,
            session_id=session_id,
            working_dir=working_dir,
            env_overrides=env_overrides,
        ))
        return self.handles.pop(0)


class Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, kind, content, segment_id=None):
        self.calls.append((kind, content, segment_id))

    def kinds(self):
        return [c[0] for c in self.calls]


def _config(tmp_path, **overrides):
    values = dict(
        working_dir=str(tmp_path),
        session_file=str(tmp_path / "history.json"),
        ask_dir=str(tmp_path),
        streaming_throttle_seconds=0,
        text_min_length=0,
        kill_grace_seconds=0.1,
        ask_initial_delay_seconds=0,
        ask_retry_interval_seconds=0,
    )
    values.update(overrides)
    return EngineConfig(**values)


def _engine(tmp_path, *handles):
    supervisor = FakeSupervisor(*handles)
    engine = SessionEngine(_config(tmp_path), supervisor=supervisor)
    return engine, supervisor


def _init(session_id="sess-0001"):
    return {"type": "system", "subtype": "init", "session_id": session_id}


def _assistant(msg_id, *blocks):
    return {"type": "assistant", "session_id": "sess-0001",
            "message": {"id": msg_id, "content": list(blocks)}}


def _result(text="Final answer", **extra):
    event = {"type": "result", "subtype": "success", "result": text, "session_id": "sess-0001"}
    event.update(extra)
    return event


@pytest.mark.asyncio
async def test_completed_query(tmp_path):
    handle = FakeHandle([
        _init(),
        "not json at all",
        _assistant("m1", {"type": "text", "text": "Working on it"}),
        _assistant("m1", {"type": "text", "text": "Working on it"},
                   {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}}),
        _assistant("m2", {"type": "text", "text": "Done."}),
        _result("Done.", modelUsage={"m": {"inputTokens": 50000, "outputTokens": 10000}}),
    ])
    engine, supervisor = _engine(tmp_path, handle)
    sink = Recorder()

    result = await engine.send_message_streaming("list files", sink)

    assert result.outcome is QueryOutcome.COMPLETED
    assert result.text == "Done."
    assert engine.session.session_id == "sess-0001"
    assert engine.session.context_percent == 30
    assert engine.session.last_activity is not None
    assert engine.session.query_started is None
    assert engine.controller.phase is QueryPhase.COMPLETED

    ends = [c for c in sink.calls if c[0] is StatusKind.SEGMENT_END]
    assert ends == [
        (StatusKind.SEGMENT_END, "Working on it", 0),
        (StatusKind.SEGMENT_END, "Done.", 1),
    ]
    assert sink.kinds()[-1] is StatusKind.DONE
    assert sink.kinds().count(StatusKind.TOOL) == 1

    start = supervisor.starts[0]
    assert start.prompt.startswith("[Current date/time: ")
    assert start.prompt.endswith("\n\nlist files")
    assert start.session_id is None
    assert start.working_dir == str(tmp_path)
    assert start.env_overrides == {"RELAY_ASK_DIR": str(tmp_path)}

    assert [s.session_id for s in engine.list_sessions()] == ["sess-0001"]


@pytest.mark.asyncio
async def test_resumed_session_sends_plain_prompt(tmp_path):
    engine, supervisor = _engine(tmp_path, FakeHandle([_result()]))
    engine.session.session_id = "existing"
    await engine.send_message_streaming("again", Recorder())
    assert supervisor.starts[0].prompt == "again"
    assert supervisor.starts[0].session_id == "existing"


@pytest.mark.asyncio
async def test_fallback_texts(tmp_path):
    engine, _ = _engine(
        tmp_path,
        FakeHandle([_assistant("m1", {"type": "text", "text": "streamed only"}), {"type": "result"}]),
        FakeHandle([{"type": "result"}]),
    )
    first = await engine.send_message_streaming("a", Recorder())
    assert first.text == "streamed only"
    second = await engine.send_message_streaming("b", Recorder())
    assert second.text == NO_RESPONSE_MESSAGE


@pytest.mark.asyncio
async def test_cancel_before_spawn(tmp_path):
    engine, supervisor = _engine(tmp_path, FakeHandle([_result()]))
    sink = Recorder()
    with engine.processing():
        assert await engine.stop() is StopResult.PENDING
        result = await engine.send_message_streaming("never runs", sink)

    assert result.outcome is QueryOutcome.CANCELLED
    assert result.text == ""
    assert supervisor.starts == []
    assert sink.calls == []
    assert not engine.is_running
    assert not engine.controller.stop_requested


@pytest.mark.asyncio
async def test_stop_while_running(tmp_path):
    handle = FakeHandle([
        _init(),
        _assistant("m1", {"type": "text", "text": "partial answer"}),
        _assistant("m1", {"type": "text", "text": "partial answer that never arrives"}),
    ], eof=False)
    engine, _ = _engine(tmp_path, handle)

    stop_results = []

    async def sink(kind, content, segment_id=None):
        if kind is StatusKind.TEXT and not stop_results:
            stop_results.append(await engine.stop())

    result = await engine.send_message_streaming("go", sink)

    assert stop_results == [StopResult.STOPPED]
    assert handle.terminated
    assert result.outcome is QueryOutcome.STOPPED
    assert result.text == "partial answer"
    assert engine.controller.phase is QueryPhase.STOPPED
    assert engine.consume_interrupt_flag() is False
    # Identity kept: a stop is not a reset.
    assert engine.session.session_id == "sess-0001"


@pytest.mark.asyncio
async def test_context_limit_from_error_result(tmp_path):
    handle = FakeHandle([
        _init(),
        {"type": "result", "is_error": True, "result": "Prompt is too long"},
    ], returncode=1)
    engine, _ = _engine(tmp_path, handle)
    sink = Recorder()

    result = await engine.send_message_streaming("huge", sink)

    assert result.outcome is QueryOutcome.CONTEXT_LIMIT
    assert result.text == CONTEXT_LIMIT_MESSAGE
    assert engine.session.session_id is None
    assert engine.session.last_error is None
    assert sink.kinds()[-1] is StatusKind.DONE


@pytest.mark.asyncio
async def test_context_limit_from_stderr(tmp_path):
    handle = FakeHandle([_init()], returncode=1, stderr="input length and max_tokens exceed context limit", too_long=True)
    engine, _ = _engine(tmp_path, handle)
    result = await engine.send_message_streaming("huge", Recorder())
    assert result.outcome is QueryOutcome.CONTEXT_LIMIT
    assert engine.session.session_id is None


@pytest.mark.asyncio
async def test_crash_raises_with_stderr_tail(tmp_path):
    handle = FakeHandle([_init()], returncode=2, stderr="x" * 500)
    engine, _ = _engine(tmp_path, handle)
    sink = Recorder()

    with pytest.raises(AgentCrashedError) as excinfo:
        await engine.send_message_streaming("hi", sink)

    assert excinfo.value.returncode == 2
    assert str(excinfo.value) == "exited with code 2: " + "x" * 200
    assert engine.session.last_error.startswith("exited with code 2")
    assert len(engine.session.last_error) == 100
    assert engine.controller.phase is QueryPhase.FAILED
    assert not engine.is_running
    assert sink.kinds()[-1] is StatusKind.DONE


@pytest.mark.asyncio
async def test_error_result_raises(tmp_path):
    handle = FakeHandle([_init(), {"type": "result", "is_error": True, "error": "overloaded"}])
    engine, _ = _engine(tmp_path, handle)
    with pytest.raises(QueryFailedError, match="overloaded"):
        await engine.send_message_streaming("hi", Recorder())
    assert engine.session.last_error == "CLI error: overloaded"


@pytest.mark.asyncio
async def test_ask_user_suspends(tmp_path):
    (tmp_path / "ask-user-req1.json").write_text(json.dumps({
        "request_id": "req1",
        "chat_id": "42",
        "question": "Which database?",
        "options": ["postgres", "sqlite"],
        "status": "pending",
    }), encoding="utf-8")
    handle = FakeHandle([
        _init(),
        _assistant("m1", {"type": "tool_use", "id": "t1", "name": "mcp__ask-user__ask_user",
                          "input": {"question": "Which database?", "options": ["postgres", "sqlite"]}}),
        _assistant("m2", {"type": "text", "text": "should never be decoded"}),
    ], eof=False)
    engine, supervisor = _engine(tmp_path, handle)
    presenter = AsyncMock()
    sink = Recorder()

    result = await engine.send_message_streaming(
        "set up storage", sink, chat_id=42, ask_presenter=presenter,
    )

    assert result.outcome is QueryOutcome.SUSPENDED
    assert result.text == ASK_WAITING_MESSAGE
    presenter.assert_awaited_once()
    assert supervisor.starts[0].env_overrides == {
        "RELAY_CHAT_ID": "42",
        "RELAY_ASK_DIR": str(tmp_path),
    }
    assert StatusKind.TOOL not in sink.kinds()
    assert all("never" not in c[1] for c in sink.calls)
    assert sink.kinds()[-1] is StatusKind.DONE
    # Lingering CLI is terminated after the grace window.
    assert handle.terminated
    assert engine.controller.phase is QueryPhase.SUSPENDED

    # Answer arrives as an ordinary message.
    assert engine.ask_bridge.consume("req1", 1) == "sqlite"


@pytest.mark.asyncio
async def test_sink_errors_do_not_fail_query(tmp_path):
    engine, _ = _engine(tmp_path, FakeHandle([
        _init(), _assistant("m1", {"type": "text", "text": "hello there"}), _result("hello there"),
    ]))

    async def broken(kind, content, segment_id=None):
        raise RuntimeError("chat API down")

    result = await engine.send_message_streaming("hi", broken)
    assert result.outcome is QueryOutcome.COMPLETED


@pytest.mark.asyncio
async def test_resume_and_reset(tmp_path):
    engine, _ = _engine(tmp_path, FakeHandle([_init("abc-123"), _result()]))
    await engine.send_message_streaming("hi", Recorder())
    engine.reset()
    assert engine.session.session_id is None
    assert engine.session.working_dir == str(tmp_path)

    ok, message = engine.resume("abc-123")
    assert ok, message
    assert engine.session.session_id == "abc-123"

    engine.reset()
    assert engine.resume_last() == (True, 'Resumed session: "Untitled session"')


@pytest.mark.asyncio
async def test_set_working_dir_moves_next_query(tmp_path):
    project = tmp_path / "project"
    project.mkdir()
    engine, supervisor = _engine(tmp_path, FakeHandle([_init(), _result()]))
    engine.set_working_dir(str(project))
    with pytest.raises(NotADirectoryError):
        engine.set_working_dir(str(tmp_path / "missing"))

    await engine.send_message_streaming("hi", Recorder())
    assert supervisor.starts[0].working_dir == str(project)
    assert engine.list_sessions()[0].working_dir == str(project)


def test_status_snapshot_idle(tmp_path):
    engine, _ = _engine(tmp_path)
    snapshot = engine.status_snapshot()
    assert snapshot["active"] is False
    assert snapshot["running"] is False
    assert snapshot["working_dir"] == str(tmp_path)


def test_date_preamble_format():
    from datetime import datetime, timezone

    text = date_preamble(datetime(2025, 3, 7, 14, 5, tzinfo=timezone.utc))
    assert text == "[Current date/time: Friday, March 7, 2025 at 02:05 PM UTC]\n\n"
