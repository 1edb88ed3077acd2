"""Tests for EngineConfig.from_env and the YAML overlay."""

import textwrap
from pathlib import Path

import pytest

from relay.engine.config import EngineConfig, fire_callback
from relay.engine.yaml_config import load_yaml_config


_ENV_VARS = (
    "CLAUDE_CLI_PATH",
    "CLAUDE_WORKING_DIR",
    "ALLOWED_PATHS",
    "CLAUDE_MODEL",
    "CLAUDE_SYSTEM_PROMPT",
    "RELAY_MCP_CONFIG",
    "RELAY_SESSION_FILE",
    "RELAY_ASK_DIR",
    "RELAY_STREAMING_THROTTLE",
    "RELAY_KILL_GRACE",
    "RELAY_MAX_CRASH_RETRIES",
    "RELAY_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestFromEnv:
    def test_defaults(self, clean_env):
        config = EngineConfig.from_env()
        assert config.cli_path == "claude"
        assert config.working_dir == str(Path.home())
        assert config.allowed_paths[0] == config.working_dir
        assert config.model is None
        assert config.system_prompt is None
        assert config.history_capacity == 5
        assert config.streaming_throttle_seconds == 0.5
        assert config.text_min_length == 20
        assert config.kill_grace_seconds == 5.0
        assert config.max_crash_retries == 1
        assert config.ask_attempts == 3
        assert config.default_context_window == 200_000

    def test_overrides(self, clean_env, tmp_path):
        clean_env.setenv("CLAUDE_CLI_PATH", "/opt/claude")
        clean_env.setenv("CLAUDE_WORKING_DIR", str(tmp_path))
        clean_env.setenv("ALLOWED_PATHS", f"{tmp_path}, /data ,")
        clean_env.setenv("CLAUDE_MODEL", "opus")
        clean_env.setenv("CLAUDE_SYSTEM_PROMPT", "Be terse.")
        clean_env.setenv("RELAY_SESSION_FILE", str(tmp_path / "s.json"))
        clean_env.setenv("RELAY_STREAMING_THROTTLE", "1.5")
        clean_env.setenv("RELAY_KILL_GRACE", "2")
        clean_env.setenv("RELAY_MAX_CRASH_RETRIES", "0")

        config = EngineConfig.from_env()
        assert config.cli_path == "/opt/claude"
        assert config.working_dir == str(tmp_path)
        assert config.allowed_paths == [str(tmp_path), "/data"]
        assert config.model == "opus"
        assert config.system_prompt == "Be terse."
        assert config.session_file == str(tmp_path / "s.json")
        assert config.streaming_throttle_seconds == 1.5
        assert config.kill_grace_seconds == 2.0
        assert config.max_crash_retries == 0

    def test_allowed_paths_default_follow_working_dir(self, clean_env, tmp_path):
        clean_env.setenv("CLAUDE_WORKING_DIR", str(tmp_path))
        config = EngineConfig.from_env()
        assert config.allowed_paths[0] == str(tmp_path)
        assert str(Path.home() / ".claude") in config.allowed_paths


class TestYamlConfig:
    def _write(self, tmp_path, body: str) -> Path:
        path = tmp_path / "relay.yaml"
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return path

    def test_overlay(self, tmp_path):
        path = self._write(tmp_path, f"""
            cli:
              path: /usr/bin/claude
              model: sonnet
            session:
              working_dir: {tmp_path}
              history_capacity: 3
            streaming:
              throttle_seconds: 0.25
            ask_bridge:
              attempts: 5
            retry:
              max_crash_retries: 2
            logging:
              level: debug
        """)
        base = EngineConfig(working_dir="/base")
        config = load_yaml_config(path, base)
        assert config.cli_path == "/usr/bin/claude"
        assert config.model == "sonnet"
        assert config.working_dir == str(tmp_path)
        assert config.history_capacity == 3
        assert config.streaming_throttle_seconds == 0.25
        assert config.ask_attempts == 5
        assert config.max_crash_retries == 2
        assert config.log_level == "DEBUG"
        # Allowed paths follow the new working dir.
        assert config.allowed_paths[0] == str(tmp_path)
        assert "/base" not in config.allowed_paths
        # Base is untouched.
        assert base.cli_path == "claude"

    def test_unknown_keys_ignored(self, tmp_path, caplog):
        path = self._write(tmp_path, """
            bogus:
              x: 1
            cli:
              colour: blue
              model: haiku
        """)
        config = load_yaml_config(path, EngineConfig(working_dir="/w"))
        assert config.model == "haiku"
        assert "unknown section 'bogus'" in caplog.text
        assert "unknown key 'cli.colour'" in caplog.text

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml_config(tmp_path / "nope.yaml", EngineConfig(working_dir="/w"))

    def test_non_mapping_raises(self, tmp_path):
        path = self._write(tmp_path, "- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_yaml_config(path, EngineConfig(working_dir="/w"))

    def test_empty_file_keeps_base(self, tmp_path):
        path = self._write(tmp_path, "")
        base = EngineConfig(working_dir="/w", model="m")
        assert load_yaml_config(path, base) == base


class TestFireCallback:
    @pytest.mark.asyncio
    async def test_swallows_errors(self):
        async def boom(*args):
            raise RuntimeError("sink exploded")

        assert await fire_callback(boom, "x") is False

    @pytest.mark.asyncio
    async def test_none_callback(self):
        assert await fire_callback(None, "x") is False

    @pytest.mark.asyncio
    async def test_passes_args(self):
        seen = []

        async def sink(*args):
            seen.append(args)

        assert await fire_callback(sink, 1, "two") is True
        assert seen == [(1, "two")]
