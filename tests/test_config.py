"""Tests for configuration loading and harness resolution."""

import pytest

from ralphie.config import (
    CONFIG_FILE,
    HARNESS_ENV,
    MAX_ALL_ITERATIONS,
    MODEL_ENV,
    RunConfig,
    build_config,
    load_file_config,
    resolve_harness_name,
)
from ralphie.errors import ConfigError, HarnessNotFound
from ralphie.harness import ClaudeHarness, CommandHarness, get_harness


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv(HARNESS_ENV, raising=False)
    monkeypatch.delenv(MODEL_ENV, raising=False)


def write_config(tmp_path, text):
    path = tmp_path / CONFIG_FILE
    path.parent.mkdir(parents=True)
    path.write_text(text)


def test_defaults(tmp_path):
    config = build_config(tmp_path)
    assert config.iterations == 1
    assert config.max_iterations == 1
    assert config.idle_timeout == 120.0
    assert config.stuck_threshold == 3
    assert config.budget == 4
    assert config.model == "sonnet"
    assert config.harness == "claude"
    assert config.stop_on_error is True


def test_run_until_done():
    assert RunConfig(run_until_done=True).max_iterations == MAX_ALL_ITERATIONS


def test_invalid_values():
    with pytest.raises(ConfigError):
        RunConfig(iterations=0)
    with pytest.raises(ConfigError):
        RunConfig(idle_timeout=0)
    with pytest.raises(ConfigError):
        RunConfig(budget=0)


def test_file_config(tmp_path):
    write_config(tmp_path, "model: opus\nbudget: 6\nidle_timeout: 30\nstop_on_error: false\nunknown: 1\n")
    assert load_file_config(tmp_path) == {
        "model": "opus",
        "budget": 6,
        "idle_timeout": 30.0,
        "stop_on_error": False,
    }


def test_file_config_errors(tmp_path):
    write_config(tmp_path, "- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_file_config(tmp_path)


def test_file_config_bad_yaml(tmp_path):
    write_config(tmp_path, "model: [unclosed\n")
    with pytest.raises(ConfigError):
        load_file_config(tmp_path)


def test_empty_file_config(tmp_path):
    write_config(tmp_path, "")
    assert load_file_config(tmp_path) == {}


def test_precedence(tmp_path, monkeypatch):
    write_config(tmp_path, "model: opus\nbudget: 6\n")
    monkeypatch.setenv(MODEL_ENV, "haiku")
    config = build_config(tmp_path, budget=2, model=None, iterations=None)
    assert config.model == "haiku"
    assert config.budget == 2
    assert build_config(tmp_path, model="sonnet").model == "sonnet"


def test_resolve_harness_name(monkeypatch):
    assert resolve_harness_name(None, None) == "claude"
    assert resolve_harness_name(None, "claude") == "claude"
    with pytest.raises(HarnessNotFound):
        resolve_harness_name("nope", None)


def test_unknown_harness_from_env_or_file_is_an_error(monkeypatch, tmp_path):
    with pytest.raises(HarnessNotFound):
        resolve_harness_name(None, "bogus")
    monkeypatch.setenv(HARNESS_ENV, "nope")
    with pytest.raises(HarnessNotFound):
        resolve_harness_name(None, "claude")
    assert resolve_harness_name("claude", None) == "claude"

    monkeypatch.delenv(HARNESS_ENV)
    write_config(tmp_path, "harness: codex\n")
    with pytest.raises(HarnessNotFound):
        build_config(tmp_path)


def test_get_harness():
    assert isinstance(get_harness(), ClaudeHarness)
    custom = get_harness("claude", "python fake.py --flag")
    assert isinstance(custom, CommandHarness)
    assert custom.command("sonnet") == ["python", "fake.py", "--flag"]
    with pytest.raises(HarnessNotFound):
        get_harness("nope")


def test_claude_command():
    cmd = ClaudeHarness().command("opus")
    assert cmd[:2] == ["claude", "-p"]
    assert "stream-json" in cmd
    assert cmd[cmd.index("--model") + 1] == "opus"
