"""Tests for agent configuration."""

import re

import pytest

from crashwire.config import DEFAULT_BACKEND_URL, AgentConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (
        "CRASHWIRE_API_KEY",
        "CRASHWIRE_BACKEND_URL",
        "CRASHWIRE_ENVIRONMENT",
        "CRASHWIRE_SAMPLING_RATE",
        "CRASHWIRE_MAX_DEPTH",
        "CRASHWIRE_MAX_STRING_LENGTH",
        "CRASHWIRE_MAX_COLLECTION_SIZE",
        "CRASHWIRE_DEBUG",
    ):
        monkeypatch.delenv(key, raising=False)


def test_defaults():
    """Test default limits and identity."""
    cfg = AgentConfig()
    assert cfg.backend_url == DEFAULT_BACKEND_URL
    assert cfg.environment == "production"
    assert cfg.sampling_rate == 1.0
    assert (cfg.max_capture_depth, cfg.max_string_length, cfg.max_collection_size) == (
        10,
        1000,
        100,
    )
    assert re.fullmatch(r"agent-[0-9a-f]+-[0-9a-f]{8}", cfg.agent_id)
    assert cfg.hostname


def test_agent_ids_differ():
    """Test each config gets its own agent id."""
    assert AgentConfig().agent_id != AgentConfig().agent_id


def test_negative_limits_rejected():
    """Test invalid limits raise a ValueError."""
    with pytest.raises(ValueError, match="max_capture_depth"):
        AgentConfig(max_capture_depth=-1)
    with pytest.raises(ValueError, match="max_collection_size"):
        AgentConfig(max_collection_size=-5)


def test_from_env(monkeypatch):
    """Test environment variables feed the config."""
    monkeypatch.setenv("CRASHWIRE_API_KEY", "env-key")
    monkeypatch.setenv("CRASHWIRE_SAMPLING_RATE", "0.25")
    monkeypatch.setenv("CRASHWIRE_MAX_DEPTH", "3")
    monkeypatch.setenv("CRASHWIRE_DEBUG", "yes")

    cfg = AgentConfig.from_env()

    assert cfg.api_key == "env-key"
    assert cfg.sampling_rate == 0.25
    assert cfg.max_capture_depth == 3
    assert cfg.debug is True


def test_explicit_options_override_env(monkeypatch):
    """Test non-None overrides win over the environment."""
    monkeypatch.setenv("CRASHWIRE_ENVIRONMENT", "staging")
    monkeypatch.setenv("CRASHWIRE_DEBUG", "0")

    cfg = AgentConfig.from_env(environment="dev", api_key=None)

    assert cfg.environment == "dev"
    assert cfg.api_key == ""
    assert cfg.debug is False


def test_context_and_user_are_replaced_and_copied():
    """Test setters replace whole values and getters hand out copies."""
    cfg = AgentConfig()
    cfg.set_custom_context({"a": 1})
    cfg.set_custom_context({"b": 2})
    assert cfg.get_custom_context() == {"b": 2}

    cfg.get_custom_context()["c"] = 3
    assert cfg.get_custom_context() == {"b": 2}

    user = {"id": "u1"}
    cfg.set_user(user)
    user["id"] = "changed"
    assert cfg.get_user() == {"id": "u1"}


@pytest.mark.parametrize("rate, expected", [(1.0, True), (1.5, True), (0.0, False), (-1.0, False)])
def test_should_sample_bounds(rate, expected):
    """Test rates at or beyond the bounds are deterministic."""
    cfg = AgentConfig(sampling_rate=rate)
    assert all(cfg.should_sample() is expected for _ in range(50))


def test_runtime_info():
    """Test runtime description fields."""
    info = AgentConfig().get_runtime_info()
    assert info["runtime"] == "python"
    assert set(info) >= {"runtime_version", "platform", "arch"}
