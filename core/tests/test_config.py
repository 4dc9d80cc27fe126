"""Tests for configuration loading from the config file and environment."""

import json
from pathlib import Path

import pytest

from flowengine.config import (
    DEFAULT_MODEL,
    CryptoConfig,
    EngineConfig,
    EvalConfig,
    QueueConfig,
    SchedulerConfig,
    get_engine_config_file,
    get_preferred_model,
)

ENV_VARS = (
    "FLOWENGINE_MODEL",
    "FLOWENGINE_STORAGE_PATH",
    "ENCRYPTION_KEY",
    "ENCRYPTION_PREVIOUS_KEYS",
    "EVAL_ENABLE_L3",
    "EVAL_L2_MIN_SCORE",
    "EVAL_AUTO_SEND_THRESHOLD",
    "SCHEDULE_POLL_INTERVAL_S",
    "CELERY_BROKER_URL",
    "CELERY_RESULT_BACKEND",
    "CELERY_TASK_ALWAYS_EAGER",
    "REDIS_URL",
)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "configuration.json"
    monkeypatch.setenv("FLOWENGINE_CONFIG", str(path))
    return path


def test_missing_file_gives_defaults(config_file):
    assert get_engine_config_file() == {}
    assert get_preferred_model() == DEFAULT_MODEL
    assert EvalConfig.from_env() == EvalConfig()


def test_corrupt_file_is_ignored(config_file):
    config_file.write_text("{not json")
    assert get_engine_config_file() == {}


def test_file_values(config_file):
    config_file.write_text(
        json.dumps(
            {
                "llm": {"provider": "openai", "model": "gpt-4o-mini", "max_tokens": 2048},
                "storage": {"path": "/srv/flowengine"},
                "eval": {"enable_l3": False, "l2_min_score": 0.5},
                "crypto": {"primary_key": "k" * 32, "previous_keys": ["o" * 32]},
            }
        )
    )
    config = EngineConfig()

    assert config.model == "openai/gpt-4o-mini"
    assert config.max_tokens == 2048
    assert config.storage_path == Path("/srv/flowengine")
    assert config.eval.enable_l3 is False
    assert config.eval.l2_min_score == 0.5
    assert config.crypto.primary_key == "k" * 32
    assert config.crypto.previous_keys == ["o" * 32]


def test_environment_overrides_file(config_file, monkeypatch):
    config_file.write_text(json.dumps({"llm": {"provider": "openai", "model": "gpt-4o"}}))
    monkeypatch.setenv("FLOWENGINE_MODEL", "anthropic/claude-3-5-haiku-20241022")
    monkeypatch.setenv("EVAL_ENABLE_L3", "off")
    monkeypatch.setenv("EVAL_AUTO_SEND_THRESHOLD", "0.9")
    monkeypatch.setenv("SCHEDULE_POLL_INTERVAL_S", "15")
    monkeypatch.setenv("ENCRYPTION_PREVIOUS_KEYS", " a , ,b ")

    assert get_preferred_model() == "anthropic/claude-3-5-haiku-20241022"
    assert EvalConfig.from_env().enable_l3 is False
    assert EvalConfig.from_env().auto_send_threshold == 0.9
    assert SchedulerConfig.from_env().poll_interval_s == 15.0
    assert CryptoConfig.from_env().previous_keys == ["a", "b"]


def test_bad_float_falls_back(config_file, monkeypatch):
    monkeypatch.setenv("EVAL_L2_MIN_SCORE", "high")
    assert EvalConfig.from_env().l2_min_score == 0.6


def test_queue_broker_settings(config_file, monkeypatch):
    config_file.write_text(json.dumps({"queue": {"broker_url": "redis://cache:6379/2"}}))
    assert QueueConfig.from_env().broker_url == "redis://cache:6379/2"
    assert QueueConfig.from_env().eager is False

    monkeypatch.setenv("REDIS_URL", "redis://shared:6379/0")
    assert QueueConfig.from_env().broker_url == "redis://shared:6379/0"

    monkeypatch.setenv("CELERY_BROKER_URL", "amqp://guest@rabbit//")
    monkeypatch.setenv("CELERY_RESULT_BACKEND", "redis://shared:6379/1")
    monkeypatch.setenv("CELERY_TASK_ALWAYS_EAGER", "1")
    queue = EngineConfig().queue
    assert queue.broker_url == "amqp://guest@rabbit//"
    assert queue.result_backend == "redis://shared:6379/1"
    assert queue.eager is True
