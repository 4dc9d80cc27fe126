"""Shared engine configuration utilities.

Centralises reading of ~/.flowengine/configuration.json. Environment
variables override anything found in the file so deployments can be tuned
without shipping a config file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MODEL = "anthropic/claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 4096

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

ENGINE_CONFIG_FILE = Path.home() / ".flowengine" / "configuration.json"


def _config_path() -> Path:
    override = os.environ.get("FLOWENGINE_CONFIG")
    return Path(override) if override else ENGINE_CONFIG_FILE


def get_engine_config_file() -> dict[str, Any]:
    """Load engine configuration from the JSON config file."""
    path = _config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def _section(name: str) -> dict[str, Any]:
    return get_engine_config_file().get(name, {})


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off", "")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the LLM model string (e.g. 'anthropic/claude-sonnet-4-20250514')."""
    if os.environ.get("FLOWENGINE_MODEL"):
        return os.environ["FLOWENGINE_MODEL"]
    llm = _section("llm")
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    return _section("llm").get("max_tokens", DEFAULT_MAX_TOKENS)


def get_storage_path() -> Path:
    raw = os.environ.get("FLOWENGINE_STORAGE_PATH") or _section("storage").get("path")
    return Path(raw) if raw else Path.home() / ".flowengine" / "data"


def get_encryption_keys() -> tuple[str | None, list[str]]:
    """Return (primary_key, previous_keys) from env or config file."""
    crypto = _section("crypto")
    primary = os.environ.get("ENCRYPTION_KEY") or crypto.get("primary_key")
    raw_previous = os.environ.get("ENCRYPTION_PREVIOUS_KEYS")
    if raw_previous is not None:
        previous = [k.strip() for k in raw_previous.split(",") if k.strip()]
    else:
        previous = list(crypto.get("previous_keys", []))
    return primary, previous


# ---------------------------------------------------------------------------
# Typed configuration sections
# ---------------------------------------------------------------------------


@dataclass
class EvalConfig:
    """Defaults for the L1/L2/L3 evaluation pipeline."""

    enable_l1: bool = True
    enable_l2: bool = True
    enable_l3: bool = True
    l2_min_score: float = 0.6
    auto_send_threshold: float = 0.85

    @classmethod
    def from_env(cls) -> "EvalConfig":
        section = _section("eval")
        return cls(
            enable_l1=_env_bool("EVAL_ENABLE_L1", section.get("enable_l1", True)),
            enable_l2=_env_bool("EVAL_ENABLE_L2", section.get("enable_l2", True)),
            enable_l3=_env_bool("EVAL_ENABLE_L3", section.get("enable_l3", True)),
            l2_min_score=_env_float("EVAL_L2_MIN_SCORE", section.get("l2_min_score", 0.6)),
            auto_send_threshold=_env_float(
                "EVAL_AUTO_SEND_THRESHOLD", section.get("auto_send_threshold", 0.85)
            ),
        )


@dataclass
class QueueConfig:
    """Celery broker and retry policy for job queues."""

    broker_url: str = "redis://localhost:6379/0"
    result_backend: str | None = None
    # Run jobs in the caller instead of a worker; for tests and one-off scripts
    eager: bool = False
    attempts: int = 3
    backoff_delay_s: int = 2
    send_attempts: int = 1
    concurrency: int = 10
    graceful_shutdown_timeout_s: float = 30.0

    @classmethod
    def from_env(cls) -> "QueueConfig":
        section = _section("queue")
        broker_url = (
            os.environ.get("CELERY_BROKER_URL")
            or os.environ.get("REDIS_URL")
            or section.get("broker_url", "redis://localhost:6379/0")
        )
        return cls(
            broker_url=broker_url,
            result_backend=os.environ.get("CELERY_RESULT_BACKEND") or section.get("result_backend"),
            eager=_env_bool("CELERY_TASK_ALWAYS_EAGER", section.get("eager", False)),
            attempts=section.get("attempts", 3),
            concurrency=section.get("concurrency", 10),
        )


@dataclass
class SchedulerConfig:
    poll_interval_s: float = 60.0
    calendar_window_minutes: int = 2
    calendar_default_offset_minutes: int = -1
    dedupe_capacity: int = 1000

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        return cls(poll_interval_s=_env_float("SCHEDULE_POLL_INTERVAL_S", 60.0))


@dataclass
class CryptoConfig:
    primary_key: str | None = None
    previous_keys: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "CryptoConfig":
        primary, previous = get_encryption_keys()
        return cls(primary_key=primary, previous_keys=previous)


# ---------------------------------------------------------------------------
# EngineConfig – one per process
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from the config file and environment."""

    model: str = field(default_factory=get_preferred_model)
    max_tokens: int = field(default_factory=get_max_tokens)
    storage_path: Path = field(default_factory=get_storage_path)
    eval: EvalConfig = field(default_factory=EvalConfig.from_env)
    queue: QueueConfig = field(default_factory=QueueConfig.from_env)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig.from_env)
    crypto: CryptoConfig = field(default_factory=CryptoConfig.from_env)
