"""Configuration loader for the Heartwatch service."""

import copy
import json
from pathlib import Path
from typing import Any

from heartwatch.shared.errors import ConfigurationError

LIVENESS_SOURCES = ("bus", "http")

DEFAULTS: dict[str, Any] = {
    "redis_url": "redis://localhost:6379",
    "poll_interval_seconds": 60,
    "max_concurrency": 10,
    "default_expected_interval_ms": 6 * 60 * 60 * 1000,
    "default_grace_multiplier": 1.5,
    "agents": [],
    "liveness": {"type": "bus"},
    "alerts": {
        "cooldown_ms": 5 * 60 * 1000,
        "max_retries": 3,
        "base_delay_seconds": 1.0,
        "timeout_seconds": 10.0,
        "history_capacity": 1000,
        "channels": [],
    },
    "reports": {"persist": False},
    "realtime": {"enabled": True, "host": "0.0.0.0", "port": 8081, "path": "/ws"},
    "log_file": None,
    "log_level": "INFO",
}


def load_config(config_path: str, defaults: dict[str, Any] | None = None) -> dict[str, Any]:
    """Load configuration from a JSON file, merging with optional defaults.

    Args:
        config_path: Path to the JSON configuration file.
        defaults: Optional dictionary of default values. File values override defaults.

    Returns:
        Merged configuration dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path) as f:
        config = json.load(f)

    if defaults:
        merged = {**defaults, **config}
        return merged

    return config


def build_settings(config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Merge a loaded config over ``DEFAULTS`` and validate it.

    Nested sections (``alerts``, ``liveness``, ``reports``, ``realtime``) are
    merged one level deep so a file can override a single key.

    Raises:
        ConfigurationError: If a value can never work at runtime.
    """
    settings = copy.deepcopy(DEFAULTS)
    for key, value in (config or {}).items():
        if isinstance(value, dict) and isinstance(settings.get(key), dict):
            settings[key] = {**settings[key], **value}
        else:
            settings[key] = value

    if settings["poll_interval_seconds"] <= 0:
        raise ConfigurationError("poll_interval_seconds must be positive")
    if settings["max_concurrency"] < 1:
        raise ConfigurationError("max_concurrency must be at least 1")
    if settings["default_expected_interval_ms"] <= 0:
        raise ConfigurationError("default_expected_interval_ms must be positive")
    if settings["default_grace_multiplier"] < 1.0:
        raise ConfigurationError("default_grace_multiplier must be >= 1.0")

    for agent in settings["agents"]:
        if not agent.get("id"):
            raise ConfigurationError(f"Agent entry without id: {agent}")
        if agent.get("expected_interval_ms", 1) <= 0:
            raise ConfigurationError(f"Agent {agent['id']}: expected_interval_ms must be positive")
        if agent.get("grace_multiplier", 1.0) < 1.0:
            raise ConfigurationError(f"Agent {agent['id']}: grace_multiplier must be >= 1.0")

    liveness = settings["liveness"]
    if liveness.get("type") not in LIVENESS_SOURCES:
        raise ConfigurationError(f"Unknown liveness source: {liveness.get('type')}")
    if liveness["type"] == "http" and not liveness.get("url"):
        raise ConfigurationError("HTTP liveness source needs a url")

    return settings
