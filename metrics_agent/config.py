"""
Metrics Agent - Configuration

Loads the agent configuration from YAML and merges it over built-in defaults.
"""

import copy
import platform
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml

from .errors import ConfigError

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "agent": {"name": "metrics-agent", "version": "1.0.0"},
    "device": {"id": None},
    "collection": {"interval": 5},
    "storage": {
        "data_dir": "./data",
        "metrics_dir": "metrics_data",
        "logs_dir": "logs",
        "stat_path": None,
    },
    "delivery": {"backend": "mqtt"},
    "mqtt": {
        "host": "localhost",
        "port": 8883,
        "client_id": None,
        "topic": "device/metrics/data",
        "qos": 1,
        "keepalive": 60,
        "publish_timeout": 10,
        "max_reconnect_attempts": 5,
        "reconnect_min_delay": 1,
        "reconnect_max_delay": 30,
        "retry_interval": 30,
    },
    "credentials": {
        "assets_dir": "./assets",
        "root_ca": "root-ca.pem",
        "certificate": "certificate.pem.crt",
        "private_key": "private.pem.key",
        "keystore_dir": "keystore",
        "key_password": None,
    },
    "logging": {"level": "INFO", "format": "json"},
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def default_config() -> Dict[str, Any]:
    """Return a fresh copy of the default configuration."""
    return copy.deepcopy(DEFAULT_CONFIG)


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Check value ranges the rest of the agent relies on."""
    interval = config["collection"].get("interval")
    if not isinstance(interval, (int, float)) or interval <= 0:
        raise ConfigError(f"collection.interval must be a positive number, got {interval!r}")

    mqtt = config["mqtt"]
    if mqtt.get("qos") not in (0, 1):
        raise ConfigError(f"mqtt.qos must be 0 or 1, got {mqtt.get('qos')!r}")
    if not mqtt.get("topic"):
        raise ConfigError("mqtt.topic must not be empty")
    if mqtt.get("publish_timeout", 0) <= 0:
        raise ConfigError("mqtt.publish_timeout must be positive")
    if mqtt.get("max_reconnect_attempts", 0) < 1:
        raise ConfigError("mqtt.max_reconnect_attempts must be at least 1")
    if mqtt.get("retry_interval", 0) < 0:
        raise ConfigError("mqtt.retry_interval must not be negative")

    # Imported lazily; the backend registry imports paho.
    from .delivery import BACKENDS

    backend = config["delivery"].get("backend")
    if backend not in BACKENDS:
        raise ConfigError(
            f"Unknown delivery backend {backend!r}, expected one of {sorted(BACKENDS)}"
        )
    return config


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from a YAML file, falling back to defaults."""
    if not config_path:
        return validate_config(default_config())

    path = Path(config_path)
    if not path.exists():
        logger.warning("Config file not found, using defaults", path=config_path)
        return validate_config(default_config())

    try:
        with open(path, "r") as f:
            loaded = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {config_path}: {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigError(f"Config {config_path} must contain a mapping")

    config = _merge(DEFAULT_CONFIG, loaded)
    logger.info("Configuration loaded", path=config_path)
    return validate_config(config)


def resolve_device_id(config: Dict[str, Any]) -> str:
    """Configured device id, or the host name when none is set."""
    device_id = config.get("device", {}).get("id")
    return str(device_id) if device_id else platform.node() or "unknown-device"
