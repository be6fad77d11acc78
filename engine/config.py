"""
Configuration: persisted user defaults plus the validated run configuration.

User defaults live in ``~/.netpulse/config.json``.  Every key of
:data:`DEFAULTS` is a :class:`TestConfig` field, so a loaded file can be fed
straight into ``TestConfig.from_dict``::

    latency_sample_count = 15
    latency_timeout_ms = 5000
    latency_interval_ms = 300
    parallel_connections = 4
    transfer_duration_ms = 10000
    overhead_compensation = 0.08
    progress_interval_ms = 100
    monitoring_interval_ms = 2000
    max_data_points = 50
    throughput_refresh_interval_ms = 30000
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

from .constants import (
    CONNECTION_CLASS_RTT_MS,
    DEFAULT_CONNECTIONS,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_MAX_DATA_POINTS,
    DEFAULT_MONITORING_INTERVAL_MS,
    DEFAULT_OVERHEAD_COMPENSATION,
    DEFAULT_PHASE_TIMEOUT_MS,
    DEFAULT_PING_COUNT,
    DEFAULT_PING_INTERVAL_MS,
    DEFAULT_PING_TIMEOUT_MS,
    DEFAULT_PROGRESS_INTERVAL_MS,
    DEFAULT_THROUGHPUT_REFRESH_MS,
    DEFAULT_TRANSFER_DURATION_MS,
    DEFAULT_TRANSITION_DELAY_MS,
    MAX_CONNECTIONS,
    MAX_DURATION_MS,
    MAX_PING_COUNT,
    MIN_CONNECTIONS,
    MIN_DURATION_MS,
    MIN_MONITORING_INTERVAL_MS,
    MIN_PING_COUNT,
    MONITOR_CONNECTIONS,
    MONITOR_TRANSFER_DURATION_MS,
)
from .errors import ConfigError
from .quality import METHOD_WEIGHTED, METHODS

LOGGER = logging.getLogger(__name__)

_CONFIG_DIR = os.path.join(Path.home(), ".netpulse")
_CONFIG_FILE = "config.json"


def _config_path() -> str:
    return os.path.join(_CONFIG_DIR, _CONFIG_FILE)


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------

@dataclass
class TestConfig:
    """Every recognised option of a test run or monitoring session."""

    __test__ = False  # not a test case

    latency_sample_count: int = DEFAULT_PING_COUNT
    latency_timeout_ms: float = DEFAULT_PING_TIMEOUT_MS
    latency_interval_ms: float = DEFAULT_PING_INTERVAL_MS
    parallel_connections: int = DEFAULT_CONNECTIONS
    transfer_duration_ms: float = DEFAULT_TRANSFER_DURATION_MS
    overhead_compensation: float = DEFAULT_OVERHEAD_COMPENSATION
    progress_interval_ms: float = DEFAULT_PROGRESS_INTERVAL_MS
    monitoring_interval_ms: float = DEFAULT_MONITORING_INTERVAL_MS
    max_data_points: int = DEFAULT_MAX_DATA_POINTS
    throughput_refresh_interval_ms: float = DEFAULT_THROUGHPUT_REFRESH_MS

    transition_delay_ms: float = DEFAULT_TRANSITION_DELAY_MS
    phase_timeout_ms: float = DEFAULT_PHASE_TIMEOUT_MS
    quality_method: str = METHOD_WEIGHTED
    connection_class: Optional[str] = None
    allow_simulated_fallback: bool = False
    progressive_payload: bool = True
    monitor_transfer_duration_ms: float = MONITOR_TRANSFER_DURATION_MS
    monitor_connections: int = MONITOR_CONNECTIONS
    server_url: Optional[str] = None
    ws_url: Optional[str] = None
    history_limit: int = DEFAULT_HISTORY_LIMIT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TestConfig:
        """Build from a mapping, ignoring keys that are not options."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> TestConfig:
        """Raise ``ConfigError`` for the first out-of-range value; returns self."""
        _check_range("latency_sample_count", self.latency_sample_count,
                     MIN_PING_COUNT, MAX_PING_COUNT)
        _check_range("parallel_connections", self.parallel_connections,
                     MIN_CONNECTIONS, MAX_CONNECTIONS)
        _check_range("monitor_connections", self.monitor_connections,
                     MIN_CONNECTIONS, MAX_CONNECTIONS)
        _check_range("transfer_duration_ms", self.transfer_duration_ms,
                     MIN_DURATION_MS, MAX_DURATION_MS)
        _check_range("monitor_transfer_duration_ms", self.monitor_transfer_duration_ms,
                     MIN_DURATION_MS, MAX_DURATION_MS)
        _check_range("overhead_compensation", self.overhead_compensation, 0.0, 1.0)

        for name in ("latency_timeout_ms", "progress_interval_ms",
                     "throughput_refresh_interval_ms", "phase_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        for name in ("latency_interval_ms", "transition_delay_ms"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative, got {getattr(self, name)}")

        if self.monitoring_interval_ms < MIN_MONITORING_INTERVAL_MS:
            raise ConfigError(
                f"monitoring_interval_ms must be at least {MIN_MONITORING_INTERVAL_MS}, "
                f"got {self.monitoring_interval_ms}"
            )
        if self.max_data_points < 1:
            raise ConfigError(f"max_data_points must be at least 1, got {self.max_data_points}")
        if self.history_limit < 1:
            raise ConfigError(f"history_limit must be at least 1, got {self.history_limit}")
        if self.quality_method not in METHODS:
            raise ConfigError(
                f"quality_method must be one of {', '.join(METHODS)}, "
                f"got {self.quality_method!r}"
            )
        if (self.connection_class is not None
                and self.connection_class.lower() not in CONNECTION_CLASS_RTT_MS):
            raise ConfigError(f"Unknown connection_class: {self.connection_class!r}")
        return self


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not low <= value <= high:
        raise ConfigError(f"{name} must be between {low} and {high}, got {value}")


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULTS: Dict[str, Any] = TestConfig().to_dict()


# ---------------------------------------------------------------------------
# Read / Write
# ---------------------------------------------------------------------------

def load_config() -> Dict[str, Any]:
    """Load config from disk, returning defaults for missing keys."""
    path = _config_path()
    config = dict(DEFAULTS)

    if not os.path.isfile(path):
        return config

    try:
        with open(path, encoding="utf-8") as fh:
            user = json.load(fh)
        if isinstance(user, dict):
            config.update(user)
    except (json.JSONDecodeError, OSError) as exc:
        LOGGER.warning("Ignoring unreadable config %s: %s", path, exc)

    return config


def save_config(config: Dict[str, Any]) -> str:
    """Write *config* to disk.  Returns the file path."""
    path = _config_path()
    os.makedirs(os.path.dirname(path), exist_ok=True)

    with open(path, "w", encoding="utf-8") as fh:
        json.dump(config, fh, indent=2, ensure_ascii=False)

    return path


def get_config_value(key: str) -> Any:
    """Get a single config value."""
    return load_config().get(key, DEFAULTS.get(key))


def set_config_value(key: str, value: Any) -> str:
    """Set a single config value and persist.  Returns file path."""
    config = load_config()
    config[key] = value
    return save_config(config)


def config_path() -> str:
    """Return the config file path (for display purposes)."""
    return _config_path()


def load_test_config(**overrides: Any) -> TestConfig:
    """Persisted defaults with *overrides* applied, validated."""
    data = load_config()
    data.update({k: v for k, v in overrides.items() if v is not None})
    return TestConfig.from_dict(data).validate()
