"""
Configuration management for dorchestra.

Loads and validates config.yaml from the dorchestra home directory
($DORCHESTRA_HOME, default ~/.dorchestra).

Example config.yaml:

    state:
      backend: sqlite            # memory | file | sqlite
      path: ~/.dorchestra/state.db
    gateway:
      call_timeout_seconds: 30
    bridge:
      default_namespace: default
      max_retries: 3
      backoff_base_seconds: 1.0
      backoff_cap_seconds: 300
      workers: 8
      batch_size: 10
      dead_letter_path: ~/.dorchestra/dead_letters.jsonl
    events:
      path: ~/.dorchestra/events.jsonl
      bigquery_dataset: events   # optional; also write to BigQuery
      bigquery_table: event_log
    logging:
      level: INFO
      format: structured       # structured | pretty
      console: true
      output: ~/.dorchestra/logs/dorchestra-{date}.log
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from dorchestra.events import EventSink, FanoutEventSink, JsonlEventSink, LoggingEventSink
from dorchestra.state_store import (
    FileStateStore,
    InMemoryStateStore,
    SqliteStateStore,
    StateStore,
)

STATE_BACKENDS = ("memory", "file", "sqlite")
LOG_FORMATS = ("structured", "pretty")


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_dorchestra_home() -> Path:
    """Get the dorchestra home directory ($DORCHESTRA_HOME or ~/.dorchestra)."""
    return Path(os.environ.get("DORCHESTRA_HOME", "~/.dorchestra")).expanduser()


def _path(value: Any) -> Optional[Path]:
    if value in (None, ""):
        return None
    return Path(str(value)).expanduser()


class DorchestraConfig:
    """Complete dorchestra configuration."""

    def __init__(self, data: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None):
        data = data or {}
        self.config_path = config_path
        home = get_dorchestra_home()

        state = data.get("state", {}) or {}
        self.state_backend = state.get("backend", "sqlite")
        self.state_path = _path(state.get("path")) or home / "state.db"

        gateway = data.get("gateway", {}) or {}
        self.call_timeout_seconds = gateway.get("call_timeout_seconds")

        bridge = data.get("bridge", {}) or {}
        self.default_namespace = bridge.get("default_namespace", "default")
        self.max_retries = bridge.get("max_retries", 3)
        self.backoff_base_seconds = bridge.get("backoff_base_seconds", 1.0)
        self.backoff_cap_seconds = bridge.get("backoff_cap_seconds", 300.0)
        self.bridge_workers = bridge.get("workers", 8)
        self.batch_size = bridge.get("batch_size", 10)
        self.dead_letter_path = _path(bridge.get("dead_letter_path")) or home / "dead_letters.jsonl"

        events = data.get("events", {}) or {}
        self.event_log_path = _path(events.get("path")) or home / "events.jsonl"
        self.bigquery_dataset = events.get("bigquery_dataset")
        self.bigquery_table = events.get("bigquery_table", "event_log")

        # Logging
        self.logging = data.get("logging", {}) or {}

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path with date interpolation (None disables the file log)."""
        log_output = self.logging.get("output")
        if not log_output:
            return None
        log_output = str(log_output).replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output).expanduser()

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return bool(self.logging.get("console", True))

    def validate(self) -> None:
        """
        Validate entire configuration.

        Raises:
            ConfigError: On the first invalid value
        """
        if self.state_backend not in STATE_BACKENDS:
            raise ConfigError(
                f"state.backend must be one of {STATE_BACKENDS}, got {self.state_backend!r}"
            )
        if self.call_timeout_seconds is not None:
            if not isinstance(self.call_timeout_seconds, (int, float)) or self.call_timeout_seconds <= 0:
                raise ConfigError("gateway.call_timeout_seconds must be a positive number")
        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            raise ConfigError("bridge.max_retries must be an integer >= 0")
        if not isinstance(self.backoff_base_seconds, (int, float)) or self.backoff_base_seconds < 0:
            raise ConfigError("bridge.backoff_base_seconds must be >= 0")
        if not isinstance(self.backoff_cap_seconds, (int, float)) or self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ConfigError("bridge.backoff_cap_seconds must be >= backoff_base_seconds")
        if not isinstance(self.bridge_workers, int) or self.bridge_workers < 1:
            raise ConfigError("bridge.workers must be an integer >= 1")
        if not isinstance(self.batch_size, int) or self.batch_size < 1:
            raise ConfigError("bridge.batch_size must be an integer >= 1")
        if not self.default_namespace or not isinstance(self.default_namespace, str):
            raise ConfigError("bridge.default_namespace must be a non-empty string")
        if self.get_log_format() not in LOG_FORMATS:
            raise ConfigError(f"logging.format must be one of {LOG_FORMATS}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the config.yaml layout."""
        return {
            "state": {"backend": self.state_backend, "path": str(self.state_path)},
            "gateway": {"call_timeout_seconds": self.call_timeout_seconds},
            "bridge": {
                "default_namespace": self.default_namespace,
                "max_retries": self.max_retries,
                "backoff_base_seconds": self.backoff_base_seconds,
                "backoff_cap_seconds": self.backoff_cap_seconds,
                "workers": self.bridge_workers,
                "batch_size": self.batch_size,
                "dead_letter_path": str(self.dead_letter_path),
            },
            "events": {
                "path": str(self.event_log_path),
                "bigquery_dataset": self.bigquery_dataset,
                "bigquery_table": self.bigquery_table,
            },
            "logging": dict(self.logging),
        }

    def __repr__(self) -> str:
        return (
            f"DorchestraConfig(state_backend={self.state_backend}, "
            f"max_retries={self.max_retries}, workers={self.bridge_workers})"
        )


def load_config(config_path: Optional[Path] = None) -> DorchestraConfig:
    """
    Load configuration from a YAML file.

    A missing default config file yields the built-in defaults; a missing
    explicitly requested file is an error.

    Args:
        config_path: Path to config file. Defaults to $DORCHESTRA_HOME/config.yaml

    Returns:
        Validated DorchestraConfig instance

    Raises:
        ConfigError: If config is invalid or an explicit path is missing
    """
    explicit = config_path is not None
    if config_path is None:
        config_path = get_dorchestra_home() / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Configuration file not found: {config_path}")
        config = DorchestraConfig()
        config.validate()
        return config

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {config_path}")

    config = DorchestraConfig(data, config_path=config_path)
    config.validate()
    return config


def build_store(config: DorchestraConfig) -> StateStore:
    """Construct the configured StateStore backend."""
    if config.state_backend == "memory":
        return InMemoryStateStore()
    if config.state_backend == "file":
        return FileStateStore(config.state_path)
    return SqliteStateStore(config.state_path)


def build_event_sink(config: DorchestraConfig) -> EventSink:
    """
    Construct the configured event sinks.

    Events are always logged and appended to event_log_path; with
    events.bigquery_dataset set they are also written to BigQuery.
    """
    sinks: list[EventSink] = [LoggingEventSink(), JsonlEventSink(config.event_log_path)]
    if config.bigquery_dataset:
        from google.cloud import bigquery
        from dorchestra.stack_clients.event_client import BigQueryEventSink

        sinks.append(BigQueryEventSink(
            bigquery.Client(),
            dataset=config.bigquery_dataset,
            table=config.bigquery_table,
        ))
    return FanoutEventSink(sinks)
