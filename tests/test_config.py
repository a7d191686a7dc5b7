import pytest
import yaml
from pathlib import Path
from unittest.mock import MagicMock, patch

from dorchestra.config import (
    ConfigError,
    DorchestraConfig,
    build_event_sink,
    build_store,
    get_dorchestra_home,
    load_config,
)
from dorchestra.events import FanoutEventSink
from dorchestra.state_store import FileStateStore, InMemoryStateStore, SqliteStateStore


def test_get_dorchestra_home_default(monkeypatch):
    """Home defaults to ~/.dorchestra."""
    monkeypatch.delenv("DORCHESTRA_HOME", raising=False)
    assert get_dorchestra_home() == Path("~/.dorchestra").expanduser()


def test_get_dorchestra_home_env_var(monkeypatch, tmp_path):
    """DORCHESTRA_HOME overrides the home directory."""
    monkeypatch.setenv("DORCHESTRA_HOME", str(tmp_path / "custom_home"))
    assert get_dorchestra_home() == tmp_path / "custom_home"


def test_load_config_missing_default_file_uses_defaults(monkeypatch, tmp_path):
    """A missing default config file yields the defaults."""
    monkeypatch.setenv("DORCHESTRA_HOME", str(tmp_path))
    cfg = load_config()
    assert cfg.config_path is None
    assert cfg.state_backend == "sqlite"
    assert cfg.state_path == tmp_path / "state.db"
    assert cfg.max_retries == 3
    assert cfg.backoff_base_seconds == 1.0
    assert cfg.backoff_cap_seconds == 300.0
    assert cfg.bridge_workers == 8
    assert cfg.batch_size == 10
    assert cfg.default_namespace == "default"
    assert cfg.call_timeout_seconds is None
    assert cfg.dead_letter_path == tmp_path / "dead_letters.jsonl"


def test_load_config_missing_explicit_file(tmp_path):
    """An explicit path that does not exist raises ConfigError."""
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "missing.yaml")


def test_load_config_valid(monkeypatch, tmp_path):
    """Values from YAML override the defaults."""
    monkeypatch.setenv("DORCHESTRA_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text(yaml.dump({
        "state": {"backend": "file", "path": str(tmp_path / "units")},
        "gateway": {"call_timeout_seconds": 30},
        "bridge": {"max_retries": 5, "workers": 2, "default_namespace": "scorer"},
        "logging": {"level": "debug", "format": "pretty", "console": False},
    }))

    cfg = load_config()
    assert cfg.config_path == tmp_path / "config.yaml"
    assert cfg.state_backend == "file"
    assert cfg.state_path == tmp_path / "units"
    assert cfg.call_timeout_seconds == 30
    assert cfg.max_retries == 5
    assert cfg.bridge_workers == 2
    assert cfg.default_namespace == "scorer"
    assert cfg.get_log_level() == "DEBUG"
    assert cfg.get_log_format() == "pretty"
    assert cfg.should_log_to_console() is False


def test_load_config_invalid_yaml(tmp_path):
    """Unparseable YAML raises ConfigError."""
    path = tmp_path / "config.yaml"
    path.write_text("state: [unclosed")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(path)


def test_load_config_not_a_mapping(tmp_path):
    """A YAML document that is not a mapping raises ConfigError."""
    path = tmp_path / "config.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(path)


@pytest.mark.parametrize("data", [
    {"state": {"backend": "postgres"}},
    {"gateway": {"call_timeout_seconds": 0}},
    {"bridge": {"max_retries": -1}},
    {"bridge": {"max_retries": "3"}},
    {"bridge": {"backoff_base_seconds": 10, "backoff_cap_seconds": 5}},
    {"bridge": {"workers": 0}},
    {"bridge": {"batch_size": 0}},
    {"bridge": {"default_namespace": ""}},
    {"logging": {"format": "xml"}},
])
def test_validate_rejects(data):
    """Out-of-range values are rejected."""
    with pytest.raises(ConfigError):
        DorchestraConfig(data).validate()


def test_log_file_path_date_interpolation():
    """{date} in logging.output is replaced with today's date."""
    cfg = DorchestraConfig({"logging": {"output": "/tmp/logs/dorchestra-{date}.log"}})
    path = cfg.get_log_file_path()
    assert path.parent == Path("/tmp/logs")
    assert "{date}" not in path.name


def test_log_file_path_disabled():
    """No logging.output means no log file."""
    assert DorchestraConfig().get_log_file_path() is None


def test_to_dict_round_trip(monkeypatch, tmp_path):
    """to_dict output loads back into an equal config."""
    monkeypatch.setenv("DORCHESTRA_HOME", str(tmp_path))
    cfg = DorchestraConfig({"bridge": {"max_retries": 7}})
    restored = DorchestraConfig(cfg.to_dict())
    assert restored.to_dict() == cfg.to_dict()
    assert restored.max_retries == 7


@pytest.mark.parametrize("backend,cls", [
    ("memory", InMemoryStateStore),
    ("file", FileStateStore),
    ("sqlite", SqliteStateStore),
])
def test_build_store(tmp_path, backend, cls):
    """build_store returns the configured backend."""
    path = tmp_path / ("state.db" if backend == "sqlite" else "state")
    store = build_store(DorchestraConfig({"state": {"backend": backend, "path": str(path)}}))
    try:
        assert isinstance(store, cls)
    finally:
        store.close()


def test_build_event_sink_without_bigquery(tmp_path):
    """Without a dataset, events go to the log and the JSONL file only."""
    sink = build_event_sink(DorchestraConfig({"events": {"path": str(tmp_path / "events.jsonl")}}))
    assert isinstance(sink, FanoutEventSink)
    assert len(sink._sinks) == 2


def test_build_event_sink_with_bigquery(tmp_path):
    """Setting events.bigquery_dataset adds the BigQuery sink."""
    cfg = DorchestraConfig({"events": {
        "path": str(tmp_path / "events.jsonl"),
        "bigquery_dataset": "events",
    }})
    with patch("google.cloud.bigquery.Client", return_value=MagicMock()) as client_cls:
        sink = build_event_sink(cfg)
    client_cls.assert_called_once()
    assert len(sink._sinks) == 3
