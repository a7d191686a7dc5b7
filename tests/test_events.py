"""Tests for event sinks and the BigQuery event client."""

import json
import logging
from unittest.mock import MagicMock

import pytest

from dorchestra.events import (
    FanoutEventSink,
    InMemoryEventSink,
    JsonlEventSink,
    LoggingEventSink,
    publish_safely,
)
from dorchestra.schemas import PIPELINE_COMPLETED, PIPELINE_FAILED, PipelineEvent
from dorchestra.stack_clients.event_client import BigQueryEventSink, build_envelope


@pytest.fixture
def completed_event():
    return PipelineEvent(
        type=PIPELINE_COMPLETED,
        identity="pipeline:abc",
        result={"scorer.score": {"score": 10}},
    )


@pytest.fixture
def failed_event():
    return PipelineEvent(
        type=PIPELINE_FAILED,
        identity="pipeline:abc",
        error={"step": "builder.build", "type": "HandlerError", "error": "quota exceeded"},
    )


@pytest.fixture
def mock_bq_client():
    """Mock BigQuery client."""
    client = MagicMock()
    client.insert_rows_json.return_value = []  # No errors
    return client


@pytest.fixture
def env_vars(monkeypatch):
    """Set required environment variables."""
    monkeypatch.setenv("EVENTS_BQ_DATASET", "test_dataset")
    monkeypatch.setenv("EVENT_LOG_TABLE", "event_log")


class TestPipelineEvent:
    """PipelineEvent schema."""

    def test_unknown_type(self):
        """PipelineEvent rejects unknown event types."""
        with pytest.raises(ValueError):
            PipelineEvent(type="pipeline.started", identity="pipeline:abc")

    def test_to_dict(self, completed_event):
        """Events serialize with type, identity, timestamp and payload."""
        data = completed_event.to_dict()
        assert data["type"] == "pipeline.completed"
        assert data["result"] == {"scorer.score": {"score": 10}}
        assert "error" not in data
        assert "timestamp" in data


class TestSinks:
    """Local sinks."""

    def test_in_memory(self, completed_event, failed_event):
        """InMemoryEventSink keeps events and filters by type."""
        sink = InMemoryEventSink()
        sink.publish(completed_event)
        sink.publish(failed_event)
        assert sink.of_type(PIPELINE_FAILED) == [failed_event]
        assert len(sink.events) == 2

    def test_jsonl(self, tmp_path, completed_event):
        """JsonlEventSink appends one JSON object per event."""
        sink = JsonlEventSink(tmp_path / "out" / "events.jsonl")
        sink.publish(completed_event)
        sink.publish(completed_event)
        records = sink.read_all()
        assert len(records) == 2
        assert records[0]["identity"] == "pipeline:abc"

    def test_jsonl_read_missing(self, tmp_path):
        assert JsonlEventSink(tmp_path / "none.jsonl").read_all() == []

    def test_logging(self, caplog, completed_event):
        """LoggingEventSink logs events with their identity attached."""
        with caplog.at_level(logging.INFO, logger="dorchestra.events"):
            LoggingEventSink().publish(completed_event)
        assert "pipeline.completed" in caplog.text
        assert caplog.records[-1].identity == "pipeline:abc"

    def test_fanout_isolates_failures(self, completed_event):
        """A failing sink does not stop the others in a fan-out."""
        broken = MagicMock()
        broken.publish.side_effect = RuntimeError("down")
        healthy = InMemoryEventSink()
        FanoutEventSink([broken, healthy]).publish(completed_event)
        assert healthy.events == [completed_event]


class TestPublishSafely:
    """publish_safely never raises."""

    def test_success(self, completed_event):
        """publish_safely delivers to the sink."""
        assert publish_safely(InMemoryEventSink(), completed_event) is True

    def test_no_sink(self, completed_event):
        """publish_safely ignores a missing sink."""
        assert publish_safely(None, completed_event) is False

    def test_failure_is_logged(self, caplog, completed_event):
        """Sink failures are logged and swallowed."""
        sink = MagicMock()
        sink.publish.side_effect = RuntimeError("down")
        assert publish_safely(sink, completed_event) is False
        assert "failed to publish" in caplog.text


class TestBigQueryEventSink:
    """BigQuery event envelope writes."""

    def test_completed_envelope(self, completed_event):
        """Completed events become event_log rows with status ok."""
        envelope = build_envelope(completed_event)
        assert envelope["event_type"] == "pipeline.completed"
        assert envelope["source_system"] == "dorchestra"
        assert envelope["status"] == "success"
        assert envelope["correlation_id"] == "pipeline:abc"
        assert json.loads(envelope["payload"]) == {"scorer.score": {"score": 10}}
        assert "error_message" not in envelope

    def test_failed_envelope(self, failed_event):
        """Failed events carry the error message in the row."""
        envelope = build_envelope(failed_event)
        assert envelope["status"] == "failed"
        assert envelope["error_message"] == "quota exceeded"
        assert json.loads(envelope["payload"])["step"] == "builder.build"

    def test_publish(self, mock_bq_client, env_vars, completed_event):
        """BigQueryEventSink inserts one row into the configured table."""
        BigQueryEventSink(mock_bq_client).publish(completed_event)

        mock_bq_client.insert_rows_json.assert_called_once()
        args = mock_bq_client.insert_rows_json.call_args
        assert args[0][0] == "test_dataset.event_log"
        assert len(args[0][1]) == 1
        assert args[0][1][0]["event_type"] == "pipeline.completed"

    def test_explicit_table(self, mock_bq_client, completed_event):
        """A fully qualified table name is used as given."""
        BigQueryEventSink(mock_bq_client, dataset="ds", table="events").publish(completed_event)
        assert mock_bq_client.insert_rows_json.call_args[0][0] == "ds.events"

    def test_insert_errors_raise(self, mock_bq_client, env_vars, completed_event):
        """Row insert errors raise so publish_safely can log them."""
        mock_bq_client.insert_rows_json.return_value = [{"index": 0, "errors": ["bad row"]}]
        with pytest.raises(RuntimeError, match="insert failed"):
            BigQueryEventSink(mock_bq_client).publish(completed_event)

    def test_missing_dataset(self, mock_bq_client, monkeypatch, completed_event):
        """A dataset is required."""
        monkeypatch.delenv("EVENTS_BQ_DATASET", raising=False)
        with pytest.raises(RuntimeError, match="EVENTS_BQ_DATASET"):
            BigQueryEventSink(mock_bq_client).publish(completed_event)
