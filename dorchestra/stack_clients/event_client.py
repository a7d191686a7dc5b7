"""
Event client for writing pipeline events to a BigQuery event_log table.

Each PipelineEvent becomes one event envelope row:
- event_id: Random UUID
- event_type: "pipeline.completed" | "pipeline.failed"
- source_system: Always "dorchestra"
- correlation_id: Orchestrator identity
- status: "success" | "failed"
- created_at: Event timestamp
- error_message: Failing step error (failed pipelines)
- payload: JSON-encoded result or error detail

Configuration via environment variables:
- EVENTS_BQ_DATASET: BigQuery dataset name
- EVENT_LOG_TABLE: Table name (default: event_log)

Usage:
    from google.cloud import bigquery
    from dorchestra.stack_clients.event_client import BigQueryEventSink

    sink = BigQueryEventSink(bigquery.Client())
    gateway = UnitGateway(store, unit_types, event_sink=sink)
"""

import json
import logging
import os
import uuid
from typing import Any, Dict, Optional

from dorchestra.events import EventSink
from dorchestra.schemas import PipelineEvent, PIPELINE_COMPLETED

logger = logging.getLogger(__name__)

SOURCE_SYSTEM = "dorchestra"


def _get_table_ref(table_name: Optional[str] = None, dataset: Optional[str] = None) -> str:
    """
    Build "{dataset}.{table}" from arguments or environment.

    Raises:
        RuntimeError: If no dataset is configured
    """
    dataset = dataset or os.environ.get("EVENTS_BQ_DATASET")
    if not dataset:
        raise RuntimeError("EVENTS_BQ_DATASET is not set")
    table_name = table_name or os.environ.get("EVENT_LOG_TABLE", "event_log")
    return f"{dataset}.{table_name}"


def build_envelope(event: PipelineEvent) -> Dict[str, Any]:
    """
    Build the event_log row for a pipeline event.

    Args:
        event: The PipelineEvent

    Returns:
        Row dictionary ready for insert_rows_json
    """
    success = event.type == PIPELINE_COMPLETED
    envelope: Dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "event_type": event.type,
        "source_system": SOURCE_SYSTEM,
        "created_at": event.timestamp.isoformat(),
        "status": "success" if success else "failed",
        "correlation_id": event.identity,
    }

    # Add optional fields only if they have values
    if event.error is not None:
        envelope["error_message"] = str(event.error.get("error", ""))
        envelope["payload"] = json.dumps(event.error)
    elif event.result is not None:
        envelope["payload"] = json.dumps(event.result)

    return envelope


class BigQueryEventSink(EventSink):
    """
    Event sink writing to BigQuery via an injected client.

    Args:
        bq_client: google.cloud.bigquery.Client instance
        dataset: Dataset name (defaults to EVENTS_BQ_DATASET)
        table: Table name (defaults to EVENT_LOG_TABLE or "event_log")
    """

    def __init__(self, bq_client, dataset: Optional[str] = None, table: Optional[str] = None):
        self._client = bq_client
        self._dataset = dataset
        self._table = table

    def publish(self, event: PipelineEvent) -> None:
        """
        Insert the event envelope.

        Raises:
            RuntimeError: If the insert reports errors or no dataset is configured
        """
        table_ref = _get_table_ref(self._table, self._dataset)
        envelope = build_envelope(event)
        errors = self._client.insert_rows_json(table_ref, [envelope])

        if errors:
            raise RuntimeError(f"{table_ref} insert failed: {errors}")
        logger.debug(f"Logged {event.type} for {event.identity} to {table_ref}")
