"""
Event sinks for pipeline events.

The core only needs a fire-and-forget publish(event) capability. Sinks:
- InMemoryEventSink: collects events (tests)
- LoggingEventSink: writes events to the dorchestra logger
- JsonlEventSink: appends one JSON object per line to a file
- BigQueryEventSink: see dorchestra.stack_clients.event_client

publish_safely() is the only way the core publishes: sink failures are
logged and never reach the caller.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from dorchestra.schemas import PipelineEvent

logger = logging.getLogger(__name__)


class EventSink(ABC):
    """Abstract base class for event sinks."""

    @abstractmethod
    def publish(self, event: PipelineEvent) -> None:
        """
        Publish an event.

        Args:
            event: The PipelineEvent to publish

        Raises:
            Exception: Implementations may raise; callers use publish_safely()
        """
        pass


class InMemoryEventSink(EventSink):
    """Collects published events in a list (for testing)."""

    def __init__(self):
        self.events: list[PipelineEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: PipelineEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> list[PipelineEvent]:
        with self._lock:
            return [e for e in self.events if e.type == event_type]


class LoggingEventSink(EventSink):
    """Writes events to a logger at INFO level."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    def publish(self, event: PipelineEvent) -> None:
        self._log.info(
            f"Event {event.type} for {event.identity}",
            extra={"identity": str(event.identity), "event": event.type, "metadata": event.to_dict()},
        )


class JsonlEventSink(EventSink):
    """Appends events to a JSONL file."""

    def __init__(self, path: Path | str):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def publish(self, event: PipelineEvent) -> None:
        line = json.dumps(event.to_dict())
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a") as f:
                f.write(line + "\n")

    def read_all(self) -> list[dict]:
        """Read back every published event."""
        if not self._path.exists():
            return []
        with open(self._path) as f:
            return [json.loads(line) for line in f if line.strip()]


class FanoutEventSink(EventSink):
    """Publishes each event to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: list[EventSink]):
        self._sinks = list(sinks)

    def publish(self, event: PipelineEvent) -> None:
        for sink in self._sinks:
            publish_safely(sink, event)


def publish_safely(sink: EventSink | None, event: PipelineEvent) -> bool:
    """
    Publish an event, best-effort.

    Args:
        sink: Event sink (None disables publication)
        event: The event to publish

    Returns:
        True if the sink accepted the event
    """
    if sink is None:
        return False
    try:
        sink.publish(event)
        return True
    except Exception as e:
        logger.error(
            f"Event sink {type(sink).__name__} failed to publish {event.type} "
            f"for {event.identity}: {e}",
            exc_info=True,
        )
        return False
