"""
Task queue and dead-letter boundaries used by the QueueBridge.

TaskQueue is the delivery side: receive() hands out visible messages,
ack()/ack_all() remove them, retry() schedules a re-delivery after a delay.
DeadLetterSink receives messages that exhausted their retry budget or were
never deliverable.

Implementations:
- InMemoryTaskQueue: delayed re-delivery driven by an injectable clock
- InMemoryDeadLetterSink / JsonlDeadLetterSink
"""

import heapq
import itertools
import json
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from dorchestra.schemas import TaskMessage


class TaskQueue(ABC):
    """Abstract base class for task queues."""

    @abstractmethod
    def receive(self, max_messages: int) -> list[TaskMessage]:
        """
        Take up to max_messages currently visible messages.

        Received messages are in flight until acked or retried.
        """
        pass

    @abstractmethod
    def ack(self, message: TaskMessage) -> None:
        """Remove an in-flight message permanently."""
        pass

    def ack_all(self, messages: Iterable[TaskMessage]) -> None:
        """Acknowledge a whole batch at once (default: one ack per message)."""
        for message in messages:
            self.ack(message)

    @abstractmethod
    def retry(self, message: TaskMessage, delay: float) -> None:
        """
        Schedule a re-delivery.

        Args:
            message: The message to deliver again (delivery_attempt already
                     incremented by the caller)
            delay: Seconds before the message becomes visible
        """
        pass

    def next_visible_in(self) -> Optional[float]:
        """Seconds until the next delayed message becomes visible (None if none)."""
        return None


class InMemoryTaskQueue(TaskQueue):
    """
    In-memory task queue with delayed re-delivery.

    Args:
        messages: Initial messages (visible immediately)
        clock: Time source in seconds (defaults to time.monotonic)
    """

    def __init__(
        self,
        messages: Optional[Iterable[TaskMessage]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._counter = itertools.count()
        self._pending: list[tuple[float, int, TaskMessage]] = []
        self._in_flight: dict[str, TaskMessage] = {}
        self.acked: list[TaskMessage] = []
        self.retries: list[tuple[TaskMessage, float]] = []
        self.ack_all_calls = 0
        for message in messages or []:
            self.put(message)

    def put(self, message: TaskMessage, delay: float = 0.0) -> None:
        """Enqueue a message, visible after delay seconds."""
        with self._lock:
            heapq.heappush(
                self._pending,
                (self._clock() + delay, next(self._counter), message),
            )

    def receive(self, max_messages: int) -> list[TaskMessage]:
        now = self._clock()
        batch: list[TaskMessage] = []
        with self._lock:
            while self._pending and len(batch) < max_messages and self._pending[0][0] <= now:
                _, _, message = heapq.heappop(self._pending)
                self._in_flight[message.message_id] = message
                batch.append(message)
        return batch

    def ack(self, message: TaskMessage) -> None:
        with self._lock:
            self._in_flight.pop(message.message_id, None)
            self.acked.append(message)

    def ack_all(self, messages: Iterable[TaskMessage]) -> None:
        messages = list(messages)
        with self._lock:
            for message in messages:
                self._in_flight.pop(message.message_id, None)
                self.acked.append(message)
            self.ack_all_calls += 1

    def retry(self, message: TaskMessage, delay: float) -> None:
        with self._lock:
            self._in_flight.pop(message.message_id, None)
            self.retries.append((message, delay))
        self.put(message, delay)

    def next_visible_in(self) -> Optional[float]:
        with self._lock:
            if not self._pending:
                return None
            return max(0.0, self._pending[0][0] - self._clock())

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._pending and not self._in_flight


class DeadLetterSink(ABC):
    """Abstract base class for dead-letter destinations."""

    @abstractmethod
    def deposit(self, message: TaskMessage, last_error: dict[str, Any]) -> None:
        """
        Store an undeliverable message with its last error.

        Args:
            message: The message as last delivered
            last_error: Error description (type, message, retryable)
        """
        pass


class InMemoryDeadLetterSink(DeadLetterSink):
    """Collects dead letters in a list (for testing)."""

    def __init__(self):
        self.deposits: list[tuple[TaskMessage, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def deposit(self, message: TaskMessage, last_error: dict[str, Any]) -> None:
        with self._lock:
            self.deposits.append((message, last_error))

    @property
    def messages(self) -> list[TaskMessage]:
        with self._lock:
            return [m for m, _ in self.deposits]


class JsonlDeadLetterSink(DeadLetterSink):
    """
    Appends dead letters to a JSONL file.

    Each line: {"message": {...}, "last_error": {...}, "deposited_at": "..."}
    """

    def __init__(self, path: Path | str):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def deposit(self, message: TaskMessage, last_error: dict[str, Any]) -> None:
        record = {
            "message": message.to_dict(),
            "last_error": last_error,
            "deposited_at": datetime.now(timezone.utc).isoformat(),
        }
        line = json.dumps(record, default=str)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a") as f:
                f.write(line + "\n")

    def read_all(self) -> list[dict[str, Any]]:
        """Read back every dead letter."""
        if not self._path.exists():
            return []
        with open(self._path) as f:
            return [json.loads(line) for line in f if line.strip()]


def load_messages(path: Path | str) -> list[TaskMessage]:
    """
    Load TaskMessages from a JSONL file (one message object per line) or a
    JSON file holding a list of message objects.

    Raises:
        ValueError: If the file is not valid JSON or a record is not a message
        object
    """
    path = Path(path)
    with open(path) as f:
        if path.suffix.lower() == ".json":
            records = json.load(f)
        else:
            records = [json.loads(line) for line in f if line.strip()]
    if not isinstance(records, list):
        raise ValueError(f"Expected a list of messages in {path}")
    messages = []
    for index, record in enumerate(records, start=1):
        if not isinstance(record, dict):
            raise ValueError(f"Message {index} in {path} is not an object: {record!r}")
        try:
            messages.append(TaskMessage.from_dict(record))
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Message {index} in {path} is invalid: {e}") from e
    return messages
