"""
Queue schemas - inbound task messages and their dispositions.

A TaskMessage is created by an external producer and disposed of exactly
once per delivery attempt by the QueueBridge: acknowledged, re-queued with
a delay, or moved to the dead-letter sink.
"""

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class Disposition(str, Enum):
    """What the bridge did with a delivery attempt."""
    ACK = "ack"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class TaskMessage:
    """
    An inbound unit of work.

    Attributes:
        destination: "<namespace>/<logical name>" or a bare logical name
        operation: Operation to invoke on the destination unit
        payload: Call arguments
        delivery_attempt: Number of previous deliveries (0 on first delivery)
        last_error: Description of the last failure, if any
        message_id: Producer-assigned id; doubles as the idempotency key
    """
    destination: Any
    operation: Any
    payload: Any = field(default_factory=dict)
    delivery_attempt: int = 0
    last_error: Optional[dict[str, Any]] = None
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def next_attempt(self, error: dict[str, Any]) -> "TaskMessage":
        """Copy of this message for re-delivery, with the failure recorded."""
        return replace(self, delivery_attempt=self.delivery_attempt + 1, last_error=error)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "message_id": self.message_id,
            "destination": self.destination,
            "operation": self.operation,
            "payload": self.payload,
            "delivery_attempt": self.delivery_attempt,
        }
        if self.last_error is not None:
            result["last_error"] = self.last_error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskMessage":
        """
        Deserialize from dictionary.

        Accepts both snake_case and the camelCase producer field names
        (destinationName, deliveryAttempt). Field contents are not validated
        here; the bridge validates on receipt so a bad message can still be
        dead-lettered.
        """
        kwargs: dict[str, Any] = {
            "destination": data.get("destination", data.get("destinationName")),
            "operation": data.get("operation"),
            "payload": data.get("payload", {}),
            "delivery_attempt": data.get("delivery_attempt", data.get("deliveryAttempt", 0)),
            "last_error": data.get("last_error"),
        }
        if data.get("message_id"):
            kwargs["message_id"] = data["message_id"]
        return cls(**kwargs)


@dataclass(frozen=True)
class MessageOutcome:
    """Disposition of one delivery attempt."""
    message: TaskMessage
    disposition: Disposition
    result: Any = None
    error: Optional[dict[str, Any]] = None
    retry_delay: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "message_id": self.message.message_id,
            "disposition": self.disposition.value,
            "delivery_attempt": self.message.delivery_attempt,
        }
        if self.error is not None:
            result["error"] = self.error
        if self.retry_delay is not None:
            result["retry_delay"] = self.retry_delay
        return result


@dataclass
class BatchReport:
    """Per-message outcomes of one processed batch, in input order."""
    outcomes: list[MessageOutcome] = field(default_factory=list)
    acked_together: bool = False

    def _count(self, disposition: Disposition) -> int:
        return sum(1 for o in self.outcomes if o.disposition == disposition)

    @property
    def acked(self) -> int:
        return self._count(Disposition.ACK)

    @property
    def retried(self) -> int:
        return self._count(Disposition.RETRY)

    @property
    def dead_lettered(self) -> int:
        return self._count(Disposition.DEAD_LETTER)

    def to_dict(self) -> dict[str, Any]:
        return {
            "acked": self.acked,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "acked_together": self.acked_together,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
