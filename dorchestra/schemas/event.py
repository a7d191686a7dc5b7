"""
PipelineEvent schema - records published when a pipeline reaches a
terminal status.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

PIPELINE_COMPLETED = "pipeline.completed"
PIPELINE_FAILED = "pipeline.failed"


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PipelineEvent:
    """
    An outbound event record.

    Attributes:
        type: "pipeline.completed" or "pipeline.failed"
        identity: String form of the orchestrator's UnitIdentity
        result: Step outputs keyed by step id (completed pipelines)
        error: Failing step and error description (failed pipelines)
        timestamp: When the event was created
    """
    type: str
    identity: str
    result: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if self.type not in (PIPELINE_COMPLETED, PIPELINE_FAILED):
            raise ValueError(f"Unknown pipeline event type: {self.type}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        data: dict[str, Any] = {
            "type": self.type,
            "identity": self.identity,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data
