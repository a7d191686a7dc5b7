"""
dorchestra.schemas - Data structures shared across the core.

PipelineSpec -> PipelineState -> PipelineResult -> PipelineEvent
TaskMessage -> MessageOutcome -> BatchReport

Lifecycle:
1. PipelineSpec: Ordered steps naming a target unit role and an operation
2. PipelineState: Persisted state of an orchestrator unit (status + step logs)
3. PipelineResult: What execute_pipeline hands back to its caller
4. PipelineEvent: Published to the event sink on a terminal status
5. TaskMessage: Inbound queue message consumed by the QueueBridge
6. MessageOutcome / BatchReport: Per-message disposition of a batch
"""

from .pipeline import (
    PipelineStatus,
    PipelineStep,
    PipelineSpec,
    PipelineState,
    PipelineResult,
    StepRecord,
    StepError,
    can_transition,
)
from .message import (
    TaskMessage,
    Disposition,
    MessageOutcome,
    BatchReport,
)
from .event import (
    PipelineEvent,
    PIPELINE_COMPLETED,
    PIPELINE_FAILED,
)

__all__ = [
    # Pipeline
    "PipelineStatus",
    "PipelineStep",
    "PipelineSpec",
    "PipelineState",
    "PipelineResult",
    "StepRecord",
    "StepError",
    "can_transition",
    # Queue
    "TaskMessage",
    "Disposition",
    "MessageOutcome",
    "BatchReport",
    # Events
    "PipelineEvent",
    "PIPELINE_COMPLETED",
    "PIPELINE_FAILED",
]
