"""
Pipeline schemas - specs, persisted orchestrator state, and results.

PipelineSpec is an ordered list of PipelineSteps; execution order is
declaration order. PipelineState is the persisted state of a
PipelineOrchestrator unit and follows the transitions

    pending -> processing -> {completed, failed}

Terminal states are absorbing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class PipelineStatus(str, Enum):
    """Status of a pipeline orchestrator."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.COMPLETED, PipelineStatus.FAILED)


_TRANSITIONS = {
    PipelineStatus.PENDING: {PipelineStatus.PROCESSING},
    PipelineStatus.PROCESSING: {PipelineStatus.COMPLETED, PipelineStatus.FAILED},
    PipelineStatus.COMPLETED: set(),
    PipelineStatus.FAILED: set(),
}


def can_transition(current: PipelineStatus, target: PipelineStatus) -> bool:
    """Check whether current -> target is a legal status transition."""
    return target in _TRANSITIONS[current]


@dataclass(frozen=True)
class PipelineStep:
    """
    A single step in a pipeline.

    Attributes:
        target: Unit namespace (role) that serves the step
        operation: Operation to invoke on the target unit
        args: Step-specific arguments; may contain @run.* references
        step_id: Identifier of the step (defaults to "{target}.{operation}")
        key: Logical name of the target unit (defaults to the pipeline's
             own logical name)
    """
    target: str
    operation: str
    args: dict[str, Any] = field(default_factory=dict)
    step_id: Optional[str] = None
    key: Optional[str] = None

    def __post_init__(self):
        if not self.target or not isinstance(self.target, str):
            raise ValueError("PipelineStep.target must be a non-empty string")
        if not self.operation or not isinstance(self.operation, str):
            raise ValueError("PipelineStep.operation must be a non-empty string")
        if not isinstance(self.args, dict):
            raise ValueError("PipelineStep.args must be a dict")
        if self.step_id is None:
            object.__setattr__(self, "step_id", f"{self.target}.{self.operation}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "step_id": self.step_id,
            "target": self.target,
            "operation": self.operation,
            "args": self.args,
        }
        if self.key is not None:
            result["key"] = self.key
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineStep":
        """Deserialize from dictionary (accepts "op" as alias for "operation")."""
        return cls(
            target=data["target"],
            operation=data.get("operation", data.get("op")),
            args=data.get("args", {}),
            step_id=data.get("step_id"),
            key=data.get("key"),
        )


@dataclass(frozen=True)
class PipelineSpec:
    """
    An ordered sequence of pipeline steps.

    Step ids must be unique so that results can be keyed and referenced.
    """
    steps: tuple[PipelineStep, ...]

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.steps:
            raise ValueError("PipelineSpec must have at least one step")
        seen: set[str] = set()
        for step in self.steps:
            if step.step_id == "input":
                raise ValueError("\"input\" is reserved and cannot be used as a step_id")
            if step.step_id in seen:
                raise ValueError(f"Duplicate step_id in PipelineSpec: {step.step_id}")
            seen.add(step.step_id)

    @property
    def step_ids(self) -> list[str]:
        return [s.step_id for s in self.steps]

    def to_dict(self) -> dict[str, Any]:
        return {"steps": [s.to_dict() for s in self.steps]}

    @classmethod
    def from_dict(cls, data: Any) -> "PipelineSpec":
        """Deserialize from {"steps": [...]} or a bare list of steps."""
        steps = data.get("steps", []) if isinstance(data, dict) else data
        if not isinstance(steps, list):
            raise ValueError("PipelineSpec steps must be a list")
        return cls(steps=tuple(PipelineStep.from_dict(s) for s in steps))


@dataclass(frozen=True)
class StepRecord:
    """A completed step: spec, result and completion time."""
    step: PipelineStep
    result: Any
    completed_at: datetime = field(default_factory=_utcnow)

    @property
    def step_id(self) -> str:
        return self.step.step_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.step_id,
            "spec": self.step.to_dict(),
            "result": self.result,
            "completed_at": self.completed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepRecord":
        return cls(
            step=PipelineStep.from_dict(data["spec"]),
            result=data.get("result"),
            completed_at=datetime.fromisoformat(data["completed_at"]),
        )


@dataclass(frozen=True)
class StepError:
    """A failed step: spec, error description and error type."""
    step: PipelineStep
    error: str
    error_type: str = "Exception"
    failed_at: datetime = field(default_factory=_utcnow)

    @property
    def step_id(self) -> str:
        return self.step.step_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.step_id,
            "spec": self.step.to_dict(),
            "error": self.error,
            "error_type": self.error_type,
            "failed_at": self.failed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepError":
        return cls(
            step=PipelineStep.from_dict(data["spec"]),
            error=data["error"],
            error_type=data.get("error_type", "Exception"),
            failed_at=datetime.fromisoformat(data["failed_at"]),
        )


@dataclass
class PipelineState:
    """
    Persisted state of a PipelineOrchestrator unit.

    Attributes:
        status: Current status
        completed: Ordered log of completed steps
        errors: Ordered log of step errors
        input: The pipeline input, recorded when processing starts
        started_at: When processing started
        finished_at: When a terminal status was reached
    """
    status: PipelineStatus = PipelineStatus.PENDING
    completed: list[StepRecord] = field(default_factory=list)
    errors: list[StepError] = field(default_factory=list)
    input: dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def transition(self, target: PipelineStatus) -> None:
        """
        Move to a new status.

        Raises:
            ValueError: If the transition is not allowed
        """
        if not can_transition(self.status, target):
            raise ValueError(
                f"Illegal pipeline transition: {self.status.value} -> {target.value}"
            )
        self.status = target
        if target == PipelineStatus.PROCESSING:
            self.started_at = _utcnow()
        elif target.is_terminal:
            self.finished_at = _utcnow()

    def results(self) -> dict[str, Any]:
        """Step outputs keyed by step id."""
        return {r.step_id: r.result for r in self.completed}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "status": self.status.value,
            "completed": [r.to_dict() for r in self.completed],
            "errors": [e.to_dict() for e in self.errors],
            "input": self.input,
        }
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.finished_at is not None:
            result["finished_at"] = self.finished_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineState":
        """Deserialize from dictionary."""
        return cls(
            status=PipelineStatus(data.get("status", "pending")),
            completed=[StepRecord.from_dict(r) for r in data.get("completed", [])],
            errors=[StepError.from_dict(e) for e in data.get("errors", [])],
            input=data.get("input", {}),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            finished_at=datetime.fromisoformat(data["finished_at"]) if data.get("finished_at") else None,
        )


@dataclass(frozen=True)
class PipelineResult:
    """
    Outcome of execute_pipeline.

    On success, `results` holds every step's output keyed by step id. On
    failure, it holds the outputs of the steps that completed and `failed_step`
    / `error` describe the first failing step.
    """
    identity: str
    status: PipelineStatus
    results: dict[str, Any] = field(default_factory=dict)
    completed: tuple[str, ...] = ()
    failed_step: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == PipelineStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "identity": self.identity,
            "status": self.status.value,
            "results": self.results,
            "completed": list(self.completed),
        }
        if self.failed_step is not None:
            result["failed_step"] = self.failed_step
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_state(cls, identity: str, state: PipelineState) -> "PipelineResult":
        """Build the result view of a persisted PipelineState."""
        first_error = state.errors[0] if state.errors else None
        return cls(
            identity=identity,
            status=state.status,
            results=state.results(),
            completed=tuple(r.step_id for r in state.completed),
            failed_step=first_error.step_id if first_error else None,
            error=first_error.error if first_error else None,
        )
