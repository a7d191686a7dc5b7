"""Pipeline orchestrator - an execution unit that sequences calls to other units.

A PipelineOrchestrator is itself an ExecutionUnit (namespace "pipeline"). Its
persisted state is a PipelineState; its execute_pipeline operation runs a
PipelineSpec step by step:

1. status -> processing, checkpoint
2. for each step, in declaration order:
   a. stop if the caller cancelled
   b. resolve the step's target unit (namespace = step.target, logical
      name = step.key or the pipeline's own logical name)
   c. call the step operation with {**input, **resolved step args}; the
      idempotency key is "{pipeline identity}:{step_id}"
   d. success: append to the completed log, checkpoint
   e. failure: append to the error log, status -> failed, checkpoint,
      publish pipeline.failed, raise PipelineFailedError (fail-fast)
3. status -> completed, publish pipeline.completed, return every step's
   output keyed by step id

Step args can pass data between steps explicitly:
    @run.<step_id>.<path>  -> output of an earlier step
    @run.input.<path>      -> the pipeline input

Pipeline spec files (YAML or JSON):
    steps:
      - target: scorer
        operation: score
      - target: builder
        operation: build
        args:
          score: '@run.scorer.score.score'

A completed or failed orchestrator is terminal; running it again raises
PipelineTerminatedError. Retry a failed pipeline under a new logical name.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any

from dorchestra.errors import (
    InvalidArgumentError,
    PipelineFailedError,
    PipelineTerminatedError,
    describe_error,
)
from dorchestra.schemas import (
    PipelineEvent,
    PipelineResult,
    PipelineSpec,
    PipelineState,
    PipelineStatus,
    PipelineStep,
    StepError,
    StepRecord,
    PIPELINE_COMPLETED,
    PIPELINE_FAILED,
)
from dorchestra.units.base import CallContext, ExecutionUnit, StateView, operation

logger = logging.getLogger(__name__)

PIPELINE_NAMESPACE = "pipeline"

# Reference pattern for @run.* references
RUN_REF_PATTERN = re.compile(r"@run\.([a-zA-Z_][a-zA-Z0-9_.\-]*)")

# Fields of PipelineState persisted by the orchestrator
_STATE_FIELDS = ("status", "completed", "errors", "input", "started_at", "finished_at")


def resolve_run_refs(value: Any, outputs: dict[str, Any]) -> Any:
    """
    Resolve @run.* references in a value using pipeline input and step outputs.

    "@run.step_id.path.to.value" resolves to outputs["step_id"]["path"]["to"]["value"].
    Step ids may contain dots ("scorer.score"), so the longest step id that
    prefixes the reference wins.

    Args:
        value: The value containing potential @run.* references
        outputs: Mapping of "input" and step ids to their data

    Returns:
        The resolved value

    Raises:
        InvalidArgumentError: If a reference cannot be resolved
    """
    if isinstance(value, str):
        match = RUN_REF_PATTERN.fullmatch(value)
        if not match:
            return value
        path = match.group(1)

        root = None
        for candidate in sorted(outputs, key=len, reverse=True):
            if path == candidate or path.startswith(candidate + "."):
                root = candidate
                break
        if root is None:
            raise InvalidArgumentError(f"@run reference to unknown step: {value}")

        result = outputs[root]
        rest = path[len(root) + 1:]
        for part in rest.split(".") if rest else []:
            if isinstance(result, dict) and part in result:
                result = result[part]
            else:
                raise InvalidArgumentError(
                    f"@run reference path not found: {value} (missing '{part}')"
                )
        return result
    elif isinstance(value, dict):
        return {k: resolve_run_refs(v, outputs) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [resolve_run_refs(v, outputs) for v in value]
    else:
        return value


def load_pipeline_spec(path: Path | str) -> PipelineSpec:
    """
    Load a PipelineSpec from a YAML or JSON file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file format is unsupported or the spec is invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pipeline definition not found: {path}")

    suffix = path.suffix.lower()
    if suffix not in (".yaml", ".yml", ".json"):
        raise ValueError(f"Unsupported file format: {suffix}")

    import yaml
    with open(path) as f:
        try:
            data = json.load(f) if suffix == ".json" else yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Cannot parse {path}: {e}") from e
    try:
        return PipelineSpec.from_dict(data)
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Invalid step in {path}: {type(e).__name__}: {e}") from e


class PipelineOrchestrator(ExecutionUnit):
    """Execution unit that runs one PipelineSpec and records its progress."""

    namespace = PIPELINE_NAMESPACE

    def default_state(self) -> dict[str, Any]:
        return PipelineState().to_dict()

    @staticmethod
    def _read_state(state: StateView) -> PipelineState:
        return PipelineState.from_dict(state.snapshot())

    @staticmethod
    def _write_state(state: StateView, pipeline: PipelineState) -> None:
        data = pipeline.to_dict()
        for key in _STATE_FIELDS:
            if key in data:
                state.set(key, data[key])
            else:
                state.delete(key)

    def _save(self, state: StateView, pipeline: PipelineState, ctx: CallContext) -> None:
        self._write_state(state, pipeline)
        ctx.checkpoint()

    @operation("execute_pipeline", writes=_STATE_FIELDS, required_args=("spec",))
    def execute_pipeline(self, state: StateView, args: dict[str, Any], ctx: CallContext) -> dict[str, Any]:
        try:
            spec = PipelineSpec.from_dict(args["spec"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidArgumentError(f"Invalid pipeline spec: {e}") from e
        pipeline_input = args.get("input") or {}
        if not isinstance(pipeline_input, dict):
            raise InvalidArgumentError("Pipeline input must be a dict")

        pipeline = self._read_state(state)
        if pipeline.status.is_terminal:
            raise PipelineTerminatedError(
                f"Pipeline {self.identity.short} is already {pipeline.status.value}",
                result=PipelineResult.from_state(str(self.identity), pipeline).to_dict(),
            )
        if pipeline.status == PipelineStatus.PROCESSING:
            # A previous run was interrupted mid-flight (process died); the
            # completed log is kept and the run restarts from the first step
            # without a record.
            logger.warning(
                f"Pipeline {self.identity.short} found in processing state; "
                f"resuming after {len(pipeline.completed)} completed step(s)"
            )
        else:
            pipeline.input = pipeline_input
            pipeline.transition(PipelineStatus.PROCESSING)
            self._save(state, pipeline, ctx)

        logger.info(f"Pipeline {self.identity.short} processing {len(spec.steps)} step(s)")

        outputs: dict[str, Any] = {"input": pipeline.input}
        outputs.update(pipeline.results())
        done = set(outputs)

        for step in spec.steps:
            if step.step_id in done:
                continue
            try:
                ctx.raise_if_cancelled()
                result = self._run_step(step, pipeline.input, outputs, ctx)
            except Exception as e:
                return self._fail(state, pipeline, step, e, ctx)

            pipeline.completed.append(StepRecord(step=step, result=result))
            outputs[step.step_id] = result
            self._save(state, pipeline, ctx)
            logger.info(
                f"Pipeline {self.identity.short} step {step.step_id} completed",
                extra={"identity": str(self.identity), "step_id": step.step_id},
            )

        pipeline.transition(PipelineStatus.COMPLETED)
        self._write_state(state, pipeline)
        result = PipelineResult.from_state(str(self.identity), pipeline)
        ctx.checkpoint()
        ctx.publish(PipelineEvent(
            type=PIPELINE_COMPLETED,
            identity=str(self.identity),
            result=result.results,
        ))
        logger.info(f"Pipeline {self.identity.short} completed")
        return result.to_dict()

    def _run_step(
        self,
        step: PipelineStep,
        pipeline_input: dict[str, Any],
        outputs: dict[str, Any],
        ctx: CallContext,
    ) -> Any:
        step_args = resolve_run_refs(step.args, outputs)
        call_args = {**pipeline_input, **step_args}

        key = step.key or self.identity.name
        if not key:
            raise InvalidArgumentError(
                f"Step {step.step_id} has no key and the pipeline identity has no logical name"
            )
        target = ctx.registry.resolve_in(step.target, key)
        handle = ctx.gateway.get_handle(target)
        return handle.call(
            step.operation,
            call_args,
            idempotency_key=f"{self.identity}:{step.step_id}",
        )

    def _fail(
        self,
        state: StateView,
        pipeline: PipelineState,
        step: PipelineStep,
        exc: Exception,
        ctx: CallContext,
    ) -> dict[str, Any]:
        cause = exc.cause if getattr(exc, "cause", None) is not None else exc
        message = str(cause)
        pipeline.errors.append(StepError(step=step, error=message, error_type=type(exc).__name__))
        pipeline.transition(PipelineStatus.FAILED)
        self._save(state, pipeline, ctx)

        result = PipelineResult.from_state(str(self.identity), pipeline)
        ctx.publish(PipelineEvent(
            type=PIPELINE_FAILED,
            identity=str(self.identity),
            error={"step": step.step_id, **describe_error(exc), "error": message},
        ))
        logger.warning(
            f"Pipeline {self.identity.short} failed at step {step.step_id}: {message}",
            extra={"identity": str(self.identity), "step_id": step.step_id},
        )
        raise PipelineFailedError(
            f"Pipeline step {step.step_id} failed: {message}",
            result=result.to_dict(),
            cause=exc,
        ) from exc

    @operation("get_state", reads=_STATE_FIELDS)
    def get_state(self, state: StateView, args: dict[str, Any], ctx: CallContext) -> dict[str, Any]:
        return self._read_state(state).to_dict()


def run_pipeline(
    gateway,
    logical_name: str,
    spec: PipelineSpec,
    pipeline_input: dict[str, Any] | None = None,
    timeout: float | None = None,
) -> PipelineResult:
    """
    Run a pipeline under a logical name and return its result.

    Failures do not raise: a failed pipeline returns a PipelineResult with
    status FAILED and its partial progress. Errors outside step execution
    (bad spec, terminal orchestrator, timeouts) still raise.

    Args:
        gateway: UnitGateway with PipelineOrchestrator registered
        logical_name: Logical name of the pipeline run (one orchestrator per name)
        spec: The PipelineSpec
        pipeline_input: Input data for the first step
        timeout: Optional deadline for the whole pipeline

    Returns:
        PipelineResult
    """
    identity = gateway.registry.resolve_in(PIPELINE_NAMESPACE, logical_name)
    handle = gateway.get_handle(identity)
    try:
        data = handle.call(
            "execute_pipeline",
            {"spec": spec.to_dict(), "input": pipeline_input or {}},
            timeout=timeout,
        )
    except PipelineFailedError as e:
        data = e.result
    return PipelineResult(
        identity=data["identity"],
        status=PipelineStatus(data["status"]),
        results=data.get("results", {}),
        completed=tuple(data.get("completed", [])),
        failed_step=data.get("failed_step"),
        error=data.get("error"),
    )


__all__ = [
    "PIPELINE_NAMESPACE",
    "PipelineOrchestrator",
    "load_pipeline_spec",
    "resolve_run_refs",
    "run_pipeline",
]
