"""
Execution unit base class and the handler-facing state accessor.

An ExecutionUnit is a stateful, independently persisted actor for one
UnitIdentity. Subclasses declare their operations with @operation:

    class Counter(ExecutionUnit):
        namespace = "counter"

        def default_state(self):
            return {"count": 0}

        @operation("increment", writes=("count",))
        def increment(self, state, args, ctx):
            state.set("count", state.get("count") + args.get("by", 1))
            return {"count": state.get("count")}

Handlers never see the unit's state directly; they receive a StateView that
only exposes the declared fields and buffers every write. The unit commits the
buffered state in one save() after the handler returns, so a failing handler
leaves storage at the last committed revision (all-or-nothing per call).
CallContext.checkpoint() is the only way to commit in the middle of a call.
"""

import copy
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, TYPE_CHECKING

from dorchestra.errors import (
    ConcurrentMutationError,
    ConflictError,
    DorchestraError,
    HandlerError,
    InvalidArgumentError,
    StateAccessError,
    StorageError,
    UnknownOperationError,
)
from dorchestra.registry import UnitIdentity
from dorchestra.events import publish_safely
from dorchestra.schemas import PipelineEvent

if TYPE_CHECKING:
    from dorchestra.gateway import UnitGateway
    from dorchestra.registry import UnitRegistry
    from dorchestra.state_store import StateStore

logger = logging.getLogger(__name__)

# Wildcard for handlers that may touch any field
ALL_FIELDS = "*"

# Reserved state key for recorded idempotent results
_DEDUPE_KEY = "__idempotency__"


def to_plain_data(value: Any) -> Any:
    """
    Copy a value through JSON, the form in which args, results and state
    cross the unit boundary.

    Raises:
        TypeError, ValueError: If the value is not JSON-compatible
    """
    return json.loads(json.dumps(value))


@dataclass(frozen=True)
class OperationSpec:
    """
    Declared operation of a unit class.

    Attributes:
        name: Operation name used by callers
        handler: The unbound handler function
        reads: Fields the handler may read (writes are implicitly readable)
        writes: Fields the handler may write
        required_args: Argument keys that must be present
    """
    name: str
    handler: Callable[..., Any]
    reads: frozenset[str] = frozenset()
    writes: frozenset[str] = frozenset()
    required_args: tuple[str, ...] = ()

    @property
    def read_only(self) -> bool:
        return not self.writes


def _field_set(fields: Iterable[str] | str) -> frozenset[str]:
    if isinstance(fields, str):
        return frozenset([fields])
    return frozenset(fields)


def operation(
    name: str,
    *,
    reads: Iterable[str] | str = (),
    writes: Iterable[str] | str = (),
    required_args: Iterable[str] = (),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Register a method as a named unit operation.

    Only records the operation in the class's operation table; it does not
    wrap the function or persist anything.

    Args:
        name: Operation name
        reads: Fields the handler reads (ALL_FIELDS for any)
        writes: Fields the handler writes (ALL_FIELDS for any)
        required_args: Argument keys validated before the handler runs
    """
    def register(fn: Callable[..., Any]) -> Callable[..., Any]:
        fn.__unit_operation__ = OperationSpec(
            name=name,
            handler=fn,
            reads=_field_set(reads),
            writes=_field_set(writes),
            required_args=tuple(required_args),
        )
        return fn

    return register


class StateView:
    """
    Buffered, access-checked view of a unit's state for one call.

    Reads come from a private working copy; writes go to the same copy and
    are only persisted when the unit commits.
    """

    def __init__(self, working: dict[str, Any], reads: frozenset[str], writes: frozenset[str]):
        self._working = working
        self._writes = writes
        self._reads = reads | writes
        self._dirty = False

    def _check(self, key: str, allowed: frozenset[str], mode: str) -> None:
        if key == _DEDUPE_KEY:
            raise StateAccessError(f"State field '{key}' is reserved")
        if ALL_FIELDS not in allowed and key not in allowed:
            raise StateAccessError(
                f"Undeclared {mode} of state field '{key}' (declared: {sorted(allowed)})"
            )

    def get(self, key: str, default: Any = None) -> Any:
        """Read a field (a deep copy, so mutating it does not write)."""
        self._check(key, self._reads, "read")
        return copy.deepcopy(self._working.get(key, default))

    def set(self, key: str, value: Any) -> None:
        """Buffer a write of a field."""
        self._check(key, self._writes, "write")
        self._working[key] = copy.deepcopy(value)
        self._dirty = True

    def delete(self, key: str) -> None:
        """Buffer removal of a field."""
        self._check(key, self._writes, "write")
        if key in self._working:
            del self._working[key]
            self._dirty = True

    def snapshot(self) -> dict[str, Any]:
        """Copy of every readable field."""
        return {
            k: copy.deepcopy(v) for k, v in self._working.items()
            if k != _DEDUPE_KEY and (ALL_FIELDS in self._reads or k in self._reads)
        }

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _mark_clean(self) -> None:
        self._dirty = False


@dataclass
class CallContext:
    """
    Per-call context handed to handlers.

    Attributes:
        identity: Identity of the unit being called
        operation: Operation name
        idempotency_key: Caller-supplied idempotency key, if any
        deadline: time.monotonic() deadline, if the call has a timeout
        chain: Identities (string form) of the calls this one is nested in,
               including its own
        gateway: Gateway for nested calls to other units
        registry: Registry for resolving nested call targets
        event_sink: Sink for outbound events
    """
    identity: UnitIdentity
    operation: str
    idempotency_key: Optional[str] = None
    deadline: Optional[float] = None
    chain: tuple[str, ...] = ()
    gateway: Optional["UnitGateway"] = None
    registry: Optional["UnitRegistry"] = None
    event_sink: Any = None
    cancelled: threading.Event = field(default_factory=threading.Event)
    _checkpoint: Optional[Callable[[], int]] = field(default=None, repr=False)

    def cancel(self) -> None:
        """Signal the handler to stop at its next safe point."""
        self.cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (None if no deadline)."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        """
        Stop at a safe point if the caller gave up.

        Raises:
            HandlerError: If the call was cancelled
        """
        if self.cancelled.is_set():
            raise HandlerError(f"Call {self.operation} on {self.identity.short} was cancelled")

    def checkpoint(self) -> int:
        """
        Commit the buffered state now.

        Returns:
            The committed revision

        Raises:
            ConcurrentMutationError: If another owner saved first
        """
        if self._checkpoint is None:
            raise RuntimeError("checkpoint() is only available inside a unit call")
        return self._checkpoint()

    def publish(self, event: PipelineEvent) -> None:
        """Publish an event, best-effort."""
        if self.event_sink is None:
            return
        publish_safely(self.event_sink, event)


class ExecutionUnit:
    """
    Base class for stateful execution units.

    One instance per identity is resident at a time; the gateway guarantees
    that invoke() is never entered concurrently for the same instance.

    Class attributes:
        namespace: Namespace served by this unit class
        dedupe_window: Number of idempotency keys whose results are recorded
                       (0 disables dedupe)
    """

    namespace: str = ""
    dedupe_window: int = 0
    operations: dict[str, OperationSpec] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        ops: dict[str, OperationSpec] = {}
        for klass in reversed(cls.__mro__):
            for attr in vars(klass).values():
                spec = getattr(attr, "__unit_operation__", None)
                if spec is not None:
                    ops[spec.name] = spec
        cls.operations = ops

    def __init__(self, identity: UnitIdentity, store: "StateStore"):
        self.identity = identity
        self._store = store
        self._state: dict[str, Any] = {}
        self._revision = 0
        self._loaded = False

    def default_state(self) -> dict[str, Any]:
        """State of a unit that has never been saved."""
        return {}

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self) -> None:
        """Load persisted state, or initialize the declared default."""
        try:
            stored = self._store.load(self.identity)
        except Exception as e:
            raise StorageError(f"Failed to load {self.identity.short}: {e}", cause=e) from e
        if stored is None:
            self._state = self.default_state()
            self._revision = 0
        else:
            self._state = stored.data
            self._revision = stored.revision
        self._loaded = True
        logger.debug(f"Loaded {self.identity.short} at revision {self._revision}")

    def unload(self) -> None:
        """Drop in-memory state; the next call reloads from storage."""
        self._state = {}
        self._revision = 0
        self._loaded = False

    def _commit(self, working: dict[str, Any]) -> int:
        try:
            to_plain_data(working)
        except (TypeError, ValueError) as e:
            raise HandlerError(f"State of {self.identity.short} is not serializable: {e}", cause=e) from e
        try:
            revision = self._store.save(self.identity, working, self._revision)
        except ConflictError as e:
            self.unload()
            logger.warning(f"Concurrent mutation detected on {self.identity.short}: {e}")
            raise ConcurrentMutationError(
                f"{self.identity} was modified by another owner "
                f"(expected revision {e.expected}, found {e.actual})"
            ) from e
        except Exception as e:
            self.unload()
            logger.warning(f"Store failed to save {self.identity.short}: {e}")
            raise StorageError(f"Failed to save {self.identity.short}: {e}", cause=e) from e
        self._state = copy.deepcopy(working)
        self._revision = revision
        return revision

    def _validate_args(self, spec: OperationSpec, args: Any) -> dict[str, Any]:
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise InvalidArgumentError(
                f"Arguments for {spec.name} must be a dict, got {type(args).__name__}"
            )
        missing = [k for k in spec.required_args if k not in args]
        if missing:
            raise InvalidArgumentError(f"Missing required arguments for {spec.name}: {missing}")
        return args

    def _recorded_result(self, key: str) -> tuple[bool, Any]:
        for entry in self._state.get(_DEDUPE_KEY, []):
            if entry[0] == key:
                return True, copy.deepcopy(entry[1])
        return False, None

    def _record_result(self, working: dict[str, Any], key: str, result: Any) -> None:
        recorded = list(working.get(_DEDUPE_KEY, []))
        recorded.append([key, result])
        working[_DEDUPE_KEY] = recorded[-self.dedupe_window:]

    def invoke(self, operation_name: str, args: Any, ctx: CallContext) -> Any:
        """
        Run one operation to completion.

        Args:
            operation_name: The operation to run
            args: Operation arguments (a dict)
            ctx: Per-call context

        Returns:
            The handler's result

        Raises:
            UnknownOperationError: If the operation is not declared
            InvalidArgumentError: If args are malformed
            HandlerError: If the handler raised an untyped exception or returned
                          a result that is not JSON-compatible (nothing is
                          committed)
            ConcurrentMutationError: If the commit hit a revision conflict
            StorageError: If the store failed to load or save
        """
        spec = self.operations.get(operation_name)
        if spec is None:
            raise UnknownOperationError(self.identity.namespace, operation_name, list(self.operations))
        args = self._validate_args(spec, args)

        if not self._loaded:
            self.load()

        dedupe = bool(self.dedupe_window and ctx.idempotency_key)
        if dedupe:
            found, recorded = self._recorded_result(ctx.idempotency_key)
            if found:
                logger.info(
                    f"Duplicate call {operation_name} on {self.identity.short} "
                    f"(key={ctx.idempotency_key}); returning recorded result"
                )
                return recorded

        working = copy.deepcopy(self._state)
        view = StateView(working, spec.reads, spec.writes)

        def checkpoint() -> int:
            revision = self._commit(working)
            view._mark_clean()
            return revision

        ctx._checkpoint = checkpoint
        try:
            result = spec.handler(self, view, args, ctx)
        except DorchestraError:
            raise
        except Exception as e:
            raise HandlerError(
                f"{self.identity.namespace}.{operation_name} failed: {e}", cause=e
            ) from e
        finally:
            ctx._checkpoint = None

        try:
            result = to_plain_data(result)
        except (TypeError, ValueError) as e:
            raise HandlerError(
                f"Result of {operation_name} on {self.identity.short} is not serializable: {e}",
                cause=e,
            ) from e

        if dedupe and not spec.read_only:
            self._record_result(working, ctx.idempotency_key, result)
            self._commit(working)
        elif view.dirty:
            self._commit(working)
        return result
