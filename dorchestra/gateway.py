"""
Gateway - Location-transparent calls to execution units.

The UnitGateway implements:
- Activation: exactly one resident ExecutionUnit per identity, created on
  first use (state loaded lazily from the StateStore)
- Single-flight: every identity owns a single-worker FIFO mailbox, so calls
  to one identity run one at a time in arrival order while different
  identities run in parallel
- Marshaling: args and results cross the boundary as JSON-compatible data
- Deadlines: a call that outlives its timeout fails with CallTimeoutError;
  the handler is only signalled (cooperative cancellation)
- Re-entrancy guard: a handler calling back into an identity already on its
  call chain fails with ReentrantCallError instead of deadlocking

Call flow:
1. UnitHandle.call(operation, args) marshals args and builds a CallContext
   (nested calls inherit the caller's chain and deadline)
2. The call is queued on the identity's mailbox
3. The mailbox worker runs ExecutionUnit.invoke(), which marshals the result
   before committing
4. The caller waits on the future up to the deadline

Mailboxes are retired once they are idle and their unit is unloaded (after
evict() or a failed commit); the next call activates a fresh one.

Idempotency is not provided here; callers pass an idempotency_key and units
with a dedupe window record results per key.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Optional

from dorchestra.errors import (
    CallTimeoutError,
    InvalidArgumentError,
    ReentrantCallError,
)
from dorchestra.registry import UnitIdentity, UnitRegistry
from dorchestra.state_store import StateStore
from dorchestra.units.base import CallContext, ExecutionUnit, to_plain_data
from dorchestra.units.registry import UnitTypeRegistry

logger = logging.getLogger(__name__)

# Call chain and deadline of the unit call running on the current thread
_local = threading.local()


def marshal_args(args: Any) -> dict[str, Any]:
    """
    Copy call arguments across the call boundary.

    Raises:
        InvalidArgumentError: If args are not a JSON-compatible dict
    """
    if args is None:
        return {}
    if not isinstance(args, dict):
        raise InvalidArgumentError(f"Call arguments must be a dict, got {type(args).__name__}")
    try:
        return to_plain_data(args)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(f"Call arguments are not serializable: {e}") from e


class _Mailbox:
    """The resident unit for one identity plus its single-worker queue."""

    def __init__(self, unit: ExecutionUnit):
        self.unit = unit
        # Submitted tasks not yet finished; guarded by the gateway lock
        self.pending = 0
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"unit-{unit.identity.short}",
        )

    def submit(self, fn, *args) -> Future:
        return self._executor.submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class UnitHandle:
    """
    Reference to a unit returned by UnitGateway.get_handle().

    Holding a handle does not activate the unit; the first call does.
    """

    def __init__(self, gateway: "UnitGateway", identity: UnitIdentity):
        self._gateway = gateway
        self._identity = identity

    @property
    def identity(self) -> UnitIdentity:
        return self._identity

    def call(
        self,
        operation: str,
        args: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """
        Invoke an operation on the unit and wait for the result.

        Args:
            operation: Operation name
            args: Operation arguments (JSON-compatible dict)
            timeout: Seconds to wait (defaults to the gateway's call_timeout)
            idempotency_key: Key for unit-side de-duplication

        Returns:
            The operation result

        Raises:
            InvalidArgumentError: If args are malformed
            UnknownOperationError: If the unit has no such operation
            HandlerError: If the handler failed
            CallTimeoutError: If the deadline passed
            ConcurrentMutationError: If another owner mutated the identity
            StorageError: If the store failed to load or save the state
            ReentrantCallError: If the call would re-enter a busy identity
        """
        return self._gateway.call(
            self._identity, operation, args,
            timeout=timeout, idempotency_key=idempotency_key,
        )

    def __repr__(self) -> str:
        return f"UnitHandle({self._identity.short})"


class UnitGateway:
    """
    Location-transparent call path to execution units.

    Usage:
        gateway = UnitGateway(
            store=SqliteStateStore("state.db"),
            unit_types=UnitTypeRegistry.of(ScorerUnit, PipelineOrchestrator),
            call_timeout=30.0,
        )
        identity = UnitRegistry("scorer").resolve("wf_42")
        result = gateway.get_handle(identity).call("score", {"x": 1})
    """

    def __init__(
        self,
        store: StateStore,
        unit_types: UnitTypeRegistry,
        registry: Optional[UnitRegistry] = None,
        call_timeout: Optional[float] = None,
        event_sink: Any = None,
    ):
        """
        Initialize the gateway.

        Args:
            store: StateStore shared by all units
            unit_types: Namespace -> unit class registry
            registry: Registry handed to handlers for nested calls
            call_timeout: Default per-call timeout in seconds (None = wait forever)
            event_sink: Sink handed to handlers for event publication
        """
        self._store = store
        self._unit_types = unit_types
        self._registry = registry or UnitRegistry()
        self._call_timeout = call_timeout
        self._event_sink = event_sink
        self._mailboxes: dict[UnitIdentity, _Mailbox] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def registry(self) -> UnitRegistry:
        return self._registry

    @property
    def unit_types(self) -> UnitTypeRegistry:
        return self._unit_types

    def get_handle(self, identity: UnitIdentity) -> UnitHandle:
        """
        Get a handle for an identity.

        Raises:
            UnknownNamespaceError: If no unit class serves the identity's namespace
        """
        self._unit_types.get(identity.namespace)
        return UnitHandle(self, identity)

    def _submit(self, identity: UnitIdentity, fn, *args, activate: bool = True) -> Optional[Future]:
        """
        Queue fn(unit, *args) on the identity's mailbox.

        Returns None when activate is False and the identity has no mailbox.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("UnitGateway is shut down")
            mailbox = self._mailboxes.get(identity)
            if mailbox is None:
                if not activate:
                    return None
                unit = self._unit_types.create(identity, self._store)
                mailbox = _Mailbox(unit)
                self._mailboxes[identity] = mailbox
                logger.debug(f"Activated {identity.short} ({type(unit).__name__})")
            mailbox.pending += 1
            future = mailbox.submit(fn, mailbox.unit, *args)
        future.add_done_callback(lambda _: self._settle(identity, mailbox))
        return future

    def _settle(self, identity: UnitIdentity, mailbox: _Mailbox) -> None:
        # Runs once per finished task, before the worker takes the next one
        with self._lock:
            mailbox.pending -= 1
            retire = (
                mailbox.pending == 0
                and not mailbox.unit.loaded
                and self._mailboxes.get(identity) is mailbox
            )
            if retire:
                del self._mailboxes[identity]
        if retire:
            mailbox.shutdown(wait=False)
            logger.debug(f"Retired mailbox of {identity.short}")

    def _effective_timeout(self, timeout: Optional[float]) -> Optional[float]:
        timeout = self._call_timeout if timeout is None else timeout
        parent_deadline = getattr(_local, "deadline", None)
        if parent_deadline is not None:
            remaining = max(0.0, parent_deadline - time.monotonic())
            timeout = remaining if timeout is None else min(timeout, remaining)
        return timeout

    def call(
        self,
        identity: UnitIdentity,
        operation: str,
        args: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """Invoke an operation on the unit for identity. See UnitHandle.call()."""
        chain: tuple[str, ...] = getattr(_local, "chain", ())
        if str(identity) in chain:
            raise ReentrantCallError(
                f"Call {operation} on {identity.short} would re-enter a unit "
                f"already on the call chain"
            )

        marshaled = marshal_args(args)
        timeout = self._effective_timeout(timeout)
        deadline = time.monotonic() + timeout if timeout is not None else None

        ctx = CallContext(
            identity=identity,
            operation=operation,
            idempotency_key=idempotency_key,
            deadline=deadline,
            chain=chain + (str(identity),),
            gateway=self,
            registry=self._registry,
            event_sink=self._event_sink,
        )

        future = self._submit(identity, self._run, ctx, marshaled)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            ctx.cancel()
            logger.warning(
                f"Call {operation} on {identity.short} timed out after {timeout}s",
                extra={"identity": str(identity), "operation": operation},
            )
            raise CallTimeoutError(str(identity), operation, timeout) from None

    @staticmethod
    def _run(unit: ExecutionUnit, ctx: CallContext, args: dict[str, Any]) -> Any:
        if ctx.is_cancelled:
            # Caller already gave up while the call was queued
            logger.debug(f"Skipping cancelled call {ctx.operation} on {ctx.identity.short}")
            raise CallTimeoutError(str(ctx.identity), ctx.operation, 0.0)

        _local.chain = ctx.chain
        _local.deadline = ctx.deadline
        try:
            return unit.invoke(ctx.operation, args, ctx)
        finally:
            _local.chain = ()
            _local.deadline = None

    def evict(self, identity: UnitIdentity) -> bool:
        """
        Drop a unit's in-memory state; it reloads from storage on its next call.

        Runs through the identity's mailbox, so it waits for queued calls. The
        idle mailbox is then retired along with its worker thread.

        Returns:
            True if the unit was resident
        """
        future = self._submit(identity, self._unload, activate=False)
        if future is None:
            return False
        was_loaded = future.result()
        logger.debug(f"Evicted {identity.short}")
        return was_loaded

    @staticmethod
    def _unload(unit: ExecutionUnit) -> bool:
        was_loaded = unit.loaded
        unit.unload()
        return was_loaded

    def evict_all(self) -> int:
        """Evict every resident unit. Returns the number that were loaded."""
        with self._lock:
            identities = list(self._mailboxes.keys())
        return sum(1 for identity in identities if self.evict(identity))

    def resident_count(self) -> int:
        """Number of units with state loaded in memory."""
        with self._lock:
            mailboxes = list(self._mailboxes.values())
        return sum(1 for m in mailboxes if m.unit.loaded)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting calls and stop every mailbox worker."""
        with self._lock:
            self._closed = True
            mailboxes = list(self._mailboxes.values())
            self._mailboxes.clear()
        for mailbox in mailboxes:
            mailbox.shutdown(wait=wait)

    def __enter__(self) -> "UnitGateway":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
