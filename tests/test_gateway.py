"""Tests for UnitGateway and UnitHandle.

Covers activation, single-flight ordering, marshaling, timeouts,
re-entrancy and eviction.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from dorchestra.errors import (
    CallTimeoutError,
    ConcurrentMutationError,
    HandlerError,
    InvalidArgumentError,
    ReentrantCallError,
    UnknownNamespaceError,
    UnknownOperationError,
)
from dorchestra.gateway import UnitGateway, marshal_args
from dorchestra.registry import derive_identity


@pytest.fixture
def counter_id():
    return derive_identity("counter", "wf_42")


def _wait_for_threads(limit, timeout=5.0):
    deadline = time.monotonic() + timeout
    while threading.active_count() > limit and time.monotonic() < deadline:
        time.sleep(0.01)
    return threading.active_count()


class TestCalls:
    """Basic call path."""

    def test_call_returns_result(self, gateway, counter_id):
        """A handle call returns the handler result."""
        handle = gateway.get_handle(counter_id)
        assert handle.call("increment") == {"count": 1}
        assert handle.call("increment", {"by": 2}) == {"count": 3}
        assert handle.identity == counter_id

    def test_state_persisted_per_call(self, gateway, store, counter_id):
        """Every mutating call is saved before it returns."""
        gateway.get_handle(counter_id).call("increment")
        assert store.load(counter_id).data == {"count": 1}
        gateway.get_handle(counter_id).call("increment")
        assert store.load(counter_id).data == {"count": 2}

    def test_handle_does_not_activate(self, gateway, counter_id):
        """Getting a handle does not load the unit."""
        gateway.get_handle(counter_id)
        assert gateway.resident_count() == 0

    def test_unknown_namespace(self, gateway):
        with pytest.raises(UnknownNamespaceError):
            gateway.get_handle(derive_identity("missing", "wf_42"))

    def test_unknown_operation(self, gateway, counter_id):
        with pytest.raises(UnknownOperationError):
            gateway.get_handle(counter_id).call("explode")

    def test_handler_error_propagates_with_cause(self, gateway, counter_id):
        """Handler faults reach the caller as HandlerError with the original cause."""
        with pytest.raises(HandlerError) as exc_info:
            gateway.get_handle(counter_id).call("increment_then_fail")
        assert isinstance(exc_info.value.cause, ValueError)

    def test_identities_are_isolated(self, gateway):
        """Two logical names never share state."""
        a = gateway.get_handle(derive_identity("counter", "a"))
        b = gateway.get_handle(derive_identity("counter", "b"))
        a.call("increment", {"by": 5})
        assert b.call("get") == {"count": 0}


class TestMarshaling:
    """Args and results cross the boundary as copies."""

    def test_args_are_copied(self, gateway):
        """Mutating the caller's payload after the call does not reach the unit."""
        handle = gateway.get_handle(derive_identity("recorder", "wf_42"))
        payload = {"items": [1, 2]}
        handle.call("record", payload)
        payload["items"].append(3)
        state = gateway.store.load(handle.identity).data
        assert state["seen"] == [{"items": [1, 2]}]

    def test_unserializable_args(self, gateway, counter_id):
        """Args that are not JSON-compatible are rejected before queueing."""
        with pytest.raises(InvalidArgumentError):
            gateway.get_handle(counter_id).call("increment", {"by": object()})

    def test_non_dict_args(self, gateway, counter_id):
        with pytest.raises(InvalidArgumentError):
            gateway.get_handle(counter_id).call("increment", [1, 2])

    def test_unserializable_result(self, gateway, counter_id):
        """A result that is not JSON-compatible fails the call."""
        with pytest.raises(HandlerError):
            gateway.get_handle(counter_id).call("bad_result")

    def test_unserializable_result_does_not_commit(self, gateway, store, counter_id):
        """Repeating a failing call never applies its writes."""
        handle = gateway.get_handle(counter_id)
        for _ in range(3):
            with pytest.raises(HandlerError):
                handle.call("increment_bad_result")
        assert store.load(counter_id) is None
        assert handle.call("get") == {"count": 0}

    def test_marshal_args_none(self):
        assert marshal_args(None) == {}


class TestSingleFlight:
    """Calls to one identity are serialized; different identities run in parallel."""

    def test_concurrent_increments_are_not_lost(self, gateway, counter_id):
        """Concurrent callers on one identity see every increment applied once."""
        handle = gateway.get_handle(counter_id)
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: handle.call("increment"), range(50)))
        assert handle.call("get") == {"count": 50}
        assert gateway.store.load(counter_id).revision == 50

    def test_fifo_order_from_one_caller(self, gateway):
        """Calls run in the order they arrive."""
        handle = gateway.get_handle(derive_identity("recorder", "wf_42"))
        results = []
        threads = []
        for i in range(5):
            t = threading.Thread(target=lambda i=i: results.append(handle.call("record", {"i": i})))
            threads.append(t)
            t.start()
            t.join()
        seen = gateway.store.load(handle.identity).data["seen"]
        assert [s["i"] for s in seen] == [0, 1, 2, 3, 4]

    def test_different_identities_run_in_parallel(self, gateway):
        """Slow calls on distinct identities overlap."""
        handles = [gateway.get_handle(derive_identity("counter", f"wf_{i}")) for i in range(4)]
        start = time.monotonic()
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda h: h.call("slow_increment", {"seconds": 0.3}), handles))
        assert time.monotonic() - start < 1.0


class TestTimeouts:
    """Deadlines and cooperative cancellation."""

    def test_call_timeout(self, gateway, counter_id):
        """A call past its deadline raises a retryable CallTimeoutError."""
        handle = gateway.get_handle(counter_id)
        with pytest.raises(CallTimeoutError) as exc_info:
            handle.call("slow_increment", {"seconds": 0.5}, timeout=0.05)
        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.retryable

    def test_handler_may_finish_after_timeout(self, gateway, counter_id):
        """The timed-out handler still completes and commits."""
        handle = gateway.get_handle(counter_id)
        with pytest.raises(CallTimeoutError):
            handle.call("slow_increment", {"seconds": 0.2}, timeout=0.05)
        # Next call queues behind the slow one and sees its commit
        assert handle.call("get") == {"count": 1}

    def test_gateway_default_timeout(self, store, unit_types, counter_id):
        """The gateway-level call_timeout applies when a call passes none."""
        gw = UnitGateway(store=store, unit_types=unit_types, call_timeout=0.05)
        try:
            with pytest.raises(CallTimeoutError):
                gw.get_handle(counter_id).call("slow_increment", {"seconds": 0.3})
        finally:
            gw.shutdown()


class TestReentrancy:
    """A handler calling back into its own identity fails fast."""

    def test_self_call(self, gateway, counter_id):
        """Re-entering the calling identity raises instead of deadlocking."""
        with pytest.raises(ReentrantCallError):
            gateway.get_handle(counter_id).call("call_self")

    def test_gateway_still_usable(self, gateway, counter_id):
        handle = gateway.get_handle(counter_id)
        with pytest.raises(ReentrantCallError):
            handle.call("call_self")
        assert handle.call("increment") == {"count": 1}


class TestEviction:
    """Eviction drops memory only; state reloads on the next call."""

    def test_evict_and_reload(self, gateway, counter_id):
        """An evicted unit reloads its committed state on the next call."""
        handle = gateway.get_handle(counter_id)
        handle.call("increment", {"by": 3})
        assert gateway.resident_count() == 1
        assert gateway.evict(counter_id) is True
        assert gateway.resident_count() == 0
        assert handle.call("get") == {"count": 3}

    def test_evict_unknown(self, gateway, counter_id):
        assert gateway.evict(counter_id) is False

    def test_evict_all(self, gateway):
        """evict_all unloads every resident unit."""
        for name in ("a", "b", "c"):
            gateway.get_handle(derive_identity("counter", name)).call("increment")
        assert gateway.evict_all() == 3
        assert gateway.resident_count() == 0

    def test_evicted_unit_sees_external_writes(self, gateway, store, counter_id):
        """A reloaded unit picks up writes made while it was evicted."""
        handle = gateway.get_handle(counter_id)
        handle.call("increment")
        gateway.evict(counter_id)
        store.save(counter_id, {"count": 41}, 1)
        assert handle.call("increment") == {"count": 42}

    def test_evict_all_releases_worker_threads(self, gateway):
        """Worker threads of evicted identities exit."""
        baseline = threading.active_count()
        for i in range(100):
            gateway.get_handle(derive_identity("counter", f"t{i}")).call("increment")
        gateway.evict_all()
        assert _wait_for_threads(baseline) <= baseline

    def test_calls_after_retirement_keep_order(self, gateway, counter_id):
        """A retired identity is reactivated and keeps serializing calls."""
        handle = gateway.get_handle(counter_id)
        handle.call("increment")
        gateway.evict(counter_id)
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: handle.call("increment"), range(20)))
        assert handle.call("get") == {"count": 21}
        assert gateway.store.load(counter_id).revision == 21

    def test_evict_waits_for_queued_calls(self, gateway, counter_id):
        """Eviction runs behind in-flight calls, which still commit."""
        handle = gateway.get_handle(counter_id)
        with ThreadPoolExecutor(max_workers=1) as pool:
            slow = pool.submit(handle.call, "slow_increment", {"seconds": 0.1})
            time.sleep(0.02)
            gateway.evict(counter_id)
            assert slow.result() == {"count": 1}
        assert gateway.store.load(counter_id).data == {"count": 1}


class TestConcurrentOwners:
    """Two gateways sharing a store detect each other through revisions."""

    def test_second_owner_conflicts(self, store, unit_types, counter_id):
        """The stale owner gets ConcurrentMutationError, then reloads and continues."""
        first = UnitGateway(store=store, unit_types=unit_types)
        second = UnitGateway(store=store, unit_types=unit_types)
        try:
            first.get_handle(counter_id).call("increment")
            second.get_handle(counter_id).call("get")
            first.get_handle(counter_id).call("increment")
            with pytest.raises(ConcurrentMutationError):
                second.get_handle(counter_id).call("increment")
            # The conflicting owner reloaded and can continue
            assert second.get_handle(counter_id).call("increment") == {"count": 3}
            assert store.load(counter_id).data == {"count": 3}
        finally:
            first.shutdown()
            second.shutdown()


def test_shutdown_rejects_new_calls(store, unit_types, counter_id):
    """Calls after shutdown() fail."""
    gw = UnitGateway(store=store, unit_types=unit_types)
    gw.shutdown()
    with pytest.raises(RuntimeError):
        gw.get_handle(counter_id).call("get")


def test_context_manager(store, unit_types, counter_id):
    with UnitGateway(store=store, unit_types=unit_types) as gw:
        assert gw.get_handle(counter_id).call("increment") == {"count": 1}
