import threading
import time

import pytest

from dorchestra.events import InMemoryEventSink
from dorchestra.gateway import UnitGateway
from dorchestra.pipeline import PipelineOrchestrator
from dorchestra.registry import UnitRegistry
from dorchestra.state_store import InMemoryStateStore
from dorchestra.units import ExecutionUnit, UnitTypeRegistry, operation


class CounterUnit(ExecutionUnit):
    """Test unit holding a single integer."""

    namespace = "counter"

    def default_state(self):
        return {"count": 0}

    @operation("increment", writes=("count",))
    def increment(self, state, args, ctx):
        count = state.get("count") + args.get("by", 1)
        state.set("count", count)
        return {"count": count}

    @operation("get", reads=("count",))
    def get(self, state, args, ctx):
        return {"count": state.get("count")}

    @operation("increment_then_fail", writes=("count",))
    def increment_then_fail(self, state, args, ctx):
        state.set("count", state.get("count") + 1)
        raise ValueError("boom")

    @operation("slow_increment", writes=("count",))
    def slow_increment(self, state, args, ctx):
        time.sleep(args.get("seconds", 0.05))
        count = state.get("count") + 1
        state.set("count", count)
        return {"count": count}

    @operation("peek_secret", reads=("count",))
    def peek_secret(self, state, args, ctx):
        return state.get("secret")

    @operation("set_value", writes=("value",), required_args=("value",))
    def set_value(self, state, args, ctx):
        state.set("value", args["value"])
        return {"value": args["value"]}

    @operation("bad_result")
    def bad_result(self, state, args, ctx):
        return {"when": object()}

    @operation("increment_bad_result", writes=("count",))
    def increment_bad_result(self, state, args, ctx):
        state.set("count", state.get("count") + 1)
        return {"tags": {"a"}}

    @operation("set_tags", writes=("tags",))
    def set_tags(self, state, args, ctx):
        state.set("tags", {"a", "b"})
        return {}

    @operation("call_self")
    def call_self(self, state, args, ctx):
        return ctx.gateway.get_handle(ctx.identity).call("get")


class DedupeCounterUnit(CounterUnit):
    """Counter that records results per idempotency key."""

    namespace = "dedupe_counter"
    dedupe_window = 3


class ScorerUnit(ExecutionUnit):
    """Pipeline step unit: scores its input."""

    namespace = "scorer"

    def default_state(self):
        return {"calls": 0}

    @operation("score", writes=("calls",))
    def score(self, state, args, ctx):
        state.set("calls", state.get("calls") + 1)
        return {"score": args.get("base", 10)}


class BuilderUnit(ExecutionUnit):
    """Pipeline step unit: fails with a quota error unless told otherwise."""

    namespace = "builder"

    def default_state(self):
        return {"built": []}

    @operation("build", writes=("built",))
    def build(self, state, args, ctx):
        if args.get("fail", True):
            raise RuntimeError("quota exceeded")
        built = state.get("built")
        built.append(args.get("score"))
        state.set("built", built)
        return {"built": args.get("score")}


class RecorderUnit(ExecutionUnit):
    """Records every call it receives."""

    namespace = "recorder"

    def default_state(self):
        return {"seen": []}

    @operation("record", writes=("seen",))
    def record(self, state, args, ctx):
        seen = state.get("seen")
        seen.append(args)
        state.set("seen", seen)
        return {"seen": len(seen)}


class FlakyUnit(ExecutionUnit):
    """Fails the first `failures` calls per logical unit, then succeeds."""

    namespace = "flaky"
    lock = threading.Lock()
    calls: dict = {}

    @operation("run", writes=("done",))
    def run(self, state, args, ctx):
        with FlakyUnit.lock:
            n = FlakyUnit.calls.get(str(self.identity), 0) + 1
            FlakyUnit.calls[str(self.identity)] = n
        if n <= args.get("failures", 0) or args.get("always_fail"):
            raise RuntimeError(f"transient failure #{n}")
        state.set("done", True)
        return {"attempts": n}

    @operation("reject")
    def reject(self, state, args, ctx):
        from dorchestra.errors import InvalidArgumentError
        raise InvalidArgumentError("payload rejected")


ALL_TEST_UNITS = (
    CounterUnit,
    DedupeCounterUnit,
    ScorerUnit,
    BuilderUnit,
    RecorderUnit,
    FlakyUnit,
    PipelineOrchestrator,
)


@pytest.fixture(autouse=True)
def reset_flaky_calls():
    FlakyUnit.calls.clear()
    yield
    FlakyUnit.calls.clear()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def unit_types():
    return UnitTypeRegistry.of(*ALL_TEST_UNITS)


@pytest.fixture
def event_sink():
    return InMemoryEventSink()


@pytest.fixture
def gateway(store, unit_types, event_sink):
    gw = UnitGateway(store=store, unit_types=unit_types, event_sink=event_sink)
    yield gw
    gw.shutdown()


@pytest.fixture
def registry():
    return UnitRegistry("counter")


class FakeClock:
    """Manually advanced clock for the in-memory task queue."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
