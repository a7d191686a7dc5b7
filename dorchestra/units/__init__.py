"""
Execution units.

This package provides:
- ExecutionUnit: Base class for stateful, single-flight units
- operation: Decorator declaring a unit operation and its state access
- StateView / CallContext: What a handler receives for one call
- UnitTypeRegistry: Namespace -> unit class mapping used by the gateway
"""

from dorchestra.units.base import (
    ALL_FIELDS,
    CallContext,
    ExecutionUnit,
    OperationSpec,
    StateView,
    operation,
)
from dorchestra.units.registry import UnitTypeRegistry

__all__ = [
    "ALL_FIELDS",
    "CallContext",
    "ExecutionUnit",
    "OperationSpec",
    "StateView",
    "operation",
    "UnitTypeRegistry",
]
