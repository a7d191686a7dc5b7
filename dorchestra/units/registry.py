"""
Unit Type Registry for mapping namespaces to execution unit classes.

The gateway asks the registry which class serves an identity's namespace
when it activates a unit for the first time.
"""

from typing import Optional, TYPE_CHECKING

from dorchestra.errors import UnknownNamespaceError
from dorchestra.registry import UnitIdentity
from dorchestra.units.base import ExecutionUnit

if TYPE_CHECKING:
    from dorchestra.state_store import StateStore


class UnitTypeRegistry:
    """
    Registry of unit classes by namespace.

    Usage:
        unit_types = UnitTypeRegistry()
        unit_types.register(ScorerUnit)                 # uses ScorerUnit.namespace
        unit_types.register(BuilderUnit, "builder-v2")  # explicit namespace

        unit = unit_types.create(identity, store)
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._classes: dict[str, type[ExecutionUnit]] = {}

    def register(self, unit_cls: type[ExecutionUnit], namespace: Optional[str] = None) -> None:
        """
        Register a unit class for a namespace.

        Args:
            unit_cls: ExecutionUnit subclass
            namespace: Namespace to serve (defaults to unit_cls.namespace)

        Raises:
            ValueError: If no namespace is given or known, or it is already taken
                        by another class
        """
        if not (isinstance(unit_cls, type) and issubclass(unit_cls, ExecutionUnit)):
            raise ValueError(f"Not an ExecutionUnit subclass: {unit_cls!r}")
        namespace = namespace or unit_cls.namespace
        if not namespace:
            raise ValueError(f"{unit_cls.__name__} has no namespace")
        existing = self._classes.get(namespace)
        if existing is not None and existing is not unit_cls:
            raise ValueError(
                f"Namespace '{namespace}' already served by {existing.__name__}"
            )
        self._classes[namespace] = unit_cls

    def get(self, namespace: str) -> type[ExecutionUnit]:
        """
        Get the unit class for a namespace.

        Raises:
            UnknownNamespaceError: If no class is registered for the namespace
        """
        if namespace not in self._classes:
            registered = sorted(self._classes.keys())
            raise UnknownNamespaceError(
                f"No unit registered for namespace: {namespace}. "
                f"Registered: {registered}"
            )
        return self._classes[namespace]

    def has(self, namespace: str) -> bool:
        return namespace in self._classes

    def list_namespaces(self) -> list[str]:
        return sorted(self._classes.keys())

    def create(self, identity: UnitIdentity, store: "StateStore") -> ExecutionUnit:
        """
        Instantiate the unit for an identity (state is loaded lazily).

        Raises:
            UnknownNamespaceError: If the identity's namespace is not registered
        """
        unit_cls = self.get(identity.namespace)
        return unit_cls(identity, store)

    @classmethod
    def of(cls, *unit_classes: type[ExecutionUnit]) -> "UnitTypeRegistry":
        """Create a registry with the given classes under their own namespaces."""
        registry = cls()
        for unit_cls in unit_classes:
            registry.register(unit_cls)
        return registry
