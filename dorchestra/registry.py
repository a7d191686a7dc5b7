"""
UnitRegistry - Derive stable unit identities from logical names.

The registry provides:
- Deterministic, content-addressed identities (SHA256) for logical names
- Namespacing, so the same logical name in two unit namespaces yields two
  distinct units
- Parsing identities back from their string form (for CLI / storage keys)

The registry never owns units and keeps no state; resolving a name is a
pure computation that gives the same answer in every process.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any

from dorchestra.errors import InvalidNameError


DEFAULT_NAMESPACE = "default"

# Separates namespace from name in the hashed material; cannot appear in
# either through normal use, so ("a", "b:c") and ("a:b", "c") never collide.
_SEPARATOR = "\x00"


@dataclass(frozen=True)
class UnitIdentity:
    """
    Opaque, stable token naming a single execution unit.

    Attributes:
        namespace: Unit namespace (selects the unit class)
        digest: SHA256 hex digest of namespace + logical name
        name: The logical name the identity was derived from (informational;
              not part of equality)
    """
    namespace: str
    digest: str
    name: str = field(default="", compare=False)

    def __str__(self) -> str:
        return f"{self.namespace}:{self.digest}"

    @property
    def short(self) -> str:
        """Abbreviated form for log lines."""
        return f"{self.namespace}:{self.digest[:12]}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {"namespace": self.namespace, "digest": self.digest, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UnitIdentity":
        """Deserialize from dictionary."""
        return cls(
            namespace=data["namespace"],
            digest=data["digest"],
            name=data.get("name", ""),
        )

    @classmethod
    def parse(cls, text: str) -> "UnitIdentity":
        """
        Parse the "{namespace}:{digest}" form produced by str().

        Raises:
            InvalidNameError: If text is not a well-formed identity
        """
        if not isinstance(text, str) or ":" not in text:
            raise InvalidNameError(f"Not a unit identity: {text!r}")
        namespace, digest = text.rsplit(":", 1)
        if not namespace or len(digest) != 64:
            raise InvalidNameError(f"Not a unit identity: {text!r}")
        try:
            int(digest, 16)
        except ValueError:
            raise InvalidNameError(f"Not a unit identity: {text!r}")
        return cls(namespace=namespace, digest=digest.lower())


def _check_name(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidNameError(f"{what} must be a non-empty string, got {value!r}")
    return value


def derive_identity(namespace: str, logical_name: str) -> UnitIdentity:
    """
    Derive the identity for a logical name within a namespace.

    Args:
        namespace: Unit namespace
        logical_name: Logical name (workflow id, task id, ...)

    Returns:
        The UnitIdentity; equal inputs always derive equal identities

    Raises:
        InvalidNameError: If namespace or logical_name is empty
    """
    _check_name(namespace, "namespace")
    _check_name(logical_name, "logical name")
    material = f"{namespace}{_SEPARATOR}{logical_name}".encode("utf-8")
    digest = hashlib.sha256(material).hexdigest()
    return UnitIdentity(namespace=namespace, digest=digest, name=logical_name)


class UnitRegistry:
    """
    Resolves logical names to unit identities for one namespace.

    Usage:
        registry = UnitRegistry("scorer")
        identity = registry.resolve("wf_42")

        # Other namespaces without a second registry
        identity = registry.resolve_in("builder", "wf_42")
    """

    def __init__(self, namespace: str = DEFAULT_NAMESPACE):
        """
        Initialize the registry.

        Args:
            namespace: Namespace used by resolve()
        """
        self._namespace = _check_name(namespace, "namespace")

    @property
    def namespace(self) -> str:
        """Get the namespace used by resolve()."""
        return self._namespace

    def resolve(self, logical_name: str) -> UnitIdentity:
        """
        Resolve a logical name in this registry's namespace.

        Raises:
            InvalidNameError: If logical_name is empty
        """
        return derive_identity(self._namespace, logical_name)

    def resolve_in(self, namespace: str, logical_name: str) -> UnitIdentity:
        """
        Resolve a logical name in an explicit namespace.

        Raises:
            InvalidNameError: If namespace or logical_name is empty
        """
        return derive_identity(namespace, logical_name)

    def __repr__(self) -> str:
        return f"UnitRegistry(namespace={self._namespace})"
