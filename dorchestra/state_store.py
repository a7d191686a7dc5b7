"""
StateStore - Persist execution unit state.

The StateStore manages one state blob per UnitIdentity, guarded by a
monotonically increasing revision:
- load(identity) returns the latest StoredState, or None
- save(identity, data, expected_revision) writes a new revision only if the
  stored revision still equals expected_revision (0 = must not exist yet),
  otherwise raises ConflictError

The revision check is what detects two processes that both believe they own
an identity. Stores never interpret the state blob.

Storage backends:
- In-memory (for testing)
- File-based (for development)
- SQLite (compare-and-swap safe across processes)
"""

import json
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from dorchestra.errors import ConflictError
from dorchestra.registry import UnitIdentity


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StoredState:
    """
    A persisted state blob.

    Attributes:
        data: Structured state keyed by field name
        revision: Revision counter (1 after the first save)
        updated_at: When this revision was written
    """
    data: dict[str, Any]
    revision: int
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "data": self.data,
            "revision": self.revision,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoredState":
        """Deserialize from dictionary."""
        return cls(
            data=data.get("data", {}),
            revision=data["revision"],
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


def _copy_blob(data: dict[str, Any]) -> dict[str, Any]:
    # JSON round-trip: stores only ever hold plain data
    return json.loads(json.dumps(data))


class StateStore(ABC):
    """
    Abstract base class for unit state storage.

    Implementations must be safe for concurrent use by different identities.
    Calls for a single identity are already serialized by the gateway.
    """

    @abstractmethod
    def load(self, identity: UnitIdentity) -> Optional[StoredState]:
        """
        Load the latest state for an identity.

        Args:
            identity: The unit identity

        Returns:
            The StoredState if one was ever saved, None otherwise
        """
        pass

    @abstractmethod
    def save(self, identity: UnitIdentity, data: dict[str, Any], expected_revision: int) -> int:
        """
        Save a new revision of an identity's state.

        Args:
            identity: The unit identity
            data: The full state blob
            expected_revision: Revision the caller loaded (0 if none)

        Returns:
            The new revision (expected_revision + 1)

        Raises:
            ConflictError: If the stored revision differs from expected_revision
        """
        pass

    @abstractmethod
    def list_identities(self) -> list[str]:
        """
        List stored identities in their string form.

        Returns:
            Sorted list of "{namespace}:{digest}" strings
        """
        pass

    def close(self) -> None:
        """Release any held resources."""
        pass


class InMemoryStateStore(StateStore):
    """
    In-memory implementation of StateStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._states: dict[str, StoredState] = {}
        self._lock = threading.Lock()
        self.save_count = 0

    def load(self, identity: UnitIdentity) -> Optional[StoredState]:
        with self._lock:
            stored = self._states.get(str(identity))
        if stored is None:
            return None
        return StoredState(_copy_blob(stored.data), stored.revision, stored.updated_at)

    def save(self, identity: UnitIdentity, data: dict[str, Any], expected_revision: int) -> int:
        key = str(identity)
        blob = _copy_blob(data)
        with self._lock:
            current = self._states.get(key)
            actual = current.revision if current else 0
            if actual != expected_revision:
                raise ConflictError(key, expected_revision, actual)
            revision = actual + 1
            self._states[key] = StoredState(blob, revision)
            self.save_count += 1
        return revision

    def list_identities(self) -> list[str]:
        with self._lock:
            return sorted(self._states.keys())

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._states.clear()
            self.save_count = 0


class FileStateStore(StateStore):
    """
    File-based implementation of StateStore for development.

    Stores one JSON file per identity:
        store_dir/
            {namespace}/
                {digest}.json

    Writes go to a temporary file and are moved into place with os.replace.
    The revision check is serialized by a process-local lock only; use
    SqliteStateStore when several processes share a store.
    """

    def __init__(self, store_dir: Path | str):
        self._store_dir = Path(store_dir)
        self._store_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, identity: UnitIdentity) -> Path:
        return self._store_dir / identity.namespace / f"{identity.digest}.json"

    def _read(self, path: Path) -> Optional[StoredState]:
        if not path.exists():
            return None
        with open(path) as f:
            return StoredState.from_dict(json.load(f))

    def load(self, identity: UnitIdentity) -> Optional[StoredState]:
        return self._read(self._path(identity))

    def save(self, identity: UnitIdentity, data: dict[str, Any], expected_revision: int) -> int:
        path = self._path(identity)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            current = self._read(path)
            actual = current.revision if current else 0
            if actual != expected_revision:
                raise ConflictError(str(identity), expected_revision, actual)
            stored = StoredState(_copy_blob(data), actual + 1)

            fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(stored.to_dict(), f, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        return stored.revision

    def list_identities(self) -> list[str]:
        return sorted(
            f"{p.parent.name}:{p.stem}" for p in self._store_dir.glob("*/*.json")
        )


class SqliteStateStore(StateStore):
    """
    SQLite implementation of StateStore.

    A single table keyed by identity. Saves are compare-and-swap updates
    (UPDATE ... WHERE revision = ?), so the revision check holds across
    processes sharing the database file.
    """

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS unit_state (
            identity TEXT PRIMARY KEY,
            namespace TEXT NOT NULL,
            revision INTEGER NOT NULL,
            data TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """

    def __init__(self, db_path: Path | str):
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.execute(self._SCHEMA)

    def load(self, identity: UnitIdentity) -> Optional[StoredState]:
        with self._lock:
            row = self._conn.execute(
                "SELECT revision, data, updated_at FROM unit_state WHERE identity = ?",
                (str(identity),),
            ).fetchone()
        if row is None:
            return None
        return StoredState(
            data=json.loads(row["data"]),
            revision=row["revision"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def save(self, identity: UnitIdentity, data: dict[str, Any], expected_revision: int) -> int:
        key = str(identity)
        payload = json.dumps(data, sort_keys=True)
        now = _utcnow().isoformat()
        revision = expected_revision + 1

        with self._lock:
            if expected_revision == 0:
                cursor = self._conn.execute(
                    "INSERT OR IGNORE INTO unit_state (identity, namespace, revision, data, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (key, identity.namespace, revision, payload, now),
                )
            else:
                cursor = self._conn.execute(
                    "UPDATE unit_state SET revision = ?, data = ?, updated_at = ? "
                    "WHERE identity = ? AND revision = ?",
                    (revision, payload, now, key, expected_revision),
                )
            if cursor.rowcount != 1:
                row = self._conn.execute(
                    "SELECT revision FROM unit_state WHERE identity = ?", (key,)
                ).fetchone()
                actual = row["revision"] if row else 0
                raise ConflictError(key, expected_revision, actual)
        return revision

    def list_identities(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute("SELECT identity FROM unit_state ORDER BY identity").fetchall()
        return [row["identity"] for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
