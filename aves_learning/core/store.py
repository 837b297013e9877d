"""
Pattern Store - the I/O boundary of the learning subsystem.

Default: SQLite (zero dependencies)
Optional: Redis (for multi-process deployments)
Testing: in-memory

Every backend offers the same narrow contract: store/retrieve/delete/list
of JSON blobs addressed by (namespace, key). The learner never knows which
backend it talks to.
"""

import copy
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class PatternStore(ABC):
    """Abstract base for pattern storage backends."""

    @abstractmethod
    def store(self, namespace: str, key: str, blob: Dict[str, Any]) -> bool:
        """Persist a blob. Returns True on success."""
        pass

    @abstractmethod
    def retrieve(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        """Get a blob, or None if absent."""
        pass

    @abstractmethod
    def delete(self, namespace: str, key: str) -> bool:
        """Delete a blob. Returns True if something was removed."""
        pass

    @abstractmethod
    def list(self, namespace: str, prefix: str = "") -> List[str]:
        """List keys in a namespace that start with prefix (sorted)."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Clear all data."""
        pass

    def close(self) -> None:
        """Release resources."""
        pass


class InMemoryPatternStore(PatternStore):
    """
    Dict-backed store for tests and ephemeral engines.

    Blobs are deep-copied on the way in and out so callers can never mutate
    stored state by accident.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def store(self, namespace: str, key: str, blob: Dict[str, Any]) -> bool:
        with self._lock:
            self._data.setdefault(namespace, {})[key] = copy.deepcopy(blob)
        return True

    def retrieve(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            blob = self._data.get(namespace, {}).get(key)
            return copy.deepcopy(blob) if blob is not None else None

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            return self._data.get(namespace, {}).pop(key, None) is not None

    def list(self, namespace: str, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data.get(namespace, {}) if k.startswith(prefix))

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class SQLitePatternStore(PatternStore):
    """
    SQLite-based pattern storage.

    Zero external dependencies - works out of the box.
    Good for development and single-host deployments.
    """

    def __init__(self, db_path: str = "~/.aves-learning/patterns.db"):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()
        logger.info(f"SQLite pattern store initialized at {self.db_path}")

    @property
    def _conn(self) -> sqlite3.Connection:
        """Thread-local connection."""
        if not hasattr(self._local, "conn"):
            self._local.conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False
            )
            self._local.conn.row_factory = sqlite3.Row
        return self._local.conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._conn:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS pattern_store (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (namespace, key)
                );

                CREATE INDEX IF NOT EXISTS idx_pattern_namespace
                ON pattern_store(namespace, key);
            """)

    def store(self, namespace: str, key: str, blob: Dict[str, Any]) -> bool:
        value_str = json.dumps(blob)
        with self._conn:
            self._conn.execute(
                """INSERT OR REPLACE INTO pattern_store (namespace, key, value, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (namespace, key, value_str, datetime.now(timezone.utc).isoformat())
            )
        return True

    def retrieve(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        cursor = self._conn.execute(
            "SELECT value FROM pattern_store WHERE namespace = ? AND key = ?",
            (namespace, key)
        )
        row = cursor.fetchone()
        if row:
            return json.loads(row["value"])
        return None

    def delete(self, namespace: str, key: str) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM pattern_store WHERE namespace = ? AND key = ?",
                (namespace, key)
            )
            return cursor.rowcount > 0

    def list(self, namespace: str, prefix: str = "") -> List[str]:
        # Escape LIKE wildcards so species/feature names are matched literally
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cursor = self._conn.execute(
            """SELECT key FROM pattern_store
               WHERE namespace = ? AND key LIKE ? ESCAPE '\\'
               ORDER BY key""",
            (namespace, f"{escaped}%")
        )
        # LIKE is case-insensitive for ASCII
        return [row["key"] for row in cursor.fetchall() if row["key"].startswith(prefix)]

    def clear(self) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM pattern_store")

    def close(self) -> None:
        """Close connection."""
        if hasattr(self._local, "conn"):
            self._local.conn.close()
            del self._local.conn


class RedisPatternStore(PatternStore):
    """
    Redis-based pattern storage.

    Requires: pip install redis
    Use for multi-process deployments sharing one learning state.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", key_prefix: str = "aves"):
        try:
            import redis
        except ImportError:
            raise ImportError(
                "Redis support requires: pip install redis\n"
                "Or use SQLitePatternStore for zero dependencies."
            )

        self.client = redis.from_url(url, decode_responses=True)
        self.key_prefix = key_prefix
        logger.info(f"Redis pattern store connected to {url}")

    def _full_key(self, namespace: str, key: str) -> str:
        return f"{self.key_prefix}:{namespace}:{key}"

    def store(self, namespace: str, key: str, blob: Dict[str, Any]) -> bool:
        return bool(self.client.set(self._full_key(namespace, key), json.dumps(blob)))

    def retrieve(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        value = self.client.get(self._full_key(namespace, key))
        if value:
            return json.loads(value)
        return None

    def delete(self, namespace: str, key: str) -> bool:
        return bool(self.client.delete(self._full_key(namespace, key)))

    def list(self, namespace: str, prefix: str = "") -> List[str]:
        head = f"{self.key_prefix}:{namespace}:"
        keys = [
            k[len(head):]
            for k in self.client.scan_iter(match=f"{head}*")
        ]
        return sorted(k for k in keys if k.startswith(prefix))

    def clear(self) -> None:
        for k in self.client.scan_iter(match=f"{self.key_prefix}:*"):
            self.client.delete(k)

    def close(self) -> None:
        self.client.close()


def create_pattern_store(backend: str = "sqlite", **kwargs) -> PatternStore:
    """
    Factory function to create a pattern store.

    Args:
        backend: "sqlite", "sqlite:///path/to.db", "redis://..." URL or "memory"
        **kwargs: Additional arguments for the backend

    Returns:
        PatternStore instance
    """
    if backend == "memory":
        return InMemoryPatternStore()

    elif backend == "sqlite" or backend.startswith("sqlite://"):
        db_path = kwargs.get("db_path", "~/.aves-learning/patterns.db")
        if backend.startswith("sqlite://"):
            db_path = backend.replace("sqlite://", "", 1)
        return SQLitePatternStore(db_path)

    elif backend.startswith("redis://") or backend.startswith("rediss://"):
        return RedisPatternStore(backend, key_prefix=kwargs.get("key_prefix", "aves"))

    else:
        raise ValueError(f"Unknown pattern store backend: {backend}")
