"""Key-value persistence for grants, histories and status snapshots.

Backends:
  - MemoryStore: in-process dict, used by tests and dry runs
  - SqliteStore: single ``kv`` table in a local SQLite file

Values are JSON-serialised on write and decoded on read.
"""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
from pathlib import Path
from typing import Any, Protocol

from dca_agent.config import StorageConfig
from dca_agent.storage.migrations import run_migrations
from dca_agent.observability.logger import get_logger

log = get_logger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...


class MemoryStore:
    """Dict-backed store."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, default=str)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class SqliteStore:
    """SQLite-backed store."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        db_path = Path(self._config.sqlite_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        run_migrations(self._conn)
        log.info("kv_store.connected", path=str(db_path))

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Store not connected. Call connect() first.")
        return self._conn

    def get(self, key: str) -> Any | None:
        row = self.conn.execute(
            "SELECT value FROM kv WHERE key = ?", (key,)
        ).fetchone()
        return json.loads(row["value"]) if row else None

    def set(self, key: str, value: Any) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
            (
                key,
                json.dumps(value, default=str),
                dt.datetime.now(dt.timezone.utc).isoformat(),
            ),
        )
        self.conn.commit()

    def remove(self, key: str) -> None:
        self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        self.conn.commit()

    def keys(self, prefix: str = "") -> list[str]:
        rows = self.conn.execute(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ).fetchall()
        return [r["key"] for r in rows]


def open_store(config: StorageConfig) -> KeyValueStore:
    """Create the configured store backend."""
    if config.backend == "memory":
        return MemoryStore()
    store = SqliteStore(config)
    store.connect()
    return store


def safe_set(store: KeyValueStore, key: str, value: Any) -> None:
    """Best-effort write: persistence failures are logged, never raised."""
    try:
        store.set(key, value)
    except Exception as e:
        log.warning("kv_store.write_failed", key=key, error=str(e))
