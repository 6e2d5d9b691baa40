"""Key-value storage backends for persistent pipeline state."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import duckdb


class KeyValueStore(Protocol):
    """A synchronous key-value store holding JSON-compatible values.

    Stores are intentionally synchronous; async callers isolate the blocking I/O
    in a worker thread.
    """

    def get(self, key: str) -> Any | None:
        """Return the value stored under `key`, or None when absent."""

    def set(self, key: str, value: Any) -> None:
        """Store `value` under `key`, replacing any previous value."""

    def delete(self, key: str) -> None:
        """Remove `key` (no-op when absent)."""

    def list_keys(self, prefix: str) -> set[str]:
        """Return every key that starts with `prefix`."""

    def close(self) -> None:
        """Close any underlying resources."""


class InMemoryKeyValueStore:
    """In-memory store for tests and local debugging."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Any | None:
        with self._lock:
            raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        # Values are kept serialized so callers never share mutable state with the store.
        raw = json.dumps(value, separators=(",", ":"))
        with self._lock:
            self._data[key] = raw

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_keys(self, prefix: str) -> set[str]:
        with self._lock:
            return {k for k in self._data if k.startswith(prefix)}

    def close(self) -> None:  # noqa: D401 - keep interface consistent
        """No-op."""

    def snapshot(self) -> dict[str, Any]:
        """Return a point-in-time copy of all stored entries."""
        with self._lock:
            return {k: json.loads(v) for k, v in self._data.items()}


@dataclass(frozen=True)
class DuckDBOptions:
    path: Path
    table: str = "stream_options"


class DuckDBKeyValueStore:
    """DuckDB store for durable local persistence.

    Each key is one row; values are stored as compact JSON text.
    """

    def __init__(self, *, path: str | Path, table: str = "stream_options") -> None:
        """Create (or open) a DuckDB-backed store at the given path."""
        self._opts = DuckDBOptions(path=Path(path), table=table)
        self._lock = threading.Lock()
        self._conn = duckdb.connect(str(self._opts.path))
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        create_sql = f"""
        create table if not exists {self._opts.table} (
          option_name varchar primary key,
          option_value varchar not null
        )
        """
        with self._lock:
            self._conn.execute(create_sql)

    def get(self, key: str) -> Any | None:
        with self._lock:
            row = self._conn.execute(
                f"select option_value from {self._opts.table} where option_name = ?", [key]
            ).fetchone()
        return None if row is None else json.loads(row[0])

    def set(self, key: str, value: Any) -> None:
        raw = json.dumps(value, separators=(",", ":"))
        with self._lock:
            self._conn.execute(
                f"""
                insert into {self._opts.table} (option_name, option_value) values (?, ?)
                on conflict (option_name) do update set option_value = excluded.option_value
                """,
                [key, raw],
            )

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute(f"delete from {self._opts.table} where option_name = ?", [key])

    def list_keys(self, prefix: str) -> set[str]:
        # starts_with avoids LIKE treating `_` in the prefix as a wildcard.
        with self._lock:
            rows = self._conn.execute(
                f"select option_name from {self._opts.table} where starts_with(option_name, ?)", [prefix]
            ).fetchall()
        return {r[0] for r in rows}

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        with self._lock:
            self._conn.close()
