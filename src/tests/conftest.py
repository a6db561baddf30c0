from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

import pytest

from oss_stats.storage.lancedb_store import TABLE_KEYS, TABLE_SCHEMAS


class MemoryStore:
    """In-process stand-in for LanceDBStore's row operations."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[tuple, dict[str, Any]]] = defaultdict(dict)
        self.failing_tables: set[str] = set()
        self.upsert_calls: list[str] = []
        self._lock = threading.Lock()

    def _key(self, table_name: str, row: dict[str, Any]) -> tuple:
        return tuple(row[column] for column in TABLE_KEYS[table_name])

    def get_row(self, table_name: str, key: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            row = self.tables[table_name].get(self._key(table_name, key))
            return dict(row) if row is not None else None

    def find_rows(self, table_name, *, where=None, prefix=None, limit=None):
        with self._lock:
            rows = [
                dict(row)
                for row in self.tables[table_name].values()
                if all(row.get(column) == value for column, value in (where or {}).items())
                and all(
                    str(row.get(column) or "").startswith(value)
                    for column, value in (prefix or {}).items()
                )
            ]
        return rows if limit is None else rows[:limit]

    def upsert_rows(self, table_name: str, rows: list[dict[str, Any]]) -> dict[str, int]:
        if table_name in self.failing_tables:
            raise RuntimeError(f"write to {table_name} failed")
        inserted = 0
        updated = 0
        with self._lock:
            self.upsert_calls.append(table_name)
            for row in rows:
                normalized = {
                    schema_field.name: row.get(schema_field.name)
                    for schema_field in TABLE_SCHEMAS[table_name]
                }
                key = self._key(table_name, normalized)
                if key in self.tables[table_name]:
                    updated += 1
                else:
                    inserted += 1
                self.tables[table_name][key] = normalized
        return {"inserted": inserted, "updated": updated}

    def delete_rows(self, table_name: str, key: dict[str, Any]) -> None:
        with self._lock:
            self.tables[table_name].pop(self._key(table_name, key), None)

    def upsert_history(self, row: dict[str, Any]) -> dict[str, int]:
        return self.upsert_rows("history", [row])

    def rows(self, table_name: str) -> list[dict[str, Any]]:
        return [dict(row) for row in self.tables[table_name].values()]


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))
