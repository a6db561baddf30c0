from __future__ import annotations

import time
from datetime import date, datetime, timezone
from typing import Any, Callable
from urllib.parse import urlparse

import lancedb
import pyarrow as pa

from oss_stats.config import (
    LANCEDB_API_KEY,
    LANCEDB_HOST_OVERRIDE,
    LANCEDB_REGION,
)
from oss_stats.errors import ConfigurationError
from oss_stats.models import (
    DOWNLOAD_CHUNKS_SCHEMA,
    HISTORY_SCHEMA,
    LIBRARY_STATS_SCHEMA,
    ORG_STATS_SCHEMA,
    PACKAGES_SCHEMA,
    REPO_STATS_SCHEMA,
)
from oss_stats.utils.time import coerce_datetime

TABLE_SCHEMAS = {
    "packages": PACKAGES_SCHEMA,
    "download_chunks": DOWNLOAD_CHUNKS_SCHEMA,
    "library_stats": LIBRARY_STATS_SCHEMA,
    "org_stats": ORG_STATS_SCHEMA,
    "repo_stats": REPO_STATS_SCHEMA,
    "history": HISTORY_SCHEMA,
}
TABLE_KEYS: dict[str, tuple[str, ...]] = {
    "packages": ("package_name",),
    "download_chunks": ("package_name", "date_from", "date_to", "bin_size"),
    "library_stats": ("library_id",),
    "org_stats": ("org_name",),
    "repo_stats": ("cache_key",),
    "history": ("ingestion_run_id",),
}
EXPECTED_TABLES = tuple(TABLE_SCHEMAS)
TABLE_READY_TIMEOUT_SECONDS = 30.0
TABLE_READY_SLEEP_SECONDS = 0.5
TABLE_READY_MAX_ATTEMPTS = int(TABLE_READY_TIMEOUT_SECONDS / TABLE_READY_SLEEP_SECONDS)


def sql_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        return f"timestamp '{coerce_datetime(value).strftime('%Y-%m-%d %H:%M:%S')}'"
    if isinstance(value, date):
        value = value.isoformat()
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


def build_predicate(
    where: dict[str, Any] | None = None, prefix: dict[str, str] | None = None
) -> str | None:
    clauses: list[str] = []
    for column, value in (where or {}).items():
        if value is None:
            clauses.append(f"{column} IS NULL")
        else:
            clauses.append(f"{column} = {sql_literal(value)}")
    for column, value in (prefix or {}).items():
        escaped = str(value).replace("'", "''")
        clauses.append(f"{column} LIKE '{escaped}%'")
    if not clauses:
        return None
    return " AND ".join(clauses)


# This store intentionally assumes a running LanceDB Enterprise cluster.
class LanceDBStore:
    enterprise_uri = "db://oss-stats"

    @staticmethod
    def _validate_host_override(host_override: str) -> str:
        if not host_override:
            raise ConfigurationError(
                "Missing LANCEDB_HOST_OVERRIDE. Add LANCEDB_HOST_OVERRIDE=<enterprise host> "
                "to .env before running jobs or the API."
            )
        parsed = urlparse(host_override)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigurationError(
                "Invalid LANCEDB_HOST_OVERRIDE. Expected an absolute URL such as "
                "https://<your-enterprise-host>"
            )
        return host_override

    def __init__(self):
        if not LANCEDB_API_KEY:
            raise ConfigurationError(
                "Missing LANCEDB_API_KEY. Add LANCEDB_API_KEY=<enterprise api key> "
                "to .env before running jobs or the API."
            )
        host_override = self._validate_host_override(LANCEDB_HOST_OVERRIDE)
        self.db = lancedb.connect(
            uri=self.enterprise_uri,
            api_key=LANCEDB_API_KEY,
            host_override=host_override,
            region=LANCEDB_REGION,
        )

    def list_tables(self) -> set[str]:
        return {str(name) for name in self.db.table_names(limit=1000)}

    def reset_tables(self) -> None:
        for table_name in EXPECTED_TABLES:
            try:
                self.db.drop_table(table_name)
            except ValueError:
                # Already absent.
                continue

    def create_required_tables(
        self,
        on_table: Callable[[str], None] | None = None,
        *,
        recreate: bool = False,
    ) -> None:
        mode = "overwrite" if recreate else "exist_ok"
        for table_name in EXPECTED_TABLES:
            if on_table is not None:
                on_table(table_name)
            self._create_ready(table_name, mode=mode)

    def ensure_tables(self) -> None:
        self.create_required_tables()

    def _create_ready(self, table_name: str, *, mode: str) -> None:
        schema = TABLE_SCHEMAS[table_name]
        last_error: Exception | None = None
        for _attempt in range(TABLE_READY_MAX_ATTEMPTS):
            try:
                self.db.create_table(table_name, schema=schema, mode=mode)
                return
            except Exception as exc:
                last_error = exc
                if self._is_terminal_table_error(exc):
                    raise RuntimeError(
                        f"Terminal error while ensuring table '{table_name}': {exc}"
                    ) from exc
                time.sleep(TABLE_READY_SLEEP_SECONDS)
        raise RuntimeError(
            f"Timed out ensuring table '{table_name}' after "
            f"{TABLE_READY_MAX_ATTEMPTS} attempts. Last error: {last_error}"
        ) from last_error

    @staticmethod
    def _is_terminal_table_error(exc: Exception) -> bool:
        msg = str(exc).lower()
        terminal_tokens = [
            "401",
            "403",
            "unauthorized",
            "forbidden",
            "permission denied",
            "invalid api key",
            "invalid url",
            "relativeurlwithoutbase",
            "schema",
            "type mismatch",
            "invalid type",
        ]
        transient_tokens = [
            "404",
            "503",
            "table not found",
            "_versions",
            "service unavailable",
            "temporarily unavailable",
            "retry limit",
            "timed out",
        ]
        if any(token in msg for token in transient_tokens):
            return False
        return any(token in msg for token in terminal_tokens)

    def _open_table(self, table_name: str):
        if table_name not in TABLE_SCHEMAS:
            raise ValueError(f"Unknown table: {table_name}")
        try:
            return self.db.open_table(table_name)
        except Exception as first_error:
            # Remote metadata can briefly lag behind create_table.
            self.db.create_table(
                table_name, schema=TABLE_SCHEMAS[table_name], mode="exist_ok"
            )
            time.sleep(TABLE_READY_SLEEP_SECONDS)
            try:
                return self.db.open_table(table_name)
            except Exception as second_error:
                raise RuntimeError(
                    f"Failed to open table '{table_name}' after fallback create. "
                    f"First error: {first_error}; second error: {second_error}"
                ) from second_error

    def query_table(
        self,
        table_name: str,
        *,
        where: str | None = None,
        columns: list[str] | None = None,
        limit: int | None = 20,
    ) -> list[dict[str, Any]]:
        table = self._open_table(table_name)
        builder = table.query() if hasattr(table, "query") else table.search()
        if where:
            builder = builder.where(where)
        if columns:
            builder = builder.select(columns)
        if limit is not None:
            builder = builder.limit(limit)
        return builder.to_list()

    def get_row(self, table_name: str, key: dict[str, Any]) -> dict[str, Any] | None:
        self._check_key(table_name, key)
        rows = self.query_table(table_name, where=build_predicate(key), limit=1)
        return rows[0] if rows else None

    def find_rows(
        self,
        table_name: str,
        *,
        where: dict[str, Any] | None = None,
        prefix: dict[str, str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return self.query_table(
            table_name, where=build_predicate(where, prefix), limit=limit
        )

    def upsert_rows(
        self, table_name: str, rows: list[dict[str, Any]]
    ) -> dict[str, int]:
        if not rows:
            return {"inserted": 0, "updated": 0}

        keys = list(TABLE_KEYS[table_name])
        data = pa.Table.from_pylist(
            [self._normalize_row(table_name, row) for row in rows],
            schema=TABLE_SCHEMAS[table_name],
        )
        table = self._open_table(table_name)
        try:
            result = (
                table.merge_insert(keys if len(keys) > 1 else keys[0])
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(data)
            )
            return {
                "inserted": int(result.num_inserted_rows),
                "updated": int(result.num_updated_rows),
            }
        except NotImplementedError:
            inserted = 0
            updated = 0
            for row in data.to_pylist():
                predicate = build_predicate({column: row[column] for column in keys})
                exists = int(table.count_rows(filter=predicate)) > 0
                table.delete(predicate)
                table.add([row], mode="append")
                if exists:
                    updated += 1
                else:
                    inserted += 1
            return {"inserted": inserted, "updated": updated}

    def delete_rows(self, table_name: str, key: dict[str, Any]) -> None:
        self._check_key(table_name, key)
        table = self._open_table(table_name)
        table.delete(build_predicate(key))

    def upsert_history(self, row: dict[str, Any]) -> dict[str, int]:
        normalized = self._normalize_history_row(row)
        return self.upsert_rows("history", [normalized])

    def count_table_rows(self, table_name: str) -> int:
        table = self._open_table(table_name)
        return int(table.count_rows())

    def list_refresh_errors(
        self,
        *,
        start_day: date,
        end_day: date,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        rows = self.query_table("history", limit=None)
        matches: list[dict[str, Any]] = []
        for row in rows:
            error_summary = str(row.get("error_summary") or "").strip()
            if not error_summary:
                continue
            finished_at = coerce_datetime(
                row.get("finished_at") or row.get("started_at")
            )
            finished_day = finished_at.date()
            if finished_day < start_day or finished_day > end_day:
                continue
            matches.append(
                {
                    "ingestion_run_id": row.get("ingestion_run_id"),
                    "job_name": row.get("job_name"),
                    "status": row.get("status"),
                    "started_at": row.get("started_at"),
                    "finished_at": row.get("finished_at"),
                    "error_summary": error_summary,
                }
            )
        matches.sort(
            key=lambda entry: coerce_datetime(
                entry.get("finished_at") or entry.get("started_at")
            ),
            reverse=True,
        )
        return matches[:limit]

    @staticmethod
    def _check_key(table_name: str, key: dict[str, Any]) -> None:
        if table_name not in TABLE_KEYS:
            raise ValueError(f"Unknown table: {table_name}")
        missing = [column for column in TABLE_KEYS[table_name] if column not in key]
        if missing:
            raise ValueError(
                f"Key for table '{table_name}' is missing columns: {', '.join(missing)}"
            )

    @staticmethod
    def _normalize_row(table_name: str, row: dict[str, Any]) -> dict[str, Any]:
        schema = TABLE_SCHEMAS[table_name]
        normalized: dict[str, Any] = {}
        for schema_field in schema:
            value = row.get(schema_field.name)
            if value is not None and pa.types.is_timestamp(schema_field.type):
                value = coerce_datetime(value)
            normalized[schema_field.name] = value
        return normalized

    @staticmethod
    def _normalize_history_row(row: dict[str, Any]) -> dict[str, Any]:
        normalized = dict(row)
        for key in ("started_at", "finished_at"):
            value = normalized.get(key)
            if value is None:
                normalized[key] = datetime.now(tz=timezone.utc)
        normalized["rows_inserted"] = int(normalized.get("rows_inserted", 0))
        normalized["rows_updated"] = int(normalized.get("rows_updated", 0))
        normalized["error_summary"] = normalized.get("error_summary")
        return normalized
