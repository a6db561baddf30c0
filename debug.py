from __future__ import annotations

import argparse
import json
from datetime import date, timedelta
from typing import Any

from oss_stats.config import NPM_ORG
from oss_stats.libraries import LIBRARIES
from oss_stats.storage.lancedb_store import EXPECTED_TABLES, LanceDBStore
from oss_stats.utils.time import parse_iso_date


def _print(value: Any) -> None:
    print(json.dumps(value, indent=2, default=str))


def _default_start_date(days: int) -> str:
    return (date.today() - timedelta(days=days)).isoformat()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Read-only helper that queries the oss stats LanceDB tables directly. "
            "Requires LANCEDB_* env vars."
        )
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    package = subparsers.add_parser("package", help="Package row plus its cached chunks")
    package.add_argument("name", help="npm package name, e.g. @tanstack/react-query")

    subparsers.add_parser("libraries", help="All library rollup rows")

    org = subparsers.add_parser("org", help="Org rollup row")
    org.add_argument("--org", default=NPM_ORG)

    repo = subparsers.add_parser("repo", help="Cached repository stats")
    repo.add_argument("cache_key", help="owner/repo or org:<name>")

    history = subparsers.add_parser(
        "history",
        help="Query refresh-run errors from history table",
    )
    history.add_argument(
        "--start-date",
        default=None,
        help="YYYY-MM-DD (default: 30 days ago)",
    )
    history.add_argument(
        "--end-date",
        default=date.today().isoformat(),
        help="YYYY-MM-DD (default: today)",
    )
    history.add_argument("--limit", type=int, default=200)

    subparsers.add_parser("counts", help="Row counts per table")
    parser.add_argument(
        "--history-days",
        type=int,
        default=30,
        help="Days-back used by history default start_date",
    )
    return parser.parse_args()


def _package_payload(store: LanceDBStore, name: str) -> dict[str, Any]:
    chunks = store.find_rows("download_chunks", where={"package_name": name})
    return {
        "package": store.get_row("packages", {"package_name": name}),
        "chunks": [
            {
                "date_from": row.get("date_from"),
                "date_to": row.get("date_to"),
                "total_downloads": row.get("total_downloads"),
                "is_immutable": row.get("is_immutable"),
                "expires_at": row.get("expires_at"),
            }
            for row in sorted(chunks, key=lambda row: str(row.get("date_from")))
        ],
    }


def _libraries_payload(store: LanceDBStore) -> list[dict[str, Any]]:
    rows = {
        str(row["library_id"]): row for row in store.find_rows("library_stats")
    }
    return [
        rows.get(library.id, {"library_id": library.id, "total_downloads": None})
        for library in LIBRARIES
    ]


def _history_payload(
    store: LanceDBStore,
    *,
    start_date: str,
    end_date: str,
    limit: int,
) -> dict[str, Any]:
    start_day = parse_iso_date(start_date)
    end_day = parse_iso_date(end_date)
    rows = store.list_refresh_errors(start_day=start_day, end_day=end_day, limit=limit)
    return {
        "start_date": start_day.isoformat(),
        "end_date": end_day.isoformat(),
        "count": len(rows),
        "errors": rows,
    }


def main() -> None:
    args = parse_args()
    store = LanceDBStore()

    if args.command == "package":
        _print(_package_payload(store, args.name))
        return

    if args.command == "libraries":
        _print(_libraries_payload(store))
        return

    if args.command == "org":
        _print(store.get_row("org_stats", {"org_name": args.org}))
        return

    if args.command == "repo":
        _print(store.get_row("repo_stats", {"cache_key": args.cache_key}))
        return

    if args.command == "history":
        start_date = args.start_date or _default_start_date(args.history_days)
        _print(
            _history_payload(
                store,
                start_date=start_date,
                end_date=args.end_date,
                limit=args.limit,
            )
        )
        return

    if args.command == "counts":
        existing = store.list_tables()
        _print(
            {
                name: store.count_table_rows(name)
                for name in EXPECTED_TABLES
                if name in existing
            }
        )
        return

    raise RuntimeError(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
