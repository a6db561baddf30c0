from __future__ import annotations

import argparse

from oss_stats.storage.lancedb_store import EXPECTED_TABLES, LanceDBStore


def run(*, reset: bool = True) -> dict[str, int]:
    store = LanceDBStore()

    if reset:
        print(f"[bootstrap] resetting tables: {', '.join(EXPECTED_TABLES)}", flush=True)
        store.reset_tables()

    print("[bootstrap] creating required tables", flush=True)
    store.create_required_tables(
        on_table=lambda table_name: print(
            f"[bootstrap] ensuring table: {table_name}", flush=True
        ),
        recreate=reset,
    )
    existing = store.list_tables()
    ready = sum(1 for table_name in EXPECTED_TABLES if table_name in existing)
    print(f"[bootstrap] {ready}/{len(EXPECTED_TABLES)} tables ready", flush=True)
    return {"tables": ready, "expected": len(EXPECTED_TABLES)}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap required LanceDB tables for oss stats"
    )
    parser.add_argument(
        "--keep-data",
        action="store_true",
        help="Create missing tables without dropping existing ones",
    )
    args = parser.parse_args()

    result = run(reset=not args.keep_data)
    print(
        "bootstrap_tables complete: "
        f"tables={result['tables']} expected={result['expected']}"
    )


if __name__ == "__main__":
    main()
