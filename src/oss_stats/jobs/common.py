from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime, timezone

from oss_stats.storage.lancedb_store import LanceDBStore
from oss_stats.utils.ids import new_ingestion_run_id
from oss_stats.utils.logs import setup_logging


@dataclass
class RunContext:
    job_name: str
    run_id: str
    started_at: datetime


def build_store(*, reset_tables: bool = False) -> LanceDBStore:
    store = LanceDBStore()
    if reset_tables:
        store.reset_tables()
    store.ensure_tables()
    return store


def start_run(job_name: str, run_id: str | None = None) -> RunContext:
    return RunContext(
        job_name=job_name,
        run_id=run_id or new_ingestion_run_id(job_name),
        started_at=datetime.now(tz=timezone.utc),
    )


def finish_run(
    store: LanceDBStore,
    run: RunContext,
    *,
    status: str,
    rows_inserted: int,
    rows_updated: int,
    error_summary: str | None = None,
) -> None:
    store.upsert_history(
        {
            "ingestion_run_id": run.run_id,
            "job_name": run.job_name,
            "started_at": run.started_at,
            "finished_at": datetime.now(tz=timezone.utc),
            "status": status,
            "rows_inserted": rows_inserted,
            "rows_updated": rows_updated,
            "error_summary": error_summary,
        }
    )


def run_status(*, succeeded: int, failed: int) -> str:
    if failed == 0:
        return "success"
    if succeeded == 0:
        return "failed"
    return "partial"


def add_logging_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Warnings only")


def configure_logging(args: argparse.Namespace) -> None:
    setup_logging(verbose=args.verbose, quiet=args.quiet)
