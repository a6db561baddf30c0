from __future__ import annotations

import argparse
from typing import Any

from oss_stats.config import NPM_ORG
from oss_stats.jobs.common import (
    add_logging_arguments,
    build_store,
    configure_logging,
    finish_run,
    start_run,
)
from oss_stats.stats.batch import rebuild_rollups


def run(*, org: str = NPM_ORG, run_id: str | None = None) -> dict[str, Any]:
    store = build_store()
    run_ctx = start_run("rebuild_rollups", run_id=run_id)

    try:
        result = rebuild_rollups(store, org)
    except Exception as exc:
        finish_run(
            store,
            run_ctx,
            status="failed",
            rows_inserted=0,
            rows_updated=0,
            error_summary=str(exc),
        )
        raise

    for library_id, total in sorted(result["libraries"].items()):
        print(f"[rebuild_rollups] library {library_id} total={total}", flush=True)
    finish_run(
        store,
        run_ctx,
        status="success",
        rows_inserted=0,
        rows_updated=len(result["libraries"]) + 1,
    )
    return result


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Recompute library and org rollups from package rows"
    )
    parser.add_argument("--org", default=NPM_ORG, help="npm scope without the @")
    parser.add_argument("--run-id", default=None, help="Optional ingestion run id")
    add_logging_arguments(parser)
    args = parser.parse_args()
    configure_logging(args)

    result = run(org=args.org, run_id=args.run_id)
    print(
        "rebuild_rollups complete: "
        f"libraries={len(result['libraries'])} org_total={result['org_total_downloads']}"
    )


if __name__ == "__main__":
    main()
