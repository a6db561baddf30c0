from __future__ import annotations

import argparse
from typing import Any

from oss_stats.config import BATCH_CONCURRENCY, BATCH_START_DELAY_SECONDS, NPM_ORG
from oss_stats.jobs.common import (
    add_logging_arguments,
    build_store,
    configure_logging,
    finish_run,
    run_status,
    start_run,
)
from oss_stats.sources.npm_client import NpmDownloadsClient
from oss_stats.sources.rate_limits import RateLimitWarnings
from oss_stats.stats.batch import refresh_all


def run(
    *,
    org: str = NPM_ORG,
    run_id: str | None = None,
    concurrency: int = BATCH_CONCURRENCY,
    start_delay_seconds: float = BATCH_START_DELAY_SECONDS,
    discover: bool = True,
) -> dict[str, Any]:
    store = build_store()
    run_ctx = start_run("refresh_npm_stats", run_id=run_id)
    npm = NpmDownloadsClient(warnings=RateLimitWarnings())

    print(
        f"[refresh_npm_stats] org={org} concurrency={concurrency} discover={discover}",
        flush=True,
    )
    try:
        result = refresh_all(
            store,
            npm,
            org,
            concurrency=concurrency,
            start_delay_seconds=start_delay_seconds,
            discover=discover,
        )
    except Exception as exc:
        finish_run(
            store,
            run_ctx,
            status="failed",
            rows_inserted=0,
            rows_updated=0,
            error_summary=f"{org}: {exc}",
        )
        raise

    for error in result.errors:
        print(f"[refresh_npm_stats] error {error}", flush=True)

    finish_run(
        store,
        run_ctx,
        status=run_status(succeeded=result.succeeded, failed=result.failed),
        rows_inserted=0,
        rows_updated=result.succeeded,
        error_summary=" | ".join(result.errors) or None,
    )
    return result.to_dict()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Refresh npm download stats for every package of an org"
    )
    parser.add_argument("--org", default=NPM_ORG, help="npm scope without the @")
    parser.add_argument("--run-id", default=None, help="Optional ingestion run id")
    parser.add_argument("--concurrency", type=int, default=BATCH_CONCURRENCY)
    parser.add_argument(
        "--start-delay",
        type=float,
        default=BATCH_START_DELAY_SECONDS,
        help="Seconds between package refresh starts",
    )
    parser.add_argument(
        "--skip-discovery",
        action="store_true",
        help="Only refresh packages already registered",
    )
    add_logging_arguments(parser)
    args = parser.parse_args()
    configure_logging(args)

    result = run(
        org=args.org,
        run_id=args.run_id,
        concurrency=args.concurrency,
        start_delay_seconds=args.start_delay,
        discover=not args.skip_discovery,
    )
    print(
        "refresh_npm_stats complete: "
        f"packages={len(result['packages'])} succeeded={result['succeeded']} "
        f"failed={result['failed']} total_downloads={result['org_total_downloads']}"
    )


if __name__ == "__main__":
    main()
