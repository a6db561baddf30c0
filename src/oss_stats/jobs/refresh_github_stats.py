from __future__ import annotations

import argparse
import time

from oss_stats.config import NPM_ORG, REPO_REFRESH_DELAY_SECONDS
from oss_stats.jobs.common import (
    add_logging_arguments,
    build_store,
    configure_logging,
    finish_run,
    run_status,
    start_run,
)
from oss_stats.libraries import library_repos
from oss_stats.sources.github_client import GitHubClient
from oss_stats.stats.repo_stats import RepoStatsCache, org_cache_key


def run(
    *,
    org: str = NPM_ORG,
    run_id: str | None = None,
    delay_seconds: float = REPO_REFRESH_DELAY_SECONDS,
) -> dict[str, int]:
    store = build_store()
    run_ctx = start_run("refresh_github_stats", run_id=run_id)
    cache = RepoStatsCache(store, GitHubClient())

    cache_keys = [*library_repos(), org_cache_key(org)]
    errors: list[str] = []
    refreshed = 0

    for index, cache_key in enumerate(cache_keys):
        if index and delay_seconds > 0:
            time.sleep(delay_seconds)
        try:
            snapshot = cache.refresh(cache_key)
        except Exception as exc:
            errors.append(f"{cache_key}: {exc}")
            print(f"[refresh_github_stats] {cache_key} failed: {exc}", flush=True)
            continue
        refreshed += 1
        print(
            f"[refresh_github_stats] {cache_key} stars={snapshot.stats.star_count} "
            f"contributors={snapshot.stats.contributor_count}",
            flush=True,
        )

    finish_run(
        store,
        run_ctx,
        status=run_status(succeeded=refreshed, failed=len(errors)),
        rows_inserted=0,
        rows_updated=refreshed,
        error_summary=" | ".join(errors) or None,
    )
    return {"refreshed": refreshed, "errors": len(errors)}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Refresh GitHub repository stats for catalogued libraries"
    )
    parser.add_argument("--org", default=NPM_ORG, help="GitHub organization")
    parser.add_argument("--run-id", default=None, help="Optional ingestion run id")
    add_logging_arguments(parser)
    args = parser.parse_args()
    configure_logging(args)

    result = run(org=args.org, run_id=args.run_id)
    print(
        "refresh_github_stats complete: "
        f"refreshed={result['refreshed']} errors={result['errors']}"
    )


if __name__ == "__main__":
    main()
