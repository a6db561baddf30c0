from __future__ import annotations

import argparse

from oss_stats.config import NPM_ORG
from oss_stats.jobs.common import add_logging_arguments, configure_logging
from oss_stats.jobs.refresh_github_stats import run as run_github
from oss_stats.jobs.refresh_npm_stats import run as run_npm
from oss_stats.utils.ids import new_ingestion_run_id


def run(*, org: str = NPM_ORG) -> dict[str, int]:
    shared_run_id = new_ingestion_run_id("scheduled_refresh")
    print(f"[scheduled_refresh] starting npm org={org}", flush=True)
    npm = run_npm(org=org, run_id=f"{shared_run_id}:npm")
    print(
        "[scheduled_refresh] npm complete: "
        f"succeeded={npm['succeeded']} failed={npm['failed']}",
        flush=True,
    )
    print("[scheduled_refresh] starting github", flush=True)
    github = run_github(org=org, run_id=f"{shared_run_id}:github")
    print(
        "[scheduled_refresh] github complete: "
        f"refreshed={github['refreshed']} errors={github['errors']}",
        flush=True,
    )
    return {
        "packages": npm["succeeded"] + npm["failed"],
        "repos": github["refreshed"] + github["errors"],
        "errors": npm["failed"] + github["errors"],
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the npm refresh followed by the GitHub refresh"
    )
    parser.add_argument("--org", default=NPM_ORG)
    add_logging_arguments(parser)
    args = parser.parse_args()
    configure_logging(args)

    result = run(org=args.org)
    print(
        "scheduled_refresh complete: "
        f"packages={result['packages']} repos={result['repos']} errors={result['errors']}"
    )


if __name__ == "__main__":
    main()
