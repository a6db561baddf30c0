from __future__ import annotations

import pytest

from oss_stats.errors import UpstreamError
from oss_stats.jobs import (
    rebuild_rollups,
    refresh_github_stats,
    refresh_npm_stats,
    scheduled_refresh,
)
from oss_stats.jobs.common import run_status
from oss_stats.models import ChunkDownloads, GitHubStats


class _Npm:
    failing: set[str] = set()

    def __init__(self, **_kwargs) -> None:
        pass

    def list_org_packages(self, _org):
        return ["@tanstack/react-query", "@tanstack/broken"]

    def fetch_package_created(self, _package):
        return None

    def fetch_chunk(self, package, _start, _end):
        if package in self.failing:
            raise UpstreamError("npm downloads API returned 500", status_code=500)
        return ChunkDownloads(1, [])


@pytest.mark.parametrize(
    "succeeded,failed,status",
    [(3, 0, "success"), (0, 0, "success"), (2, 1, "partial"), (0, 2, "failed")],
)
def test_run_status(succeeded: int, failed: int, status: str) -> None:
    assert run_status(succeeded=succeeded, failed=failed) == status


def test_refresh_npm_stats_records_partial_run(monkeypatch, memory_store) -> None:
    monkeypatch.setattr(refresh_npm_stats, "build_store", lambda: memory_store)
    monkeypatch.setattr(_Npm, "failing", {"@tanstack/broken"})
    monkeypatch.setattr(refresh_npm_stats, "NpmDownloadsClient", _Npm)

    result = refresh_npm_stats.run(org="tanstack", run_id="run-1", start_delay_seconds=0)

    assert result["failed"] == 1
    assert result["packages"]["@tanstack/broken"] == 0
    (history,) = memory_store.rows("history")
    assert history["ingestion_run_id"] == "run-1"
    assert history["job_name"] == "refresh_npm_stats"
    assert history["status"] == "partial"
    assert "@tanstack/broken" in history["error_summary"]


def test_refresh_npm_stats_records_failed_run_and_reraises(monkeypatch, memory_store) -> None:
    def exploding_refresh(*_args, **_kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(refresh_npm_stats, "build_store", lambda: memory_store)
    monkeypatch.setattr(refresh_npm_stats, "NpmDownloadsClient", _Npm)
    monkeypatch.setattr(refresh_npm_stats, "refresh_all", exploding_refresh)

    with pytest.raises(RuntimeError):
        refresh_npm_stats.run(org="tanstack", run_id="run-2")

    (history,) = memory_store.rows("history")
    assert history["status"] == "failed"
    assert history["error_summary"] == "tanstack: store unavailable"


def test_refresh_github_stats_continues_past_failures(monkeypatch, memory_store) -> None:
    class _GitHub:
        def fetch_repo_stats(self, repo):
            if repo == "tanstack/table":
                raise UpstreamError("GitHub API error: 500 - boom", status_code=500)
            return GitHubStats(star_count=1, contributor_count=1)

        def fetch_owner_stats(self, org):
            return GitHubStats(star_count=50, contributor_count=9, repository_count=3)

    monkeypatch.setattr(refresh_github_stats, "build_store", lambda: memory_store)
    monkeypatch.setattr(refresh_github_stats, "GitHubClient", _GitHub)
    monkeypatch.setattr(
        refresh_github_stats, "library_repos", lambda: ["tanstack/query", "tanstack/table"]
    )

    result = refresh_github_stats.run(org="tanstack", run_id="gh-1", delay_seconds=0)

    assert result == {"refreshed": 2, "errors": 1}
    keys = {row["cache_key"] for row in memory_store.rows("repo_stats")}
    assert keys == {"tanstack/query", "org:tanstack"}
    (history,) = memory_store.rows("history")
    assert history["status"] == "partial"


def test_rebuild_rollups_job_writes_history(monkeypatch, memory_store) -> None:
    memory_store.upsert_rows(
        "packages",
        [{"package_name": "@tanstack/react-store", "library_id": "store", "downloads": 8}],
    )
    monkeypatch.setattr(rebuild_rollups, "build_store", lambda: memory_store)

    result = rebuild_rollups.run(org="tanstack", run_id="rb-1")

    assert result["libraries"] == {"store": 8}
    (history,) = memory_store.rows("history")
    assert history["status"] == "success"
    assert history["rows_updated"] == 2


def test_scheduled_refresh_runs_npm_then_github(monkeypatch) -> None:
    calls: list[tuple[str, str]] = []

    def fake_npm(*, org, run_id):
        calls.append(("npm", run_id))
        return {"succeeded": 5, "failed": 1}

    def fake_github(*, org, run_id):
        calls.append(("github", run_id))
        return {"refreshed": 3, "errors": 0}

    monkeypatch.setattr(scheduled_refresh, "run_npm", fake_npm)
    monkeypatch.setattr(scheduled_refresh, "run_github", fake_github)

    result = scheduled_refresh.run(org="tanstack")

    assert result == {"packages": 6, "repos": 3, "errors": 1}
    assert [name for name, _ in calls] == ["npm", "github"]
    assert calls[0][1].endswith(":npm")
    assert calls[1][1].endswith(":github")
    assert calls[0][1].rsplit(":", 1)[0] == calls[1][1].rsplit(":", 1)[0]
