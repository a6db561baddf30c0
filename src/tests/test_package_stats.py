from __future__ import annotations

from datetime import date, timedelta

import pytest

from oss_stats.errors import UpstreamError
from oss_stats.models import ChunkDownloads, DailyDownload
from oss_stats.stats.package_stats import PackageStatsCache, daily_rate


def _points(count: int, downloads: int, start: date = date(2024, 12, 1)):
    return [
        DailyDownload((start + timedelta(days=offset)).isoformat(), downloads)
        for offset in range(count)
    ]


class _FakeNpm:
    def __init__(self, created=None, responses=None, fail_on=None) -> None:
        self.created = created
        self.responses = responses or {}
        self.fail_on = fail_on
        self.calls: list[tuple[str, date, date]] = []

    def fetch_package_created(self, _package):
        return self.created

    def fetch_chunk(self, package, start, end):
        self.calls.append((package, start, end))
        if self.fail_on == start:
            raise UpstreamError("npm downloads API returned 500", status_code=500)
        return self.responses.get(start)


def _two_chunk_npm(**kwargs) -> _FakeNpm:
    # Created 2023-01-01 with "today" 2025-01-01: two 500-day chunks.
    return _FakeNpm(
        created=date(2023, 1, 1),
        responses={
            date(2023, 1, 1): ChunkDownloads(1000, _points(3, 1000 // 3)),
            date(2024, 5, 15): ChunkDownloads(1000, _points(10, 100)),
        },
        **kwargs,
    )


def test_daily_rate_needs_seven_trailing_points() -> None:
    assert daily_rate(_points(7, 70)) == 70
    assert daily_rate(_points(6, 70) + [DailyDownload("2024-12-07", 140)]) == 80
    assert daily_rate(_points(30, 10)[:-1] + [DailyDownload("x", 80)]) == 20
    assert daily_rate(_points(6, 70)) is None
    assert daily_rate([]) is None


def test_refresh_sums_chunks_and_caches_them(memory_store, clock) -> None:
    npm = _two_chunk_npm()
    cache = PackageStatsCache(memory_store, npm, org_name="x", clock=clock)

    stats = cache.refresh("@x/y")

    assert stats.downloads == 2000
    assert stats.rate_per_day == 100
    assert [call[1:] for call in npm.calls] == [
        (date(2023, 1, 1), date(2024, 5, 14)),
        (date(2024, 5, 15), date(2025, 1, 1)),
    ]
    chunks = sorted(memory_store.rows("download_chunks"), key=lambda row: row["date_from"])
    assert [row["is_immutable"] for row in chunks] == [True, False]
    row = memory_store.get_row("packages", {"package_name": "@x/y"})
    assert row["downloads"] == 2000
    assert row["stats_expires_at"] == clock.now + timedelta(hours=24)


def test_second_refresh_only_refetches_expired_mutable_chunk(memory_store, clock) -> None:
    npm = _two_chunk_npm()
    cache = PackageStatsCache(memory_store, npm, org_name="x", clock=clock)
    cache.refresh("@x/y")

    clock.now = clock.now + timedelta(hours=1)
    npm.calls.clear()
    assert cache.refresh("@x/y").downloads == 2000
    assert npm.calls == []

    clock.now = clock.now + timedelta(hours=6)
    npm.responses[date(2024, 5, 15)] = ChunkDownloads(1500, _points(10, 150))
    stats = cache.refresh("@x/y")

    assert [call[1] for call in npm.calls] == [date(2024, 5, 15)]
    assert stats.downloads == 2500
    assert stats.rate_per_day == 150


def test_package_missing_everywhere_is_cached_as_zero(memory_store, clock) -> None:
    npm = _FakeNpm(created=date(2023, 1, 1))
    cache = PackageStatsCache(memory_store, npm, org_name="x", clock=clock)

    stats = cache.refresh("@x/ghost")

    assert stats.downloads == 0
    assert stats.rate_per_day is None
    assert memory_store.get_row("packages", {"package_name": "@x/ghost"})["downloads"] == 0
    # Not-found ranges are not cached.
    assert memory_store.rows("download_chunks") == []


def test_refresh_starts_at_floor_date_when_creation_unknown(memory_store, clock) -> None:
    npm = _FakeNpm(created=None)
    PackageStatsCache(memory_store, npm, org_name="x", clock=clock).refresh("@x/y")

    assert npm.calls[0][1] == date(2015, 1, 10)


def test_refresh_clips_creation_date_to_floor(memory_store, clock) -> None:
    npm = _FakeNpm(created=date(2012, 3, 4))
    PackageStatsCache(memory_store, npm, org_name="x", clock=clock).refresh("@x/y")

    assert npm.calls[0][1] == date(2015, 1, 10)


def test_hard_failure_keeps_earlier_chunks_and_package_row(memory_store, clock) -> None:
    memory_store.upsert_rows("packages", [{"package_name": "@x/y", "downloads": 42}])
    npm = _two_chunk_npm(fail_on=date(2024, 5, 15))
    cache = PackageStatsCache(memory_store, npm, org_name="x", clock=clock)

    with pytest.raises(UpstreamError):
        cache.refresh("@x/y")

    chunks = memory_store.rows("download_chunks")
    assert [row["date_from"] for row in chunks] == ["2023-01-01"]
    assert memory_store.get_row("packages", {"package_name": "@x/y"})["downloads"] == 42


def test_set_stats_applies_delta_to_library_without_resumming(memory_store, clock) -> None:
    memory_store.upsert_rows(
        "packages",
        [
            {"package_name": "@x/y", "library_id": "y", "downloads": 100_000},
            {"package_name": "@x/y-core", "library_id": "y", "downloads": 150_000},
        ],
    )
    memory_store.upsert_rows(
        "library_stats",
        [{"library_id": "y", "total_downloads": 250_000, "package_count": 2}],
    )
    # Drift the sibling so a re-sum would be visible.
    memory_store.upsert_rows(
        "packages",
        [{"package_name": "@x/y-core", "library_id": "y", "downloads": 1}],
    )
    cache = PackageStatsCache(memory_store, _FakeNpm(), org_name="x", clock=clock)

    cache.set_stats("@x/y", 101_500, None)

    row = memory_store.get_row("library_stats", {"library_id": "y"})
    assert row["total_downloads"] == 251_500
    assert row["previous_total_downloads"] == 250_000


def test_set_stats_updates_org_rollup_for_scoped_packages(memory_store, clock) -> None:
    memory_store.upsert_rows(
        "org_stats",
        [
            {
                "org_name": "x",
                "total_downloads": 1000,
                "package_stats": '{"@x/y": {"downloads": 400}}',
            }
        ],
    )
    memory_store.upsert_rows("packages", [{"package_name": "@x/y", "downloads": 400}])
    cache = PackageStatsCache(memory_store, _FakeNpm(), org_name="x", clock=clock)

    cache.set_stats("@x/y", 450, 5.0)
    cache.set_stats("@other/z", 999, None)

    org = cache.orgs.get_with_fallback("x")
    assert org.total_downloads == 1050
    assert org.package_stats["@x/y"] == {"downloads": 450, "previous_downloads": 400}
    assert "@other/z" not in org.package_stats


def test_set_stats_without_change_leaves_rollups_alone(memory_store, clock) -> None:
    memory_store.upsert_rows(
        "packages", [{"package_name": "@x/y", "library_id": "y", "downloads": 10}]
    )
    cache = PackageStatsCache(memory_store, _FakeNpm(), org_name="x", clock=clock)

    cache.set_stats("@x/y", 10, None)

    assert memory_store.rows("library_stats") == []
    assert memory_store.rows("org_stats") == []


def test_set_stats_swallows_write_errors(memory_store, clock, caplog) -> None:
    memory_store.failing_tables.add("packages")
    cache = PackageStatsCache(memory_store, _FakeNpm(), org_name="x", clock=clock)

    stats = cache.set_stats("@x/y", 10, None)

    assert stats.downloads == 10
    assert "Failed to cache stats for @x/y" in caplog.text


def test_get_serves_expired_stats(memory_store, clock) -> None:
    cache = PackageStatsCache(memory_store, _FakeNpm(), org_name="x", clock=clock)
    cache.set_stats("@x/y", 10, 1.5)

    clock.now = clock.now + timedelta(days=2)
    stats = cache.get("@x/y")

    assert stats.downloads == 10
    assert stats.rate_per_day == 1.5
    assert stats.is_expired is True
    assert cache.get("@x/never") is None
    assert cache.get_many(["@x/y", "@x/never"]).keys() == {"@x/y"}


@pytest.mark.parametrize("tail", [ChunkDownloads(0, []), None])
def test_empty_tail_chunk_keeps_previous_trailing_week(memory_store, clock, tail) -> None:
    npm = _FakeNpm(
        created=date(2023, 1, 1),
        responses={
            date(2023, 1, 1): ChunkDownloads(490, _points(7, 70)),
            date(2024, 5, 15): tail,
        },
    )
    cache = PackageStatsCache(memory_store, npm, org_name="x", clock=clock)

    stats = cache.refresh("@x/y")

    assert stats.downloads == 490
    assert stats.rate_per_day == 70

    # Same result when the earlier chunk comes from the cache.
    clock.now = clock.now + timedelta(hours=7)
    assert cache.refresh("@x/y").rate_per_day == 70
