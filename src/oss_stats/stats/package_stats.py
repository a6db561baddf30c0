from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from oss_stats.config import NPM_FLOOR_DATE, NPM_ORG, PACKAGE_STATS_TTL_HOURS
from oss_stats.models import DailyDownload, PackageStats
from oss_stats.sources.npm_client import NpmDownloadsClient
from oss_stats.stats.chunk_store import ChunkStore
from oss_stats.stats.chunks import plan_chunks
from oss_stats.stats.rollups import LibraryStatsCache, OrgStatsCache, belongs_to_org
from oss_stats.utils.time import coerce_optional_datetime, utc_now

logger = logging.getLogger(__name__)

RATE_WINDOW_DAYS = 7


def daily_rate(points: list[DailyDownload]) -> float | None:
    """Mean of the trailing seven daily points, or ``None`` with fewer points."""
    trailing = points[-RATE_WINDOW_DAYS:]
    if len(trailing) != RATE_WINDOW_DAYS:
        return None
    return sum(point.downloads for point in trailing) / RATE_WINDOW_DAYS


class PackageStatsCache:
    table = "packages"

    def __init__(
        self,
        store,
        npm: NpmDownloadsClient,
        *,
        org_name: str = NPM_ORG,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.npm = npm
        self.org_name = org_name
        self.clock = clock
        self.chunks = ChunkStore(store, clock=clock)
        self.libraries = LibraryStatsCache(store, clock=clock)
        self.orgs = OrgStatsCache(store, clock=clock)

    def get(self, package_name: str) -> PackageStats | None:
        """Cached stats, expired or not. ``None`` when never fetched."""
        row = self.store.get_row(self.table, {"package_name": package_name})
        return self._from_row(row)

    def get_many(self, package_names: list[str]) -> dict[str, PackageStats]:
        results: dict[str, PackageStats] = {}
        for name in package_names:
            stats = self.get(name)
            if stats is not None:
                results[name] = stats
        return results

    def refresh(self, package_name: str) -> PackageStats:
        """Walk every chunk from the package's creation date to today.

        Cached chunks are reused; misses are fetched in chronological order and
        written back before the next chunk. Raises ``UpstreamError`` on a hard
        failure, leaving the chunks fetched so far cached.
        """
        created = self.npm.fetch_package_created(package_name) or NPM_FLOOR_DATE
        start = max(created, NPM_FLOOR_DATE)
        today = self.clock().date()

        total = 0
        latest: list[DailyDownload] = []
        fetched = 0
        for chunk in plan_chunks(start, today):
            cached = self.chunks.get(package_name, chunk.start, chunk.end)
            if cached is not None:
                total += cached.total_downloads
                if cached.daily:
                    latest = cached.daily
                continue
            result = self.npm.fetch_chunk(package_name, chunk.start, chunk.end)
            fetched += 1
            if result is None:
                continue
            self.chunks.put(
                package_name,
                chunk.start,
                chunk.end,
                result.total_downloads,
                result.daily,
            )
            total += result.total_downloads
            # An empty tail keeps the previous chunk's trailing week for the rate.
            if result.daily:
                latest = result.daily

        rate = daily_rate(latest)
        logger.debug(
            "Refreshed %s: %s downloads, %s chunks fetched", package_name, total, fetched
        )
        return self.set_stats(package_name, total, rate)

    def set_stats(
        self, package_name: str, downloads: int, rate_per_day: float | None
    ) -> PackageStats:
        """Store the package figures and push the change up to library and org."""
        now = self.clock()
        stats = PackageStats(
            downloads=downloads,
            rate_per_day=rate_per_day,
            updated_at=now,
            is_expired=False,
        )
        try:
            existing = self.store.get_row(self.table, {"package_name": package_name})
            old_downloads = int((existing or {}).get("downloads") or 0)
            row: dict[str, Any] = dict(existing or {})
            row.update(
                {
                    "package_name": package_name,
                    "downloads": downloads,
                    "rate_per_day": rate_per_day,
                    "stats_expires_at": now + timedelta(hours=PACKAGE_STATS_TTL_HOURS),
                    "updated_at": now,
                }
            )
            if row.get("created_at") is None:
                row["created_at"] = now
            if row.get("is_legacy") is None:
                row["is_legacy"] = False
            self.store.upsert_rows(self.table, [row])
        except Exception:
            logger.exception("Failed to cache stats for %s", package_name)
            return stats

        delta = downloads - old_downloads
        if delta == 0:
            return stats
        library_id = row.get("library_id")
        if library_id:
            self.libraries.apply_delta(str(library_id), delta)
        if belongs_to_org(package_name, self.org_name):
            self.orgs.apply_delta(self.org_name, package_name, old_downloads, downloads)
        return stats

    def _from_row(self, row: dict[str, Any] | None) -> PackageStats | None:
        if row is None or row.get("downloads") is None:
            return None
        expires_at = coerce_optional_datetime(row.get("stats_expires_at"))
        return PackageStats(
            downloads=int(row["downloads"]),
            rate_per_day=row.get("rate_per_day"),
            updated_at=coerce_optional_datetime(row.get("updated_at")),
            is_expired=expires_at is None or expires_at <= self.clock(),
        )
