from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from oss_stats.config import REPO_STATS_TTL_HOURS
from oss_stats.models import GitHubStats, RepoStatsSnapshot
from oss_stats.sources.github_client import GitHubClient
from oss_stats.utils.time import coerce_datetime, coerce_optional_datetime, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIME_DELTA_SECONDS = 3600.0
ORG_KEY_PREFIX = "org:"


def org_cache_key(org: str) -> str:
    return f"{ORG_KEY_PREFIX}{org}"


class RepoStatsCache:
    """Current and previous GitHub snapshots per repository or ``org:<name>``."""

    table = "repo_stats"

    def __init__(
        self,
        store,
        github: GitHubClient | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        ttl_hours: int = REPO_STATS_TTL_HOURS,
    ):
        self.store = store
        self.github = github
        self.clock = clock
        self.ttl_hours = ttl_hours

    def get(self, cache_key: str) -> RepoStatsSnapshot | None:
        snapshot = self.get_with_fallback(cache_key)
        if snapshot is None or snapshot.is_expired:
            return None
        return snapshot

    def get_with_fallback(self, cache_key: str) -> RepoStatsSnapshot | None:
        row = self.store.get_row(self.table, {"cache_key": cache_key})
        if row is None:
            return None
        return self._from_row(row)

    def set(self, cache_key: str, stats: GitHubStats) -> RepoStatsSnapshot:
        now = self.clock()
        existing = self.store.get_row(self.table, {"cache_key": cache_key})
        row = {
            "cache_key": cache_key,
            "stats": json.dumps(stats.to_dict(), sort_keys=True),
            "previous_stats": existing.get("stats") if existing else None,
            "expires_at": now + timedelta(hours=self.ttl_hours),
            "created_at": existing.get("created_at") if existing else now,
            "updated_at": now,
        }
        self.store.upsert_rows(self.table, [row])
        logger.info("Cached repo stats for %s", cache_key)
        return self._from_row(row)

    def refresh(self, cache_key: str) -> RepoStatsSnapshot:
        if self.github is None:
            raise ValueError("RepoStatsCache.refresh needs a GitHubClient")
        if cache_key.startswith(ORG_KEY_PREFIX):
            stats = self.github.fetch_owner_stats(cache_key[len(ORG_KEY_PREFIX) :])
        else:
            stats = self.github.fetch_repo_stats(cache_key)
        return self.set(cache_key, stats)

    def _from_row(self, row: dict[str, Any]) -> RepoStatsSnapshot:
        stats = GitHubStats.from_dict(json.loads(row.get("stats") or "{}"))
        previous_raw = row.get("previous_stats")
        previous = GitHubStats.from_dict(json.loads(previous_raw)) if previous_raw else None
        time_delta = DEFAULT_TIME_DELTA_SECONDS
        created_at = coerce_optional_datetime(row.get("created_at"))
        updated_at = coerce_optional_datetime(row.get("updated_at"))
        if previous is not None and created_at and updated_at:
            time_delta = (updated_at - created_at).total_seconds()
        expires_at = coerce_datetime(row["expires_at"])
        return RepoStatsSnapshot(
            cache_key=str(row["cache_key"]),
            stats=stats,
            previous_stats=previous,
            time_delta_seconds=time_delta,
            expires_at=expires_at,
            is_expired=expires_at <= self.clock(),
        )
