from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import pyarrow as pa


@dataclass(frozen=True)
class DailyDownload:
    day: str
    downloads: int


@dataclass(frozen=True)
class ChunkRange:
    start: date
    end: date


@dataclass(frozen=True)
class ChunkDownloads:
    """One successful upstream response for a date range."""

    total_downloads: int
    daily: list[DailyDownload]


@dataclass(frozen=True)
class DownloadChunk:
    package_name: str
    date_from: str
    date_to: str
    bin_size: str
    total_downloads: int
    daily: list[DailyDownload]
    is_immutable: bool
    expires_at: datetime | None


@dataclass(frozen=True)
class PackageStats:
    downloads: int
    rate_per_day: float | None = None
    updated_at: datetime | None = None
    is_expired: bool = False


@dataclass(frozen=True)
class LibraryStats:
    library_id: str
    total_downloads: int
    previous_total_downloads: int | None
    package_count: int
    rate_per_day: float | None = None


@dataclass(frozen=True)
class OrgStats:
    org_name: str
    total_downloads: int
    package_stats: dict[str, dict[str, Any]] = field(default_factory=dict)
    rate_per_day: float | None = None
    updated_at: datetime | None = None
    is_expired: bool = False


@dataclass(frozen=True)
class GitHubStats:
    star_count: int
    contributor_count: int
    dependent_count: int | None = None
    fork_count: int | None = None
    repository_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "star_count": self.star_count,
            "contributor_count": self.contributor_count,
            "dependent_count": self.dependent_count,
            "fork_count": self.fork_count,
            "repository_count": self.repository_count,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GitHubStats:
        return cls(
            star_count=int(payload.get("star_count") or 0),
            contributor_count=int(payload.get("contributor_count") or 0),
            dependent_count=payload.get("dependent_count"),
            fork_count=payload.get("fork_count"),
            repository_count=payload.get("repository_count"),
        )


@dataclass(frozen=True)
class RepoStatsSnapshot:
    cache_key: str
    stats: GitHubStats
    previous_stats: GitHubStats | None
    time_delta_seconds: float
    expires_at: datetime
    is_expired: bool


PACKAGES_SCHEMA = pa.schema(
    [
        pa.field("package_name", pa.string()),
        pa.field("library_id", pa.string()),
        pa.field("is_legacy", pa.bool_()),
        pa.field("downloads", pa.int64()),
        pa.field("rate_per_day", pa.float64()),
        pa.field("stats_expires_at", pa.timestamp("us", tz="UTC")),
        pa.field("metadata_checked_at", pa.timestamp("us", tz="UTC")),
        pa.field("created_at", pa.timestamp("us", tz="UTC")),
        pa.field("updated_at", pa.timestamp("us", tz="UTC")),
    ]
)

DOWNLOAD_CHUNKS_SCHEMA = pa.schema(
    [
        pa.field("package_name", pa.string()),
        pa.field("date_from", pa.string()),
        pa.field("date_to", pa.string()),
        pa.field("bin_size", pa.string()),
        pa.field("total_downloads", pa.int64()),
        # JSON array of {"day", "downloads"} objects.
        pa.field("daily_data", pa.string()),
        pa.field("is_immutable", pa.bool_()),
        pa.field("expires_at", pa.timestamp("us", tz="UTC")),
        pa.field("updated_at", pa.timestamp("us", tz="UTC")),
    ]
)

LIBRARY_STATS_SCHEMA = pa.schema(
    [
        pa.field("library_id", pa.string()),
        pa.field("total_downloads", pa.int64()),
        pa.field("previous_total_downloads", pa.int64()),
        pa.field("package_count", pa.int64()),
        pa.field("updated_at", pa.timestamp("us", tz="UTC")),
    ]
)

ORG_STATS_SCHEMA = pa.schema(
    [
        pa.field("org_name", pa.string()),
        pa.field("total_downloads", pa.int64()),
        # JSON object of package name -> {"downloads", "previous_downloads"}.
        pa.field("package_stats", pa.string()),
        pa.field("expires_at", pa.timestamp("us", tz="UTC")),
        pa.field("updated_at", pa.timestamp("us", tz="UTC")),
    ]
)

REPO_STATS_SCHEMA = pa.schema(
    [
        pa.field("cache_key", pa.string()),
        pa.field("stats", pa.string()),
        pa.field("previous_stats", pa.string()),
        pa.field("expires_at", pa.timestamp("us", tz="UTC")),
        pa.field("created_at", pa.timestamp("us", tz="UTC")),
        pa.field("updated_at", pa.timestamp("us", tz="UTC")),
    ]
)

HISTORY_SCHEMA = pa.schema(
    [
        pa.field("ingestion_run_id", pa.string()),
        pa.field("job_name", pa.string()),
        pa.field("started_at", pa.timestamp("us", tz="UTC")),
        pa.field("finished_at", pa.timestamp("us", tz="UTC")),
        pa.field("status", pa.string()),
        pa.field("rows_inserted", pa.int64()),
        pa.field("rows_updated", pa.int64()),
        pa.field("error_summary", pa.string()),
    ]
)
