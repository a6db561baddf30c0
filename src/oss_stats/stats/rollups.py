from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from oss_stats.config import ORG_STATS_TTL_HOURS
from oss_stats.libraries import LIBRARIES, legacy_package_names
from oss_stats.models import LibraryStats, OrgStats
from oss_stats.utils.time import coerce_optional_datetime, utc_now

logger = logging.getLogger(__name__)


def library_member_rows(store, library_id: str) -> list[dict[str, Any]]:
    return store.find_rows("packages", where={"library_id": library_id})


def org_member_rows(store, org: str) -> list[dict[str, Any]]:
    """Scoped ``@org/*`` package rows plus any registered legacy packages."""
    rows = {
        str(row["package_name"]): row
        for row in store.find_rows("packages", prefix={"package_name": f"@{org}/"})
    }
    for name in legacy_package_names():
        if name in rows:
            continue
        row = store.get_row("packages", {"package_name": name})
        if row is not None:
            rows[name] = row
    return [rows[name] for name in sorted(rows)]


def belongs_to_org(package_name: str, org: str) -> bool:
    return package_name.startswith(f"@{org}/") or package_name in legacy_package_names()


def sum_rates(rows: list[dict[str, Any]]) -> float | None:
    total = sum(float(row.get("rate_per_day") or 0.0) for row in rows)
    return total if total > 0 else None


class LibraryStatsCache:
    table = "library_stats"

    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def compute(self, library_id: str) -> LibraryStats:
        members = library_member_rows(self.store, library_id)
        return LibraryStats(
            library_id=library_id,
            total_downloads=sum(int(row.get("downloads") or 0) for row in members),
            previous_total_downloads=None,
            package_count=len(members),
            rate_per_day=sum_rates(members),
        )

    def get(self, library_id: str) -> LibraryStats:
        """Cached rollup, or an on-demand sum when no rollup row exists yet."""
        row = self.store.get_row(self.table, {"library_id": library_id})
        if row is None:
            return self.compute(library_id)
        members = library_member_rows(self.store, library_id)
        return self._from_row(row, rate_per_day=sum_rates(members))

    def get_all(self) -> list[LibraryStats]:
        return [self.get(library.id) for library in LIBRARIES]

    def apply_delta(self, library_id: str, delta: int) -> None:
        try:
            row = self.store.get_row(self.table, {"library_id": library_id})
            if row is None:
                self.rebuild(library_id)
                return
            total = int(row.get("total_downloads") or 0)
            self.store.upsert_rows(
                self.table,
                [
                    {
                        "library_id": library_id,
                        "total_downloads": total + delta,
                        "previous_total_downloads": total,
                        "package_count": int(row.get("package_count") or 0),
                        "updated_at": self.clock(),
                    }
                ],
            )
        except Exception:
            logger.exception("Failed to apply delta %s to library %s", delta, library_id)

    def rebuild(self, library_id: str) -> LibraryStats | None:
        """Re-sum member packages and overwrite the rollup. Skips empty libraries."""
        members = library_member_rows(self.store, library_id)
        if not members:
            return None
        total = sum(int(row.get("downloads") or 0) for row in members)
        existing = self.store.get_row(self.table, {"library_id": library_id})
        previous = int(existing["total_downloads"]) if existing is not None else None
        row = {
            "library_id": library_id,
            "total_downloads": total,
            "previous_total_downloads": previous,
            "package_count": len(members),
            "updated_at": self.clock(),
        }
        try:
            self.store.upsert_rows(self.table, [row])
        except Exception:
            logger.exception("Failed to store rebuilt library %s", library_id)
        else:
            logger.debug(
                "Rebuilt library %s: %s packages, %s downloads",
                library_id,
                len(members),
                total,
            )
        return self._from_row(row, rate_per_day=sum_rates(members))

    def rebuild_all(self) -> list[LibraryStats]:
        rebuilt = []
        for library in LIBRARIES:
            stats = self.rebuild(library.id)
            if stats is not None:
                rebuilt.append(stats)
        return rebuilt

    @staticmethod
    def _from_row(row: dict[str, Any], *, rate_per_day: float | None) -> LibraryStats:
        previous = row.get("previous_total_downloads")
        return LibraryStats(
            library_id=str(row["library_id"]),
            total_downloads=int(row.get("total_downloads") or 0),
            previous_total_downloads=int(previous) if previous is not None else None,
            package_count=int(row.get("package_count") or 0),
            rate_per_day=rate_per_day,
        )


class OrgStatsCache:
    table = "org_stats"

    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def member_packages(self, org: str) -> list[dict[str, Any]]:
        return org_member_rows(self.store, org)

    def compute(self, org: str) -> OrgStats:
        members = self.member_packages(org)
        package_stats = {
            str(row["package_name"]): {"downloads": int(row["downloads"])}
            for row in members
            if row.get("downloads") is not None
        }
        return OrgStats(
            org_name=org,
            total_downloads=sum(entry["downloads"] for entry in package_stats.values()),
            package_stats=package_stats,
            rate_per_day=sum_rates(members),
        )

    def get(self, org: str) -> OrgStats | None:
        """Unexpired rollup only."""
        stats = self._read(org)
        if stats is None or stats.is_expired:
            return None
        return stats

    def get_with_fallback(self, org: str) -> OrgStats:
        """Fresh rollup, else the expired one, else a sum over package rows."""
        stats = self._read(org)
        if stats is not None:
            return stats
        return self.compute(org)

    def apply_delta(
        self, org: str, package_name: str, old_downloads: int, new_downloads: int
    ) -> None:
        try:
            row = self.store.get_row(self.table, {"org_name": org})
            if row is None:
                self.rebuild(org)
                return
            package_stats = json.loads(row.get("package_stats") or "{}")
            package_stats[package_name] = {
                "downloads": new_downloads,
                "previous_downloads": old_downloads,
            }
            self.store.upsert_rows(
                self.table,
                [
                    {
                        "org_name": org,
                        "total_downloads": int(row.get("total_downloads") or 0)
                        + (new_downloads - old_downloads),
                        "package_stats": json.dumps(package_stats, sort_keys=True),
                        "expires_at": row.get("expires_at"),
                        "updated_at": self.clock(),
                    }
                ],
            )
        except Exception:
            logger.exception(
                "Failed to apply %s delta to org %s", package_name, org
            )

    def rebuild(self, org: str) -> OrgStats:
        computed = self.compute(org)
        existing = self.store.get_row(self.table, {"org_name": org})
        previous = json.loads(existing.get("package_stats") or "{}") if existing else {}
        package_stats = {}
        for name, entry in computed.package_stats.items():
            previous_downloads = (previous.get(name) or {}).get("downloads")
            package_stats[name] = {
                "downloads": entry["downloads"],
                "previous_downloads": previous_downloads,
            }
        now = self.clock()
        expires_at = now + timedelta(hours=ORG_STATS_TTL_HOURS)
        row = {
            "org_name": org,
            "total_downloads": computed.total_downloads,
            "package_stats": json.dumps(package_stats, sort_keys=True),
            "expires_at": expires_at,
            "updated_at": now,
        }
        try:
            self.store.upsert_rows(self.table, [row])
        except Exception:
            logger.exception("Failed to store rebuilt org %s", org)
        else:
            logger.info(
                "Rebuilt org %s: %s packages, %s downloads",
                org,
                len(package_stats),
                computed.total_downloads,
            )
        return OrgStats(
            org_name=org,
            total_downloads=computed.total_downloads,
            package_stats=package_stats,
            rate_per_day=computed.rate_per_day,
            updated_at=now,
            is_expired=False,
        )

    def _read(self, org: str) -> OrgStats | None:
        row = self.store.get_row(self.table, {"org_name": org})
        if row is None:
            return None
        expires_at = coerce_optional_datetime(row.get("expires_at"))
        return OrgStats(
            org_name=org,
            total_downloads=int(row.get("total_downloads") or 0),
            package_stats=json.loads(row.get("package_stats") or "{}"),
            rate_per_day=sum_rates(self.member_packages(org)),
            updated_at=coerce_optional_datetime(row.get("updated_at")),
            is_expired=expires_at is None or expires_at <= self.clock(),
        )
