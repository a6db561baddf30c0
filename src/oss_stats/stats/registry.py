from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from oss_stats.config import METADATA_RECHECK_DAYS
from oss_stats.libraries import build_library_rules, legacy_package_names, match_library
from oss_stats.sources.npm_client import NpmDownloadsClient
from oss_stats.stats.rollups import org_member_rows
from oss_stats.utils.time import coerce_optional_datetime, utc_now

logger = logging.getLogger(__name__)


class PackageRegistry:
    table = "packages"

    def __init__(
        self,
        store,
        npm: NpmDownloadsClient,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.npm = npm
        self.clock = clock

    def discover_and_register(self, org: str) -> list[str]:
        """Register every package published under ``org`` plus the legacy names.

        Returns the discovered names. A listing failure raises; a failure on a
        single package is logged and that package is skipped.
        """
        names = list(self.npm.list_org_packages(org))
        for legacy in legacy_package_names():
            if legacy not in names:
                names.append(legacy)

        rules = build_library_rules(org)
        recheck_after = timedelta(days=METADATA_RECHECK_DAYS)
        registered = 0
        updated = 0
        for name in names:
            try:
                match = match_library(name, rules)
                library_id = match.library_id if match else None
                is_legacy = bool(match and match.is_legacy)
                now = self.clock()
                existing = self.store.get_row(self.table, {"package_name": name})
                if existing is None:
                    self.store.upsert_rows(
                        self.table,
                        [
                            {
                                "package_name": name,
                                "library_id": library_id,
                                "is_legacy": is_legacy,
                                "downloads": None,
                                "rate_per_day": None,
                                "stats_expires_at": None,
                                "metadata_checked_at": now,
                                "created_at": now,
                                "updated_at": now,
                            }
                        ],
                    )
                    registered += 1
                    continue

                checked_at = coerce_optional_datetime(existing.get("metadata_checked_at"))
                stale = checked_at is None or now - checked_at > recheck_after
                if stale or existing.get("library_id") != library_id:
                    row = dict(existing)
                    row.update(
                        {
                            "library_id": library_id,
                            "is_legacy": is_legacy,
                            "metadata_checked_at": now,
                            "updated_at": now,
                        }
                    )
                    self.store.upsert_rows(self.table, [row])
                    updated += 1
            except Exception as exc:
                logger.error("Failed to register package %s: %s", name, exc)

        logger.info(
            "Discovered %s packages for %s (%s new, %s updated)",
            len(names),
            org,
            registered,
            updated,
        )
        return names

    def registered_packages(self, library_id: str | None = None) -> list[str]:
        where = {"library_id": library_id} if library_id else None
        rows = self.store.find_rows(self.table, where=where)
        return sorted(str(row["package_name"]) for row in rows)

    def org_packages(self, org: str) -> list[str]:
        return [str(row["package_name"]) for row in org_member_rows(self.store, org)]
