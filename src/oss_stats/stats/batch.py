from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from oss_stats.config import BATCH_CONCURRENCY, BATCH_START_DELAY_SECONDS
from oss_stats.sources.npm_client import NpmDownloadsClient
from oss_stats.stats.package_stats import PackageStatsCache
from oss_stats.stats.registry import PackageRegistry
from oss_stats.stats.rollups import LibraryStatsCache, OrgStatsCache
from oss_stats.utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    org: str
    packages: dict[str, int] = field(default_factory=dict)
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    libraries_rebuilt: int = 0
    org_total_downloads: int = 0

    @property
    def total_downloads(self) -> int:
        return sum(self.packages.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "org": self.org,
            "packages": dict(sorted(self.packages.items())),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "total_downloads": self.total_downloads,
            "org_total_downloads": self.org_total_downloads,
            "libraries_rebuilt": self.libraries_rebuilt,
            "errors": list(self.errors),
        }


def refresh_all(
    store,
    npm: NpmDownloadsClient,
    org: str,
    *,
    concurrency: int = BATCH_CONCURRENCY,
    start_delay_seconds: float = BATCH_START_DELAY_SECONDS,
    discover: bool = True,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utc_now,
) -> BatchResult:
    """Refresh every package of ``org`` and then rebuild its rollups.

    At most ``concurrency`` packages are in flight, and starts are spaced
    ``start_delay_seconds`` apart. A failing package counts as zero downloads
    in the result; it never stops the batch. Its stored package row keeps the
    last good figures so rollups do not drop it. Rollup write failures during
    the final rebuild are logged and do not fail the batch.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    registry = PackageRegistry(store, npm, clock=clock)
    cache = PackageStatsCache(store, npm, org_name=org, clock=clock)

    names: list[str]
    if discover:
        try:
            names = registry.discover_and_register(org)
        except Exception as exc:
            logger.error(
                "Package discovery for %s failed, using registered packages: %s",
                org,
                exc,
            )
            names = registry.org_packages(org)
    else:
        names = registry.org_packages(org)

    result = BatchResult(org=org)
    logger.info("Refreshing %s packages for %s", len(names), org)

    slots = threading.BoundedSemaphore(concurrency)
    with ThreadPoolExecutor(max_workers=concurrency) as executor:
        futures = {}
        for index, name in enumerate(names):
            slots.acquire()
            if index and start_delay_seconds > 0:
                sleep(start_delay_seconds)
            future = executor.submit(cache.refresh, name)
            future.add_done_callback(lambda _future: slots.release())
            futures[future] = name

        for future in as_completed(futures):
            name = futures[future]
            try:
                stats = future.result()
            except Exception as exc:
                logger.error("Failed to refresh %s: %s", name, exc)
                result.packages[name] = 0
                result.failed += 1
                result.errors.append(f"{name}: {exc}")
            else:
                result.packages[name] = stats.downloads
                result.succeeded += 1

    result.libraries_rebuilt = len(cache.libraries.rebuild_all())
    result.org_total_downloads = cache.orgs.rebuild(org).total_downloads
    logger.info(
        "Refreshed %s: %s succeeded, %s failed, %s downloads",
        org,
        result.succeeded,
        result.failed,
        result.org_total_downloads,
    )
    return result


def rebuild_rollups(store, org: str, *, clock: Callable[[], datetime] = utc_now) -> dict[str, Any]:
    """Re-sum every library and the org from package rows."""
    libraries = LibraryStatsCache(store, clock=clock).rebuild_all()
    org_stats = OrgStatsCache(store, clock=clock).rebuild(org)
    return {
        "org": org,
        "libraries": {stats.library_id: stats.total_downloads for stats in libraries},
        "org_total_downloads": org_stats.total_downloads,
        "package_count": len(org_stats.package_stats),
    }
