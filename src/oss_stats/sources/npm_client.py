from __future__ import annotations

import logging
import time
from datetime import date
from typing import Any, Callable
from urllib.parse import quote

import requests

from oss_stats.config import (
    RATE_LIMIT_WAIT_SECONDS,
    REQUEST_TIMEOUT_SECONDS,
    SCRAPE_MAX_ATTEMPTS,
    USER_AGENT,
)
from oss_stats.errors import UpstreamError
from oss_stats.models import ChunkDownloads, DailyDownload
from oss_stats.sources.rate_limits import RateLimitWarnings
from oss_stats.utils.time import parse_iso_date

logger = logging.getLogger(__name__)


class NpmDownloadsClient:
    base_url = "https://api.npmjs.org/downloads/range"
    registry_url = "https://registry.npmjs.com"
    org_listing_url = "https://registry.npmjs.org/-/org"

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout_seconds: int = REQUEST_TIMEOUT_SECONDS,
        rate_limit_wait_seconds: float = RATE_LIMIT_WAIT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        warnings: RateLimitWarnings | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.rate_limit_wait_seconds = rate_limit_wait_seconds
        self.sleep = sleep
        self.warnings = warnings or RateLimitWarnings()
        self.session = session or requests.Session()
        self.session.headers.update(
            {"Accept": "application/json", "User-Agent": USER_AGENT}
        )

    def fetch_chunk(
        self, package: str, start: date, end: date
    ) -> ChunkDownloads | None:
        """Fetch daily downloads for ``package`` over ``[start, end]``.

        Returns ``None`` when npm has no data for the package. HTTP 429 is
        retried after a fixed wait until it succeeds; any other failure raises
        ``UpstreamError``.
        """
        encoded_package = quote(package, safe="")
        date_range = f"{start.isoformat()}:{end.isoformat()}"
        url = f"{self.base_url}/{date_range}/{encoded_package}"

        while True:
            response = self._get(url)
            if response.status_code == 429:
                self.warnings.warn(
                    logger,
                    "npm-downloads",
                    "npm downloads API rate limited on %s (%s); waiting %.0fs",
                    package,
                    date_range,
                    self.rate_limit_wait_seconds,
                )
                self.sleep(self.rate_limit_wait_seconds)
                continue
            if response.status_code == 404:
                logger.debug("No npm downloads for %s in %s", package, date_range)
                return None
            if not response.ok:
                raise UpstreamError(
                    f"npm downloads API returned {response.status_code} for "
                    f"{package} ({date_range})",
                    status_code=response.status_code,
                )
            payload = self._json(response, url)
            break

        if payload.get("error") == f"package {package} not found":
            return None

        rows: list[DailyDownload] = []
        for row in payload.get("downloads") or []:
            day = row.get("day")
            downloads = row.get("downloads")
            if not day or downloads is None:
                continue
            rows.append(DailyDownload(day=str(day), downloads=int(downloads)))
        return ChunkDownloads(
            total_downloads=sum(row.downloads for row in rows), daily=rows
        )

    def fetch_package_created(self, package: str) -> date | None:
        url = f"{self.registry_url}/{quote(package, safe='@')}"
        try:
            response = self._get(url)
        except UpstreamError:
            logger.warning("Could not load registry metadata for %s", package)
            return None
        if not response.ok:
            logger.debug(
                "Registry metadata for %s returned %s", package, response.status_code
            )
            return None
        try:
            created = (response.json().get("time") or {}).get("created")
        except ValueError:
            return None
        if not created:
            return None
        try:
            return parse_iso_date(str(created)[:10])
        except ValueError:
            return None

    def list_org_packages(self, org: str) -> list[str]:
        url = f"{self.org_listing_url}/{quote(org, safe='')}/package"
        for attempt in range(SCRAPE_MAX_ATTEMPTS):
            response = self._get(url)
            if response.status_code == 429:
                self.warnings.warn(
                    logger,
                    "npm-registry",
                    "npm registry rate limited listing org %s (attempt %s/%s)",
                    org,
                    attempt + 1,
                    SCRAPE_MAX_ATTEMPTS,
                )
                if attempt + 1 < SCRAPE_MAX_ATTEMPTS:
                    self.sleep(self.rate_limit_wait_seconds)
                continue
            if not response.ok:
                raise UpstreamError(
                    f"npm registry returned {response.status_code} listing org {org}",
                    status_code=response.status_code,
                )
            return sorted(self._json(response, url))
        raise UpstreamError(
            f"npm registry kept rate limiting the listing of org {org}",
            status_code=429,
        )

    def _get(self, url: str) -> requests.Response:
        try:
            return self.session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise UpstreamError(f"Request to {url} failed: {exc}") from exc

    @staticmethod
    def _json(response: requests.Response, url: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(f"Invalid JSON from {url}") from exc
        if not isinstance(payload, dict):
            raise UpstreamError(f"Unexpected payload shape from {url}")
        return payload
