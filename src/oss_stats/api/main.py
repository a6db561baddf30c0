from __future__ import annotations

import logging
import secrets
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from oss_stats.config import ADMIN_TOKEN
from oss_stats.errors import ConfigurationError, UpstreamError
from oss_stats.libraries import LIBRARIES, get_library
from oss_stats.models import LibraryStats, OrgStats, RepoStatsSnapshot
from oss_stats.sources.github_client import GitHubClient
from oss_stats.sources.npm_client import NpmDownloadsClient
from oss_stats.stats.batch import rebuild_rollups, refresh_all
from oss_stats.stats.package_stats import PackageStatsCache
from oss_stats.stats.repo_stats import RepoStatsCache
from oss_stats.stats.rollups import LibraryStatsCache, OrgStatsCache
from oss_stats.storage.lancedb_store import LanceDBStore
from oss_stats.utils.time import parse_iso_date

app = FastAPI(title="OSS Stats API", version="0.1.0")
logger = logging.getLogger("oss_stats.api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_request_start(request, call_next):
    logger.info(
        "request sent method=%s path=%s query=%s",
        request.method,
        request.url.path,
        request.url.query,
    )
    return await call_next(request)


def _store() -> LanceDBStore:
    return LanceDBStore()


def _npm() -> NpmDownloadsClient:
    return NpmDownloadsClient()


def _github() -> GitHubClient:
    return GitHubClient()


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    if not ADMIN_TOKEN:
        raise HTTPException(status_code=503, detail="Admin token is not configured")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, ADMIN_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _isoformat(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _library_payload(stats: LibraryStats) -> dict[str, Any]:
    library = get_library(stats.library_id)
    payload: dict[str, Any] = {
        "library_id": stats.library_id,
        "name": library.name if library else stats.library_id,
        "total_downloads": stats.total_downloads,
        "previous_total_downloads": stats.previous_total_downloads,
        "package_count": stats.package_count,
    }
    if stats.rate_per_day is not None:
        payload["rate_per_day"] = stats.rate_per_day
    return payload


def _org_payload(stats: OrgStats) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "org_name": stats.org_name,
        "total_downloads": stats.total_downloads,
        "package_stats": stats.package_stats,
        "updated_at": _isoformat(stats.updated_at),
        "is_expired": stats.is_expired,
    }
    if stats.rate_per_day is not None:
        payload["rate_per_day"] = stats.rate_per_day
    return payload


def _repo_payload(snapshot: RepoStatsSnapshot) -> dict[str, Any]:
    current = snapshot.stats.to_dict()
    previous = snapshot.previous_stats.to_dict() if snapshot.previous_stats else None
    delta: dict[str, int] = {}
    if previous is not None:
        for key, value in current.items():
            if value is not None and previous.get(key) is not None:
                delta[key] = int(value) - int(previous[key])
    return {
        "cache_key": snapshot.cache_key,
        "stats": current,
        "previous_stats": previous,
        "delta": delta,
        "time_delta_seconds": snapshot.time_delta_seconds,
        "expires_at": snapshot.expires_at.isoformat(),
        "is_expired": snapshot.is_expired,
    }


@app.get("/api/v1/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/packages/{package_name:path}")
def package_stats(package_name: str) -> dict[str, Any]:
    store = _store()
    stats = PackageStatsCache(store, _npm()).get(package_name)
    if stats is None:
        return {
            "package_name": package_name,
            "downloads": 0,
            "rate_per_day": None,
            "updated_at": None,
            "is_expired": True,
        }
    return {
        "package_name": package_name,
        "downloads": stats.downloads,
        "rate_per_day": stats.rate_per_day,
        "updated_at": _isoformat(stats.updated_at),
        "is_expired": stats.is_expired,
    }


@app.get("/api/v1/libraries")
def libraries() -> list[dict[str, Any]]:
    cache = LibraryStatsCache(_store())
    return [_library_payload(stats) for stats in cache.get_all()]


@app.get("/api/v1/libraries/{library_id}")
def library(library_id: str) -> dict[str, Any]:
    if get_library(library_id) is None:
        known = ", ".join(library.id for library in LIBRARIES)
        raise HTTPException(
            status_code=404, detail=f"Unknown library: {library_id} (known: {known})"
        )
    return _library_payload(LibraryStatsCache(_store()).get(library_id))


@app.get("/api/v1/orgs/{org}")
def org_stats(org: str) -> dict[str, Any]:
    return _org_payload(OrgStatsCache(_store()).get_with_fallback(org))


@app.get("/api/v1/repos")
def repo_stats(
    cache_key: str = Query(..., description="owner/repo or org:<name>"),
) -> dict[str, Any]:
    snapshot = RepoStatsCache(_store()).get_with_fallback(cache_key)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No stats cached for {cache_key}")
    return _repo_payload(snapshot)


@app.get("/api/v1/history/refresh-errors")
def refresh_errors(
    start_date: str = Query(..., description="Start date (YYYY-MM-DD, UTC inclusive)"),
    end_date: str = Query(..., description="End date (YYYY-MM-DD, UTC inclusive)"),
    limit: int = Query(500, ge=1, le=5000),
) -> dict[str, Any]:
    try:
        start_day = parse_iso_date(start_date)
        end_day = parse_iso_date(end_date)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail="start_date/end_date must be YYYY-MM-DD"
        ) from exc
    if end_day < start_day:
        raise HTTPException(
            status_code=400, detail="end_date must be on or after start_date"
        )
    store = _store()
    rows = store.list_refresh_errors(start_day=start_day, end_day=end_day, limit=limit)
    return {
        "start_date": start_day.isoformat(),
        "end_date": end_day.isoformat(),
        "count": len(rows),
        "errors": rows,
    }


@app.post("/api/v1/admin/orgs/{org}/refresh", dependencies=[Depends(require_admin)])
def admin_refresh_org(org: str) -> dict[str, Any]:
    try:
        result = refresh_all(_store(), _npm(), org)
    except UpstreamError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return result.to_dict()


@app.post("/api/v1/admin/orgs/{org}/rebuild", dependencies=[Depends(require_admin)])
def admin_rebuild_org(org: str) -> dict[str, Any]:
    return rebuild_rollups(_store(), org)


@app.post(
    "/api/v1/admin/packages/{package_name:path}/refresh",
    dependencies=[Depends(require_admin)],
)
def admin_refresh_package(package_name: str) -> dict[str, Any]:
    try:
        stats = PackageStatsCache(_store(), _npm()).refresh(package_name)
    except UpstreamError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {
        "package_name": package_name,
        "downloads": stats.downloads,
        "rate_per_day": stats.rate_per_day,
        "updated_at": _isoformat(stats.updated_at),
    }


@app.post("/api/v1/admin/repos/refresh", dependencies=[Depends(require_admin)])
def admin_refresh_repo(
    cache_key: str = Query(..., description="owner/repo or org:<name>"),
) -> dict[str, Any]:
    try:
        snapshot = RepoStatsCache(_store(), _github()).refresh(cache_key)
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except UpstreamError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _repo_payload(snapshot)
