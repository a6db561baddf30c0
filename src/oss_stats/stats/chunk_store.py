from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable

from oss_stats.config import BIN_SIZE_DAILY, MUTABLE_CHUNK_TTL_HOURS
from oss_stats.models import DailyDownload, DownloadChunk
from oss_stats.utils.time import coerce_datetime, coerce_optional_datetime, utc_now

logger = logging.getLogger(__name__)

TABLE = "download_chunks"


def _chunk_key(package: str, date_from: date, date_to: date, bin_size: str) -> dict[str, Any]:
    return {
        "package_name": package,
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "bin_size": bin_size,
    }


def _decode_daily(raw: str | None) -> list[DailyDownload]:
    if not raw:
        return []
    return [
        DailyDownload(day=str(point["day"]), downloads=int(point["downloads"]))
        for point in json.loads(raw)
    ]


class ChunkStore:
    """Cached per-range daily downloads.

    A chunk whose ``date_to`` is before today when written is immutable and is
    served forever. Anything else expires ``MUTABLE_CHUNK_TTL_HOURS`` after the
    write and reads as a miss once expired.
    """

    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def get(
        self,
        package: str,
        date_from: date,
        date_to: date,
        bin_size: str = BIN_SIZE_DAILY,
    ) -> DownloadChunk | None:
        key = _chunk_key(package, date_from, date_to, bin_size)
        try:
            row = self.store.get_row(TABLE, key)
        except Exception:
            # Treated as a miss; the caller refetches.
            logger.exception("Failed to read cached chunk %s", key)
            return None
        if row is None:
            return None
        is_immutable = bool(row.get("is_immutable"))
        expires_at = coerce_optional_datetime(row.get("expires_at"))
        if not is_immutable and (expires_at is None or expires_at <= self.clock()):
            return None
        return DownloadChunk(
            package_name=package,
            date_from=str(row["date_from"]),
            date_to=str(row["date_to"]),
            bin_size=str(row["bin_size"]),
            total_downloads=int(row.get("total_downloads") or 0),
            daily=_decode_daily(row.get("daily_data")),
            is_immutable=is_immutable,
            expires_at=expires_at,
        )

    def put(
        self,
        package: str,
        date_from: date,
        date_to: date,
        total_downloads: int,
        daily: list[DailyDownload],
        bin_size: str = BIN_SIZE_DAILY,
    ) -> DownloadChunk:
        now = coerce_datetime(self.clock())
        is_immutable = date_to < now.date()
        expires_at = None if is_immutable else now + timedelta(hours=MUTABLE_CHUNK_TTL_HOURS)
        row = {
            **_chunk_key(package, date_from, date_to, bin_size),
            "total_downloads": int(total_downloads),
            "daily_data": json.dumps(
                [{"day": point.day, "downloads": point.downloads} for point in daily]
            ),
            "is_immutable": is_immutable,
            "expires_at": expires_at,
            "updated_at": now,
        }
        try:
            self.store.upsert_rows(TABLE, [row])
        except Exception:
            logger.exception(
                "Failed to cache chunk %s %s..%s", package, date_from, date_to
            )
        else:
            self._prune_superseded(package, date_from, date_to, bin_size)
        return DownloadChunk(
            package_name=package,
            date_from=date_from.isoformat(),
            date_to=date_to.isoformat(),
            bin_size=bin_size,
            total_downloads=int(total_downloads),
            daily=list(daily),
            is_immutable=is_immutable,
            expires_at=expires_at,
        )

    def _prune_superseded(
        self, package: str, date_from: date, date_to: date, bin_size: str
    ) -> None:
        """Drop earlier tail chunks that the chunk just written replaces.

        The last planned chunk ends on today, so its key grows by a day at a
        time; the shorter rows sharing its ``date_from`` are never read again.
        """
        try:
            rows = self.store.find_rows(
                TABLE,
                where={
                    "package_name": package,
                    "date_from": date_from.isoformat(),
                    "bin_size": bin_size,
                },
            )
            for stale in rows:
                if str(stale["date_to"]) < date_to.isoformat():
                    self.store.delete_rows(
                        TABLE,
                        {
                            "package_name": package,
                            "date_from": str(stale["date_from"]),
                            "date_to": str(stale["date_to"]),
                            "bin_size": bin_size,
                        },
                    )
        except Exception:
            logger.exception(
                "Failed to prune superseded chunks for %s from %s", package, date_from
            )
