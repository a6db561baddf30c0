from __future__ import annotations

from datetime import date, timedelta
from typing import Iterator

from oss_stats.config import CHUNK_DAYS
from oss_stats.models import ChunkRange


def plan_chunks(
    start: date, end: date, max_days: int = CHUNK_DAYS
) -> Iterator[ChunkRange]:
    """Split ``[start, end]`` into contiguous ranges of at most ``max_days`` days.

    Boundaries step forward from ``start``, so the same inputs always produce
    the same ranges whatever day the plan is computed on. The last range is
    clipped to ``end``; nothing is produced when ``start > end``.
    """
    if max_days < 1:
        raise ValueError("max_days must be positive")
    span = timedelta(days=max_days - 1)
    current = start
    while current <= end:
        chunk_end = min(current + span, end)
        yield ChunkRange(start=current, end=chunk_end)
        current = chunk_end + timedelta(days=1)
