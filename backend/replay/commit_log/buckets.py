"""Entity-group bucketing and per-bucket coverage arithmetic."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime

from replay.errors import WindowGapError


def bucket_for_group(entity_group_id: str, bucket_count: int) -> int:
    """Stable bucket assignment for an entity group.

    Uses SHA-256 rather than hash() so the mapping survives interpreter
    restarts and matches between the writer and offline readers.
    """
    if bucket_count < 1:
        raise ValueError("bucket_count must be >= 1")
    digest = hashlib.sha256(entity_group_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % bucket_count


def bucket_dir_name(bucket_id: int) -> str:
    return f"bucket-{bucket_id:04d}"


@dataclass(frozen=True)
class CoveredRange:
    """Commit time (lower, upper] durably covered by one stored segment."""

    lower: datetime
    upper: datetime

    def contains(self, timestamp: datetime) -> bool:
        return self.lower < timestamp <= self.upper


def check_coverage(
    ranges: list[CoveredRange],
    start: datetime,
    end: datetime,
    bucket_id: int | None = None,
) -> None:
    """Ensure the ranges jointly cover (start, end] without holes.

    Ranges may overlap and arrive in any order.

    Raises:
        WindowGapError: Naming the first uncovered sub-range.
    """
    if start >= end:
        return

    cursor = start
    for covered in sorted(ranges, key=lambda r: (r.lower, r.upper)):
        if covered.upper <= cursor:
            continue
        if covered.lower > cursor:
            raise WindowGapError(cursor, covered.lower, bucket_id=bucket_id)
        cursor = covered.upper
        if cursor >= end:
            return

    raise WindowGapError(cursor, end, bucket_id=bucket_id)
