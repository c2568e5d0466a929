"""File-backed commit log: the offline artifact a reconstruction reads.

Layout under the log location:

    commit_log_manifest.json            {"format_version": 1, "bucket_count": N}
    bucket-0000/<lower>_<upper>.jsonl   transactions with lower < ts <= upper
    bucket-0001/...

Segment bounds are epoch microseconds. A bucket's segments must cover a
requested window without holes; an empty segment file is valid coverage
for a quiet bucket. Segments may overlap (e.g. a re-run export), in which
case duplicate transactions must be identical and are read once.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from replay.clock import from_micros, to_micros
from replay.commit_log.buckets import (
    CoveredRange,
    bucket_dir_name,
    bucket_for_group,
    check_coverage,
)
from replay.errors import CorruptCommitLogError
from replay.records import (
    CommitLogTransaction,
    SnapshotWindow,
    transaction_from_dict,
    transaction_to_dict,
)

logger = logging.getLogger(__name__)

MANIFEST_NAME = "commit_log_manifest.json"
FORMAT_VERSION = 1

_SEGMENT_RE = re.compile(r"^(-?\d+)_(-?\d+)\.jsonl$")


@dataclass(frozen=True)
class SegmentInfo:
    """A stored segment file and the commit time it covers."""

    bucket_id: int
    covered: CoveredRange
    path: Path


class FileCommitLogStore:
    """Reads and writes the bucketed, time-segmented commit-log artifact."""

    def __init__(self, location: Path | str):
        self.location = Path(location)
        self._bucket_count: int | None = None

    # =========================================================================
    # Manifest
    # =========================================================================

    @classmethod
    def create(cls, location: Path | str, bucket_count: int) -> FileCommitLogStore:
        """Open a log location for writing, creating the manifest if needed.

        Raises:
            CorruptCommitLogError: If an existing manifest disagrees on
                bucket_count (segments would land in the wrong buckets).
        """
        store = cls(location)
        store.location.mkdir(parents=True, exist_ok=True)
        manifest = store.location / MANIFEST_NAME
        if manifest.exists():
            if store.bucket_count != bucket_count:
                raise CorruptCommitLogError(
                    f"{manifest} declares {store.bucket_count} buckets, "
                    f"writer uses {bucket_count}."
                )
            return store

        manifest.write_text(
            json.dumps({"format_version": FORMAT_VERSION, "bucket_count": bucket_count})
        )
        store._bucket_count = bucket_count
        return store

    @property
    def bucket_count(self) -> int:
        if self._bucket_count is None:
            self._bucket_count = self._read_manifest()
        return self._bucket_count

    def _read_manifest(self) -> int:
        manifest = self.location / MANIFEST_NAME
        try:
            data = json.loads(manifest.read_text())
        except FileNotFoundError:
            raise CorruptCommitLogError(f"No commit log manifest at {manifest}.") from None
        except (OSError, json.JSONDecodeError) as e:
            raise CorruptCommitLogError(f"Unreadable manifest {manifest}: {e}") from e

        if data.get("format_version") != FORMAT_VERSION:
            raise CorruptCommitLogError(
                f"Unsupported commit log format {data.get('format_version')!r}."
            )
        bucket_count = data.get("bucket_count")
        if not isinstance(bucket_count, int) or bucket_count < 1:
            raise CorruptCommitLogError(f"Invalid bucket_count {bucket_count!r}.")
        return bucket_count

    # =========================================================================
    # Segments
    # =========================================================================

    def segments(self, bucket_id: int) -> list[SegmentInfo]:
        """List a bucket's segments ordered by lower bound."""
        bucket_dir = self.location / bucket_dir_name(bucket_id)
        if not bucket_dir.is_dir():
            return []

        found: list[SegmentInfo] = []
        for path in bucket_dir.iterdir():
            match = _SEGMENT_RE.match(path.name)
            if match is None:
                continue
            lower, upper = (from_micros(int(v)) for v in match.groups())
            if lower >= upper:
                raise CorruptCommitLogError(f"Segment {path} has an empty range.")
            found.append(SegmentInfo(bucket_id, CoveredRange(lower, upper), path))

        found.sort(key=lambda s: (s.covered.lower, s.covered.upper))
        return found

    def write_segment(
        self,
        bucket_id: int,
        lower: datetime,
        upper: datetime,
        transactions: list[CommitLogTransaction],
    ) -> Path:
        """Write one segment covering (lower, upper] for a bucket.

        The file is written under a temporary name and renamed into place,
        so readers never see a partial segment as coverage.
        """
        if lower >= upper:
            raise ValueError("Segment lower bound must precede upper bound.")
        if not 0 <= bucket_id < self.bucket_count:
            raise ValueError(f"Bucket {bucket_id} outside 0..{self.bucket_count - 1}.")

        covered = CoveredRange(lower, upper)
        for tx in transactions:
            self._check_placement(tx, bucket_id, covered, where="write")

        bucket_dir = self.location / bucket_dir_name(bucket_id)
        bucket_dir.mkdir(parents=True, exist_ok=True)
        path = bucket_dir / f"{to_micros(lower)}_{to_micros(upper)}.jsonl"
        tmp_path = path.with_suffix(".jsonl.tmp")

        with tmp_path.open("w", encoding="utf-8") as f:
            for tx in sorted(transactions, key=lambda t: t.sort_key):
                f.write(json.dumps(transaction_to_dict(tx), sort_keys=True))
                f.write("\n")
        os.replace(tmp_path, path)

        logger.debug(
            f"Wrote segment {path.name} to {bucket_dir.name} "
            f"({len(transactions)} transactions)"
        )
        return path

    def read_segment(self, segment: SegmentInfo) -> list[CommitLogTransaction]:
        """Decode every transaction in a segment.

        Raises:
            CorruptCommitLogError: On undecodable lines or transactions that
                do not belong to the segment's bucket or time range.
        """
        transactions: list[CommitLogTransaction] = []
        with segment.path.open("r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    tx = transaction_from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    raise CorruptCommitLogError(
                        f"{segment.path}:{line_number}: {e!r}"
                    ) from e
                self._check_placement(
                    tx, segment.bucket_id, segment.covered, where=str(segment.path)
                )
                transactions.append(tx)
        return transactions

    def _check_placement(
        self,
        tx: CommitLogTransaction,
        bucket_id: int,
        covered: CoveredRange,
        where: str,
    ) -> None:
        expected_bucket = bucket_for_group(tx.entity_group_id, self.bucket_count)
        if expected_bucket != bucket_id:
            raise CorruptCommitLogError(
                f"{where}: transaction {tx.transaction_id} of group "
                f"'{tx.entity_group_id}' belongs in bucket {expected_bucket}, "
                f"not {bucket_id}."
            )
        if not covered.contains(tx.commit_timestamp):
            raise CorruptCommitLogError(
                f"{where}: transaction {tx.transaction_id} at "
                f"{tx.commit_timestamp.isoformat()} lies outside "
                f"({covered.lower.isoformat()}, {covered.upper.isoformat()}]."
            )

    # =========================================================================
    # Scanning
    # =========================================================================

    def scan_bucket(
        self,
        bucket_id: int,
        window: SnapshotWindow,
        entity_group_id: str | None = None,
    ) -> list[CommitLogTransaction]:
        """Read one bucket's transactions inside the window, oldest first.

        Raises:
            WindowGapError: If the bucket's segments leave part of the
                window uncovered.
            CorruptCommitLogError: On unreadable or conflicting segments.
        """
        segments = self.segments(bucket_id)
        check_coverage(
            [s.covered for s in segments], window.start, window.end, bucket_id=bucket_id
        )

        seen: dict[str, CommitLogTransaction] = {}
        for segment in segments:
            if segment.covered.upper <= window.start or segment.covered.lower >= window.end:
                continue
            for tx in self.read_segment(segment):
                if not window.contains(tx.commit_timestamp):
                    continue
                if entity_group_id is not None and tx.entity_group_id != entity_group_id:
                    continue
                previous = seen.get(tx.transaction_id)
                if previous is not None and previous != tx:
                    raise CorruptCommitLogError(
                        f"Transaction {tx.transaction_id} appears in bucket "
                        f"{bucket_id} with conflicting content."
                    )
                seen[tx.transaction_id] = tx

        return sorted(seen.values(), key=lambda t: t.sort_key)

    async def scan(
        self,
        window: SnapshotWindow,
        entity_group_id: str | None = None,
    ) -> list[CommitLogTransaction]:
        """Scan the window across all buckets (or the one holding a group).

        Buckets are read concurrently; the result is sorted by commit time
        with group and transaction id as tie-breakers.
        """
        if entity_group_id is not None:
            bucket_ids = [bucket_for_group(entity_group_id, self.bucket_count)]
        else:
            bucket_ids = list(range(self.bucket_count))

        per_bucket = await asyncio.gather(
            *(
                asyncio.to_thread(self.scan_bucket, bucket_id, window, entity_group_id)
                for bucket_id in bucket_ids
            )
        )

        merged = [tx for bucket in per_bucket for tx in bucket]
        merged.sort(key=lambda t: t.sort_key)
        return merged

    # =========================================================================
    # Retention
    # =========================================================================

    def purge_before(self, checkpoint: datetime) -> int:
        """Delete segments whose every transaction is older than checkpoint.

        Returns:
            Number of segment files removed.
        """
        removed = 0
        for bucket_id in range(self.bucket_count):
            for segment in self.segments(bucket_id):
                if segment.covered.upper < checkpoint:
                    segment.path.unlink()
                    removed += 1
        if removed:
            logger.info(
                f"Purged {removed} commit log segments older than "
                f"{checkpoint.isoformat()} from {self.location}"
            )
        return removed
