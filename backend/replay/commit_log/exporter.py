"""Copy a window of the SQL commit log into the file artifact."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass

from replay.commit_log.buckets import bucket_for_group
from replay.commit_log.file_store import FileCommitLogStore
from replay.commit_log.sql_store import SqlCommitLogStore
from replay.records import CommitLogTransaction, SnapshotWindow

logger = logging.getLogger(__name__)


@dataclass
class CommitLogExportResult:
    """Summary of one commit-log export run."""

    window: SnapshotWindow
    segments_written: int = 0
    transactions_exported: int = 0


async def export_commit_log(
    source: SqlCommitLogStore,
    target: FileCommitLogStore,
    window: SnapshotWindow,
) -> CommitLogExportResult:
    """Write every bucket's transactions in the window as one segment each.

    Quiet buckets get an empty segment, which still records that the window
    is covered for them. Re-exporting an overlapping window is safe: readers
    de-duplicate identical transactions.

    Raises:
        WindowGapError: If the SQL store no longer (or not yet) retains the
            whole window.
    """
    result = CommitLogExportResult(window=window)
    if window.start == window.end:
        return result

    transactions = await source.scan(window)

    by_bucket: dict[int, list[CommitLogTransaction]] = defaultdict(list)
    for tx in transactions:
        by_bucket[bucket_for_group(tx.entity_group_id, target.bucket_count)].append(tx)

    for bucket_id in range(target.bucket_count):
        target.write_segment(bucket_id, window.start, window.end, by_bucket[bucket_id])
        result.segments_written += 1
    result.transactions_exported = len(transactions)

    logger.info(
        f"Exported {result.transactions_exported} transactions for {window} "
        f"into {result.segments_written} segments at {target.location}"
    )
    return result
