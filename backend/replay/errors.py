"""Error taxonomy for the commit log and the replay engine.

Every error here is fatal to a reconstruction call except UnknownKindError,
which the engine counts and skips. Nothing in this package retries: a
reconstruction is a pure read and retrying belongs to the caller.
"""

from __future__ import annotations

from datetime import datetime, timedelta


class ReplayError(Exception):
    """Base error for commit-log and replay operations."""


class WindowGapError(ReplayError):
    """Part of the requested window is not covered by the stored log."""

    def __init__(
        self,
        gap_start: datetime,
        gap_end: datetime,
        bucket_id: int | None = None,
        detail: str | None = None,
    ):
        self.gap_start = gap_start
        self.gap_end = gap_end
        self.bucket_id = bucket_id
        where = f"bucket {bucket_id}" if bucket_id is not None else "commit log"
        message = (
            f"{where} has no coverage for ({gap_start.isoformat()}, "
            f"{gap_end.isoformat()}]"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ClockRegressionError(ReplayError):
    """The proposed commit time is further behind the group's last commit
    than the configured tolerance allows."""

    def __init__(
        self,
        entity_group_id: str,
        proposed: datetime,
        last: datetime,
        tolerance: timedelta,
    ):
        self.entity_group_id = entity_group_id
        self.proposed = proposed
        self.last = last
        self.tolerance = tolerance
        super().__init__(
            f"Clock regression in group '{entity_group_id}': proposed "
            f"{proposed.isoformat()} is {last - proposed} behind last commit "
            f"{last.isoformat()} (tolerance {tolerance})."
        )


class TimestampCollisionError(ReplayError):
    """Two commits of one group share or invert a timestamp."""

    def __init__(self, entity_group_id: str, timestamp: datetime, last: datetime):
        self.entity_group_id = entity_group_id
        self.timestamp = timestamp
        self.last = last
        super().__init__(
            f"Commit at {timestamp.isoformat()} in group '{entity_group_id}' "
            f"is not after the previous commit at {last.isoformat()}."
        )


class UnknownKindError(ReplayError):
    """A record names a kind outside EntityKind."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unknown entity kind '{kind}'.")


class CorruptExportRecordError(ReplayError):
    """One export record could not be decoded."""

    def __init__(self, path: str, line_number: int, detail: str):
        self.path = path
        self.line_number = line_number
        self.detail = detail
        super().__init__(f"Corrupt export record at {path}:{line_number}: {detail}")


class ExportFormatError(ReplayError):
    """The export artifact as a whole is unusable (metadata, missing kind)."""


class CorruptCommitLogError(ReplayError):
    """A commit-log segment or transaction could not be trusted."""


class InvalidWindowError(ReplayError):
    """The requested window cannot produce an exact snapshot."""


class TransactionConflictError(ReplayError):
    """A transaction id was re-appended with different content."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(
            f"Transaction '{transaction_id}' already exists with different content."
        )


class CheckpointError(ReplayError):
    """A retention checkpoint operation violated its precondition."""


class CommitDeadlineError(ReplayError):
    """A stamped commit could not be made durable within the durability lag."""

    def __init__(self, entity_group_id: str, timestamp: datetime, deadline: datetime):
        self.entity_group_id = entity_group_id
        self.timestamp = timestamp
        self.deadline = deadline
        super().__init__(
            f"Commit at {timestamp.isoformat()} in group '{entity_group_id}' "
            f"missed its durability deadline {deadline.isoformat()}; rolled back."
        )
