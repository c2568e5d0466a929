"""SQL-backed commit log, written by the commit path.

Appends are serialized per entity group by locking the group's clock row;
the (entity_group_id, commit_timestamp) unique constraint backs that up.
Everything committed after the current retention checkpoint is retained,
so the store covers (checkpoint, now - durability_lag].
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from registry.models.commit_log import (
    CommitLogMutationRecord,
    CommitLogTransactionRecord,
    EntityGroupClock,
)
from replay.clock import Clock
from replay.commit_log.buckets import bucket_for_group
from replay.errors import TimestampCollisionError, TransactionConflictError, WindowGapError
from replay.records import CommitLogTransaction, Mutation, SnapshotWindow
from replay.retention import load_current_checkpoint

logger = logging.getLogger(__name__)


def _to_domain(record: CommitLogTransactionRecord) -> CommitLogTransaction:
    return CommitLogTransaction(
        transaction_id=record.transaction_id,
        entity_group_id=record.entity_group_id,
        commit_timestamp=record.commit_timestamp,
        mutations=tuple(
            Mutation(
                kind=m.kind,
                entity_id=m.entity_id,
                mutation_type=m.mutation_type,
                payload=m.payload,
            )
            for m in record.mutations
        ),
    )


class SqlCommitLogStore:
    """Commit log persisted in the registry database."""

    def __init__(
        self,
        session: AsyncSession,
        bucket_count: int,
        clock: Clock,
        durability_lag: timedelta = timedelta(0),
    ):
        if bucket_count < 1:
            raise ValueError("bucket_count must be >= 1")
        self.session = session
        self.bucket_count = bucket_count
        self.clock = clock
        self.durability_lag = durability_lag

    # =========================================================================
    # Writes
    # =========================================================================

    async def get(self, transaction_id: str) -> CommitLogTransaction | None:
        record = await self._load(transaction_id)
        return _to_domain(record) if record is not None else None

    async def last_commit_timestamp(
        self, entity_group_id: str, lock: bool = False
    ) -> datetime | None:
        """Return the group's last commit time, optionally locking its row."""
        clock_row = await self._group_clock(entity_group_id, lock=lock)
        return clock_row.last_commit_timestamp if clock_row is not None else None

    async def append(self, transaction: CommitLogTransaction) -> bool:
        """Durably record one transaction (flushed, not committed).

        Re-appending a transaction that is already stored with identical
        content is a no-op, which makes retries after an ambiguous failure
        safe.

        Returns:
            True if the transaction was newly stored, False for a retry.

        Raises:
            TransactionConflictError: If the id exists with other content.
            TimestampCollisionError: If the timestamp is not after the
                group's last commit.
        """
        existing = await self._load(transaction.transaction_id)
        if existing is not None:
            if _to_domain(existing) == transaction:
                logger.debug(f"Transaction {transaction.transaction_id} already stored")
                return False
            raise TransactionConflictError(transaction.transaction_id)

        group = transaction.entity_group_id
        timestamp = transaction.commit_timestamp
        clock_row = await self._group_clock(group, lock=True)
        if clock_row is None:
            self.session.add(
                EntityGroupClock(entity_group_id=group, last_commit_timestamp=timestamp)
            )
        elif timestamp <= clock_row.last_commit_timestamp:
            raise TimestampCollisionError(group, timestamp, clock_row.last_commit_timestamp)
        else:
            clock_row.last_commit_timestamp = timestamp

        record = CommitLogTransactionRecord(
            transaction_id=transaction.transaction_id,
            entity_group_id=group,
            bucket_id=bucket_for_group(group, self.bucket_count),
            commit_timestamp=timestamp,
        )
        record.mutations = [
            CommitLogMutationRecord(
                ordinal=ordinal,
                kind=str(m.kind),
                entity_id=m.entity_id,
                mutation_type=m.mutation_type,
                payload=m.payload,
            )
            for ordinal, m in enumerate(transaction.mutations)
        ]
        self.session.add(record)
        await self.session.flush()
        return True

    # =========================================================================
    # Reads
    # =========================================================================

    async def coverage(self) -> tuple[datetime | None, datetime]:
        """Return the (lower, upper] commit time this store can serve.

        A None lower bound means nothing has ever been purged.
        """
        checkpoint = await load_current_checkpoint(self.session)
        return checkpoint, self.clock.now_utc() - self.durability_lag

    async def check_coverage(self, window: SnapshotWindow) -> None:
        """Raise WindowGapError unless the whole window is retained."""
        lower, upper = await self.coverage()
        if lower is not None and window.start < lower:
            raise WindowGapError(
                window.start, lower, detail="purged before the retention checkpoint"
            )
        if window.end > upper:
            raise WindowGapError(upper, window.end, detail="not yet durable")

    async def scan(
        self,
        window: SnapshotWindow,
        entity_group_id: str | None = None,
    ) -> list[CommitLogTransaction]:
        """Return transactions in the window ordered by (time, group, id).

        Raises:
            WindowGapError: If the window reaches before the checkpoint or
                past the durable horizon.
        """
        await self.check_coverage(window)

        stmt = (
            select(CommitLogTransactionRecord)
            .options(selectinload(CommitLogTransactionRecord.mutations))
            .where(
                CommitLogTransactionRecord.commit_timestamp > window.start,
                CommitLogTransactionRecord.commit_timestamp <= window.end,
            )
        )
        if entity_group_id is not None:
            stmt = stmt.where(
                CommitLogTransactionRecord.bucket_id
                == bucket_for_group(entity_group_id, self.bucket_count),
                CommitLogTransactionRecord.entity_group_id == entity_group_id,
            )
        stmt = stmt.order_by(
            CommitLogTransactionRecord.commit_timestamp,
            CommitLogTransactionRecord.entity_group_id,
            CommitLogTransactionRecord.transaction_id,
        )

        result = await self.session.execute(stmt)
        return [_to_domain(record) for record in result.scalars().all()]

    async def _load(self, transaction_id: str) -> CommitLogTransactionRecord | None:
        stmt = (
            select(CommitLogTransactionRecord)
            .options(selectinload(CommitLogTransactionRecord.mutations))
            .where(CommitLogTransactionRecord.transaction_id == transaction_id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _group_clock(
        self, entity_group_id: str, lock: bool = False
    ) -> EntityGroupClock | None:
        stmt = select(EntityGroupClock).where(
            EntityGroupClock.entity_group_id == entity_group_id
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
