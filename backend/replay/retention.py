"""Checkpoint advancement and commit-log retention.

A checkpoint T promises that no future replay window starts before T, so
commit-log data older than T may be deleted. T only advances once every
registered consumer has confirmed through it.

The core never decides *when* to advance or purge: both are explicit calls
made by an operator, a scheduled job or the API.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from registry.models.commit_log import CommitLogMutationRecord, CommitLogTransactionRecord
from registry.models.retention import CommitLogCheckpoint, ReplayConsumer
from replay.clock import Clock, ensure_utc
from replay.commit_log.file_store import FileCommitLogStore
from replay.errors import CheckpointError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumerState:
    """A consumer's confirmation, detached from the ORM."""

    consumer_name: str
    confirmed_through: datetime | None


@dataclass
class PurgeResult:
    """Result of purging the commit log before a checkpoint."""

    checkpoint: datetime
    transactions_purged: int = 0
    segments_purged: int = 0


def safe_checkpoint(consumers: Iterable[ConsumerState]) -> datetime | None:
    """Latest instant every consumer has confirmed, or None if one has not.

    With no consumers at all there is nothing to bound the checkpoint and
    None is returned as well; callers decide how to treat that case.
    """
    confirmed: list[datetime] = []
    for consumer in consumers:
        if consumer.confirmed_through is None:
            return None
        confirmed.append(consumer.confirmed_through)
    return min(confirmed) if confirmed else None


async def load_current_checkpoint(session: AsyncSession) -> datetime | None:
    """Return the current (latest) retention checkpoint, if any."""
    result = await session.execute(select(func.max(CommitLogCheckpoint.checkpoint_time)))
    return result.scalar_one_or_none()


class RetentionService:
    """Manages replay consumers, checkpoint advancement and purges."""

    def __init__(self, session: AsyncSession, clock: Clock):
        self.session = session
        self.clock = clock

    async def current_checkpoint(self) -> datetime | None:
        return await load_current_checkpoint(self.session)

    async def list_consumers(self) -> list[ReplayConsumer]:
        stmt = select(ReplayConsumer).order_by(ReplayConsumer.consumer_name)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def register_consumer(
        self, consumer_name: str, description: str | None = None
    ) -> ReplayConsumer:
        """Register a consumer. Registering an existing name is a no-op.

        A new consumer starts unconfirmed and blocks advancement until it
        confirms.
        """
        consumer = await self.session.get(ReplayConsumer, consumer_name)
        if consumer is not None:
            return consumer

        consumer = ReplayConsumer(
            consumer_name=consumer_name,
            confirmed_through=None,
            description=description,
        )
        self.session.add(consumer)
        await self.session.flush()
        logger.info(f"Registered replay consumer '{consumer_name}'")
        return consumer

    async def confirm_consumer(
        self, consumer_name: str, confirmed_through: datetime
    ) -> ReplayConsumer:
        """Record that a consumer no longer needs data before an instant.

        Raises:
            CheckpointError: If the consumer is unknown, the confirmation
                moves backwards, or it lies in the future.
        """
        confirmed_through = ensure_utc(confirmed_through)
        consumer = await self.session.get(ReplayConsumer, consumer_name)
        if consumer is None:
            raise CheckpointError(f"Unknown replay consumer '{consumer_name}'.")

        now = self.clock.now_utc()
        if confirmed_through > now:
            raise CheckpointError(
                f"Consumer '{consumer_name}' cannot confirm through "
                f"{confirmed_through.isoformat()}, which is after now ({now.isoformat()})."
            )
        if (
            consumer.confirmed_through is not None
            and confirmed_through < consumer.confirmed_through
        ):
            raise CheckpointError(
                f"Consumer '{consumer_name}' already confirmed through "
                f"{consumer.confirmed_through.isoformat()}; confirmations cannot "
                "move backwards."
            )

        consumer.confirmed_through = confirmed_through
        await self.session.flush()
        return consumer

    async def advance_checkpoint(
        self, checkpoint_time: datetime, note: str | None = None
    ) -> CommitLogCheckpoint:
        """Advance the retention checkpoint.

        Raises:
            CheckpointError: If the checkpoint would not move forward, lies in
                the future, or any registered consumer has not confirmed
                through it.
        """
        checkpoint_time = ensure_utc(checkpoint_time)
        now = self.clock.now_utc()
        if checkpoint_time > now:
            raise CheckpointError(
                f"Checkpoint {checkpoint_time.isoformat()} is in the future."
            )

        current = await self.current_checkpoint()
        if current is not None and checkpoint_time <= current:
            raise CheckpointError(
                f"Checkpoint {checkpoint_time.isoformat()} does not advance the "
                f"current checkpoint {current.isoformat()}."
            )

        consumers = await self.list_consumers()
        pending = [
            c.consumer_name
            for c in consumers
            if c.confirmed_through is None or c.confirmed_through < checkpoint_time
        ]
        if pending:
            raise CheckpointError(
                f"Cannot advance checkpoint to {checkpoint_time.isoformat()}: "
                f"consumers {', '.join(pending)} have not confirmed through it."
            )
        if not consumers:
            logger.warning(
                "No replay consumers registered; advancing checkpoint without "
                "confirmation."
            )

        checkpoint = CommitLogCheckpoint(checkpoint_time=checkpoint_time, note=note)
        self.session.add(checkpoint)
        await self.session.flush()
        logger.info(f"Advanced commit log checkpoint to {checkpoint_time.isoformat()}")
        return checkpoint

    async def purge_before(
        self,
        checkpoint: datetime,
        archive: FileCommitLogStore | None = None,
    ) -> PurgeResult:
        """Delete commit-log data strictly older than a checkpoint.

        Args:
            checkpoint: Purge horizon. Must not be after the current
                checkpoint.
            archive: Optional file artifact to purge alongside the database.

        Raises:
            CheckpointError: If no checkpoint exists or the horizon is past it.
        """
        checkpoint = ensure_utc(checkpoint)
        current = await self.current_checkpoint()
        if current is None:
            raise CheckpointError("No checkpoint has been advanced; nothing may be purged.")
        if checkpoint > current:
            raise CheckpointError(
                f"Cannot purge before {checkpoint.isoformat()}: current checkpoint "
                f"is {current.isoformat()}."
            )

        doomed = select(CommitLogTransactionRecord.transaction_id).where(
            CommitLogTransactionRecord.commit_timestamp < checkpoint
        )
        await self.session.execute(
            delete(CommitLogMutationRecord)
            .where(CommitLogMutationRecord.transaction_id.in_(doomed))
            .execution_options(synchronize_session=False)
        )
        deleted = await self.session.execute(
            delete(CommitLogTransactionRecord)
            .where(CommitLogTransactionRecord.commit_timestamp < checkpoint)
            .execution_options(synchronize_session=False)
        )

        result = PurgeResult(checkpoint=checkpoint, transactions_purged=deleted.rowcount or 0)
        if archive is not None:
            result.segments_purged = archive.purge_before(checkpoint)

        logger.info(
            f"Purged {result.transactions_purged} transactions and "
            f"{result.segments_purged} segments before {checkpoint.isoformat()}"
        )
        return result
