"""CRUD operations for auditing the commit log."""

from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from registry.config import settings
from registry.schemas.commit_log import GroupTransactionsSchema, TransactionSchema
from replay.clock import EPOCH, Clock, SystemClock
from replay.commit_log.sql_store import SqlCommitLogStore
from replay.records import SnapshotWindow


async def get_group_transactions(
    session: AsyncSession,
    entity_group_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    clock: Clock | None = None,
) -> GroupTransactionsSchema | None:
    """Return one group's transactions in (start, end], oldest first.

    The window defaults to everything retained: from the current checkpoint
    (or the epoch) to the last instant known to be durable. Returns None for a group that never committed.
    """
    store = SqlCommitLogStore(
        session,
        settings.commit_log_bucket_count,
        clock or SystemClock(),
        durability_lag=timedelta(milliseconds=settings.commit_log_durability_lag_ms),
    )
    last = await store.last_commit_timestamp(entity_group_id)
    if last is None:
        return None

    lower, upper = await store.coverage()
    window = SnapshotWindow(
        start if start is not None else (lower or EPOCH),
        end if end is not None else upper,
    )
    transactions = await store.scan(window, entity_group_id=entity_group_id)
    return GroupTransactionsSchema(
        entity_group_id=entity_group_id,
        last_commit_timestamp=last,
        window_start=window.start,
        window_end=window.end,
        transactions=[TransactionSchema.model_validate(tx) for tx in transactions],
    )
