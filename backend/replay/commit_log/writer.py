"""Commit path: stamp, validate and durably append one transaction.

Each commit opens its own session so commits against different groups can
proceed concurrently. Commits against the same group are serialized twice:
by an in-process lock (so the timestamp authority sees them in order) and
by the row lock SqlCommitLogStore.append takes on the group's clock row
(so separate processes cannot interleave).

With a durability lag set, a commit must become durable within that lag of
its timestamp or it is rolled back. Readers rely on this: once the clock has
passed T + lag, every transaction stamped at or before T is either visible or
never will be.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from replay.clock import Clock
from replay.commit_log.sql_store import SqlCommitLogStore
from replay.errors import CommitDeadlineError
from replay.records import CommitLogTransaction, Mutation, parse_kind
from replay.timestamps import TimestampAuthority

logger = logging.getLogger(__name__)


def _new_transaction_id() -> str:
    return uuid.uuid4().hex


class CommitWriter:
    """Commits mutations against entity groups."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bucket_count: int,
        authority: TimestampAuthority,
        clock: Clock,
        id_factory: Callable[[], str] = _new_transaction_id,
        durability_lag: timedelta | None = None,
    ):
        self.session_factory = session_factory
        self.bucket_count = bucket_count
        self.authority = authority
        self.clock = clock
        self.id_factory = id_factory
        self.durability_lag = durability_lag
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, entity_group_id: str) -> asyncio.Lock:
        lock = self._locks.get(entity_group_id)
        if lock is None:
            lock = self._locks[entity_group_id] = asyncio.Lock()
        return lock

    async def commit(
        self,
        entity_group_id: str,
        mutations: Sequence[Mutation],
        transaction_id: str | None = None,
    ) -> datetime:
        """Commit mutations atomically and return the commit timestamp.

        Passing an explicit transaction_id makes the call retryable: if that
        transaction is already durable its original timestamp is returned
        and nothing is written.

        Raises:
            ValueError: If there are no mutations.
            UnknownKindError: If a mutation names an unknown kind.
            ClockRegressionError: If the wall clock fell too far behind.
            TimestampCollisionError: If another process committed to the
                group with a later timestamp in the meantime.
            CommitDeadlineError: If the commit was stamped but could not be
                made durable within the durability lag.
        """
        if not mutations:
            raise ValueError("A commit needs at least one mutation.")
        for mutation in mutations:
            parse_kind(mutation.kind)

        async with self._lock_for(entity_group_id):
            async with self.session_factory() as session:
                store = SqlCommitLogStore(session, self.bucket_count, self.clock)

                if transaction_id is not None:
                    existing = await store.get(transaction_id)
                    if existing is not None:
                        logger.info(
                            f"Transaction {transaction_id} already committed at "
                            f"{existing.commit_timestamp.isoformat()}"
                        )
                        return existing.commit_timestamp

                try:
                    last = await store.last_commit_timestamp(entity_group_id, lock=True)
                    self.authority.observe(entity_group_id, last)
                    timestamp = self.authority.next_timestamp(
                        entity_group_id, self.clock.now_utc()
                    )
                    transaction = CommitLogTransaction(
                        transaction_id=transaction_id or self.id_factory(),
                        entity_group_id=entity_group_id,
                        commit_timestamp=timestamp,
                        mutations=tuple(mutations),
                    )
                    await store.append(transaction)
                    if self.durability_lag is not None:
                        deadline = timestamp + self.durability_lag
                        if self.clock.now_utc() > deadline:
                            raise CommitDeadlineError(entity_group_id, timestamp, deadline)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        logger.debug(
            f"Committed {transaction.transaction_id} to group {entity_group_id} "
            f"at {timestamp.isoformat()} ({len(mutations)} mutations)"
        )
        return timestamp
