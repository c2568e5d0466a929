"""Tests for registry.crud against an in-memory database."""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from registry.config import settings
from registry.crud.commit_log import get_group_transactions
from registry.crud.retention import (
    advance_checkpoint,
    confirm_consumer,
    get_checkpoint_status,
    purge_before,
)
from registry.models.enums import EntityKind, MutationType
from replay.clock import FakeClock
from replay.commit_log.sql_store import SqlCommitLogStore
from replay.errors import CheckpointError, WindowGapError
from replay.records import CommitLogTransaction, Mutation


async def _commit_history(session: AsyncSession, clock: FakeClock) -> None:
    store = SqlCommitLogStore(session, settings.commit_log_bucket_count, clock)
    t0 = clock.now_utc()
    for i in range(3):
        await store.append(
            CommitLogTransaction(
                transaction_id=f"tx{i}",
                entity_group_id="domain/a.tld",
                commit_timestamp=t0 + timedelta(minutes=i),
                mutations=(Mutation.upsert(EntityKind.DOMAIN, "a.tld", {"rev": i}),),
            )
        )
    await session.commit()
    clock.advance(seconds=600)


class TestGroupTransactions:
    @pytest.mark.asyncio
    async def test_defaults_to_everything_retained(
        self, db_session: AsyncSession, clock: FakeClock
    ) -> None:
        t0 = clock.now_utc()
        await _commit_history(db_session, clock)

        result = await get_group_transactions(db_session, "domain/a.tld", clock=clock)

        assert [tx.transaction_id for tx in result.transactions] == ["tx0", "tx1", "tx2"]
        assert result.last_commit_timestamp == t0 + timedelta(minutes=2)
        assert result.window_end == clock.now_utc() - timedelta(
            milliseconds=settings.commit_log_durability_lag_ms
        )
        assert result.transactions[0].mutations[0].mutation_type == MutationType.UPSERT

    @pytest.mark.asyncio
    async def test_recent_commits_are_not_yet_covered(
        self, db_session: AsyncSession, clock: FakeClock
    ) -> None:
        await _commit_history(db_session, clock)
        store = SqlCommitLogStore(db_session, settings.commit_log_bucket_count, clock)
        recent = CommitLogTransaction(
            transaction_id="tx-recent",
            entity_group_id="domain/a.tld",
            commit_timestamp=clock.now_utc(),
            mutations=(Mutation.delete(EntityKind.DOMAIN, "a.tld"),),
        )
        await store.append(recent)
        await db_session.commit()

        result = await get_group_transactions(db_session, "domain/a.tld", clock=clock)
        assert "tx-recent" not in [tx.transaction_id for tx in result.transactions]
        assert result.last_commit_timestamp == recent.commit_timestamp

        with pytest.raises(WindowGapError, match="not yet durable"):
            await get_group_transactions(
                db_session, "domain/a.tld", end=clock.now_utc(), clock=clock
            )

    @pytest.mark.asyncio
    async def test_window(self, db_session: AsyncSession, clock: FakeClock) -> None:
        t0 = clock.now_utc()
        await _commit_history(db_session, clock)

        result = await get_group_transactions(
            db_session, "domain/a.tld", start=t0, end=t0 + timedelta(minutes=1), clock=clock
        )
        assert [tx.transaction_id for tx in result.transactions] == ["tx1"]

    @pytest.mark.asyncio
    async def test_unknown_group(self, db_session: AsyncSession, clock: FakeClock) -> None:
        assert await get_group_transactions(db_session, "nope", clock=clock) is None

    @pytest.mark.asyncio
    async def test_window_before_checkpoint(
        self, db_session: AsyncSession, clock: FakeClock
    ) -> None:
        t0 = clock.now_utc()
        await _commit_history(db_session, clock)
        await advance_checkpoint(db_session, t0 + timedelta(minutes=1), clock=clock)

        with pytest.raises(WindowGapError):
            await get_group_transactions(db_session, "domain/a.tld", start=t0, clock=clock)


class TestRetentionCrud:
    @pytest.mark.asyncio
    async def test_status_reflects_confirmations(
        self, db_session: AsyncSession, clock: FakeClock
    ) -> None:
        t0 = clock.now_utc()
        clock.advance(seconds=3600)
        await confirm_consumer(db_session, "loader", t0 + timedelta(minutes=30), clock=clock)
        await confirm_consumer(db_session, "backup", t0 + timedelta(minutes=10), clock=clock)

        status = await get_checkpoint_status(db_session, clock=clock)
        assert status.current_checkpoint is None
        assert status.safe_checkpoint == t0 + timedelta(minutes=10)
        assert [c.consumer_name for c in status.consumers] == ["backup", "loader"]

    @pytest.mark.asyncio
    async def test_advance_and_purge(self, db_session: AsyncSession, clock: FakeClock) -> None:
        t0 = clock.now_utc()
        await _commit_history(db_session, clock)
        await confirm_consumer(db_session, "loader", t0 + timedelta(minutes=5), clock=clock)

        with pytest.raises(CheckpointError):
            await advance_checkpoint(db_session, t0 + timedelta(minutes=6), clock=clock)
        checkpoint = await advance_checkpoint(
            db_session, t0 + timedelta(minutes=2), note="nightly", clock=clock
        )
        assert checkpoint.note == "nightly"

        result = await purge_before(db_session, clock=clock)
        assert result.checkpoint == t0 + timedelta(minutes=2)
        assert result.transactions_purged == 2

    @pytest.mark.asyncio
    async def test_purge_without_checkpoint(
        self, db_session: AsyncSession, clock: FakeClock
    ) -> None:
        assert await purge_before(db_session, clock=clock) is None
