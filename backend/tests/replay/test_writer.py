"""Tests for replay.commit_log.writer: the commit path."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from registry.models.commit_log import CommitLogTransactionRecord
from registry.models.enums import EntityKind
from replay.clock import TICK, FakeClock
from replay.commit_log.sql_store import SqlCommitLogStore
from replay.commit_log.writer import CommitWriter
from replay.errors import ClockRegressionError, CommitDeadlineError, UnknownKindError
from replay.records import Mutation, SnapshotWindow
from replay.timestamps import TimestampAuthority

BUCKETS = 4


def _writer(
    session_factory: async_sessionmaker[AsyncSession],
    clock: FakeClock,
    tolerance: timedelta = timedelta(seconds=5),
) -> CommitWriter:
    return CommitWriter(session_factory, BUCKETS, TimestampAuthority(tolerance), clock)


def _upsert(entity_id: str = "d1", **payload: object) -> Mutation:
    return Mutation.upsert(EntityKind.DOMAIN, entity_id, payload or {"name": entity_id})


async def _count(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count()).select_from(CommitLogTransactionRecord)
        )


class TestCommit:
    @pytest.mark.asyncio
    async def test_commit_uses_clock_time(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        writer = _writer(session_factory, clock)
        assert await writer.commit("g1", [_upsert()]) == clock.now_utc()
        assert await _count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_same_instant_commits_advance_one_tick(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        writer = _writer(session_factory, clock)
        first = await writer.commit("g1", [_upsert()])
        second = await writer.commit("g1", [_upsert(name="b")])
        assert second == first + TICK

    @pytest.mark.asyncio
    async def test_commits_are_durable_and_scannable(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        writer = _writer(session_factory, clock)
        start = clock.now_utc() - TICK
        await writer.commit("g1", [_upsert("d1"), Mutation.delete(EntityKind.HOST, "h1")])
        clock.advance(seconds=1)
        await writer.commit("g2", [_upsert("d2")])

        async with session_factory() as session:
            store = SqlCommitLogStore(session, BUCKETS, clock)
            result = await store.scan(SnapshotWindow(start, clock.now_utc()))
        assert [tx.entity_group_id for tx in result] == ["g1", "g2"]
        assert len(result[0].mutations) == 2

    @pytest.mark.asyncio
    async def test_concurrent_commits_to_one_group_are_ordered(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        writer = _writer(session_factory, clock)
        stamps = await asyncio.gather(
            *(writer.commit("g1", [_upsert(name=str(i))]) for i in range(5))
        )
        assert sorted(stamps) == [clock.now_utc() + i * TICK for i in range(5)]
        assert len(set(stamps)) == 5

    @pytest.mark.asyncio
    async def test_fresh_writer_continues_after_stored_commits(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        first = await _writer(session_factory, clock).commit("g1", [_upsert()])
        clock.set(first - timedelta(seconds=1))

        second = await _writer(session_factory, clock).commit("g1", [_upsert(name="b")])
        assert second == first + TICK

    @pytest.mark.asyncio
    async def test_clock_regression_is_refused(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        writer = _writer(session_factory, clock, tolerance=timedelta(seconds=1))
        await writer.commit("g1", [_upsert()])
        clock.advance(seconds=-10)

        with pytest.raises(ClockRegressionError):
            await writer.commit("g1", [_upsert(name="b")])
        assert await _count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_unknown_kind_is_refused(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        writer = _writer(session_factory, clock)
        with pytest.raises(UnknownKindError):
            await writer.commit("g1", [Mutation.upsert("BillingEvent", "b1", {"x": 1})])
        assert await _count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_empty_commit_is_refused(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        with pytest.raises(ValueError):
            await _writer(session_factory, clock).commit("g1", [])

    @pytest.mark.asyncio
    async def test_retry_with_transaction_id_returns_original_timestamp(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        writer = _writer(session_factory, clock)
        first = await writer.commit("g1", [_upsert()], transaction_id="tx-42")
        clock.advance(seconds=3)

        again = await writer.commit("g1", [_upsert()], transaction_id="tx-42")
        assert again == first
        assert await _count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_generated_ids_come_from_factory(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        ids = iter(["a", "b"])
        writer = CommitWriter(
            session_factory, BUCKETS, TimestampAuthority(), clock, id_factory=lambda: next(ids)
        )
        await writer.commit("g1", [_upsert()])
        await writer.commit("g1", [_upsert(name="x")])

        async with session_factory() as session:
            assert await session.get(CommitLogTransactionRecord, "a") is not None
            assert await session.get(CommitLogTransactionRecord, "b") is not None


class TestDurabilityDeadline:
    @pytest.mark.asyncio
    async def test_slow_commit_is_rolled_back(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        def stalled_id() -> str:
            # Runs after the timestamp is taken, before the commit.
            clock.advance(seconds=3)
            return "tx-slow"

        writer = CommitWriter(
            session_factory,
            BUCKETS,
            TimestampAuthority(),
            clock,
            id_factory=stalled_id,
            durability_lag=timedelta(seconds=2),
        )
        with pytest.raises(CommitDeadlineError) as exc_info:
            await writer.commit("g1", [_upsert()])

        assert exc_info.value.deadline == exc_info.value.timestamp + timedelta(seconds=2)
        assert await _count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_commit_within_lag_is_durable(
        self, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
    ) -> None:
        def stalled_id() -> str:
            clock.advance(seconds=1)
            return "tx-ok"

        writer = CommitWriter(
            session_factory,
            BUCKETS,
            TimestampAuthority(),
            clock,
            id_factory=stalled_id,
            durability_lag=timedelta(seconds=2),
        )
        stamped = await writer.commit("g1", [_upsert()])

        assert stamped == clock.now_utc() - timedelta(seconds=1)
        assert await _count(session_factory) == 1
