"""Tests for registry.models: schema shape and timestamp storage."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from registry.models import (
    Base,
    CommitLogCheckpoint,
    CommitLogMutationRecord,
    CommitLogTransactionRecord,
    MutationType,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _make_transaction(
    transaction_id: str = "tx1",
    group: str = "domain/a.tld",
    at: datetime = T0,
) -> CommitLogTransactionRecord:
    record = CommitLogTransactionRecord(
        transaction_id=transaction_id,
        entity_group_id=group,
        bucket_id=0,
        commit_timestamp=at,
    )
    record.mutations = [
        CommitLogMutationRecord(
            ordinal=0,
            kind="DomainBase",
            entity_id="a.tld",
            mutation_type=MutationType.UPSERT,
            payload={"name": "a.tld"},
        )
    ]
    return record


class TestSchema:
    def test_tables(self) -> None:
        assert set(Base.metadata.tables) == {
            "entity_group_clock",
            "commit_log_transaction",
            "commit_log_mutation",
            "commit_log_checkpoint",
            "replay_consumer",
        }

    def test_group_timestamp_constraint_named(self) -> None:
        table = Base.metadata.tables["commit_log_transaction"]
        names = {c.name for c in table.constraints}
        assert "uq_commit_log_transaction_group_timestamp" in names


class TestMicrosTimestamp:
    @pytest.mark.asyncio
    async def test_microseconds_survive(self, db_session: AsyncSession) -> None:
        at = T0 + timedelta(microseconds=123457)
        db_session.add(_make_transaction(at=at))
        await db_session.commit()
        db_session.expunge_all()

        record = await db_session.get(CommitLogTransactionRecord, "tx1")
        assert record.commit_timestamp == at
        assert record.commit_timestamp.tzinfo is not None

    @pytest.mark.asyncio
    async def test_stored_as_integer_micros(self, db_session: AsyncSession) -> None:
        db_session.add(CommitLogCheckpoint(checkpoint_time=T0 + timedelta(microseconds=1)))
        await db_session.commit()

        raw = await db_session.scalar(text("SELECT checkpoint_time FROM commit_log_checkpoint"))
        assert raw == int(T0.timestamp()) * 1_000_000 + 1

    @pytest.mark.asyncio
    async def test_mutation_type_stored_by_value(self, db_session: AsyncSession) -> None:
        db_session.add(_make_transaction())
        await db_session.commit()

        raw = await db_session.scalar(text("SELECT mutation_type FROM commit_log_mutation"))
        assert raw == "UPSERT"


class TestConstraints:
    @pytest.mark.asyncio
    async def test_group_cannot_repeat_timestamp(self, db_session: AsyncSession) -> None:
        db_session.add(_make_transaction("tx1"))
        db_session.add(_make_transaction("tx2"))
        with pytest.raises(IntegrityError):
            await db_session.commit()

    @pytest.mark.asyncio
    async def test_mutations_ordered_by_ordinal(self, db_session: AsyncSession) -> None:
        record = _make_transaction()
        record.mutations.append(
            CommitLogMutationRecord(
                ordinal=1,
                kind="DomainBase",
                entity_id="a.tld",
                mutation_type=MutationType.DELETE,
            )
        )
        db_session.add(record)
        await db_session.commit()
        db_session.expunge_all()

        rows = (
            await db_session.scalars(
                select(CommitLogMutationRecord).order_by(CommitLogMutationRecord.ordinal)
            )
        ).all()
        assert [m.mutation_type for m in rows] == [MutationType.UPSERT, MutationType.DELETE]
