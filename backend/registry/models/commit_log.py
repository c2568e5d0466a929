"""Commit log models: the durable write-ahead record of every commit.

One CommitLogTransactionRecord per commit against an entity group, holding
its ordered mutations. Rows are inserted once and never updated; they are
deleted only by the retention purge once a checkpoint has passed them.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from registry.models.base import (
    Base,
    JSONPayload,
    MicrosTimestamp,
    TimestampMixin,
    enum_column,
)
from registry.models.enums import MutationType


class EntityGroupClock(Base, TimestampMixin):
    """Last commit timestamp of one entity group.

    The row is locked (SELECT ... FOR UPDATE) for the duration of an append,
    which is the group's serialization point.
    """

    __tablename__ = "entity_group_clock"

    entity_group_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    last_commit_timestamp: Mapped[datetime] = mapped_column(
        MicrosTimestamp(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<EntityGroupClock({self.entity_group_id}, {self.last_commit_timestamp})>"


class CommitLogTransactionRecord(Base, TimestampMixin):
    """One committed transaction against an entity group."""

    __tablename__ = "commit_log_transaction"

    transaction_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_group_id: Mapped[str] = mapped_column(String(255), nullable=False)
    bucket_id: Mapped[int] = mapped_column(
        Integer, nullable=False, doc="bucket_for_group(entity_group_id)"
    )
    commit_timestamp: Mapped[datetime] = mapped_column(
        MicrosTimestamp(), nullable=False
    )

    mutations: Mapped[list["CommitLogMutationRecord"]] = relationship(
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="CommitLogMutationRecord.ordinal",
    )

    __table_args__ = (
        # Strict per-group ordering, enforced by the database as well
        UniqueConstraint(
            "entity_group_id",
            "commit_timestamp",
            name="uq_commit_log_transaction_group_timestamp",
        ),
        Index(
            "idx_commit_log_transaction_bucket_time",
            "bucket_id",
            "commit_timestamp",
        ),
        Index("idx_commit_log_transaction_time", "commit_timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<CommitLogTransactionRecord({self.transaction_id}, "
            f"group={self.entity_group_id}, ts={self.commit_timestamp})>"
        )


class CommitLogMutationRecord(Base):
    """One mutation inside a committed transaction, in commit order."""

    __tablename__ = "commit_log_mutation"

    mutation_id: Mapped[int] = mapped_column(primary_key=True)
    transaction_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("commit_log_transaction.transaction_id", ondelete="CASCADE"),
        nullable=False,
    )
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(
        String(100), nullable=False, doc="Raw kind name, may be unknown to readers"
    )
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    mutation_type: Mapped[MutationType] = mapped_column(
        enum_column(MutationType, "mutation_type_enum"),
        nullable=False,
    )
    payload: Mapped[Any] = mapped_column(JSONPayload, nullable=True)

    transaction: Mapped["CommitLogTransactionRecord"] = relationship(
        back_populates="mutations",
        foreign_keys=[transaction_id],
    )

    __table_args__ = (
        UniqueConstraint(
            "transaction_id",
            "ordinal",
            name="uq_commit_log_mutation_transaction_ordinal",
        ),
        Index("idx_commit_log_mutation_entity", "kind", "entity_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<CommitLogMutationRecord({self.transaction_id}#{self.ordinal}, "
            f"{self.mutation_type} {self.kind}/{self.entity_id})>"
        )
