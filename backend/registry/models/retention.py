"""Retention models: checkpoint history and the consumers that gate it.

A checkpoint T means no future replay window will start before T, so
commit-log data older than T may be purged. It only advances once every
registered consumer has confirmed it no longer needs anything older.
"""

from datetime import datetime

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from registry.models.base import Base, MicrosTimestamp, TimestampMixin


class CommitLogCheckpoint(Base, TimestampMixin):
    """One checkpoint advancement. The latest row is the current checkpoint."""

    __tablename__ = "commit_log_checkpoint"

    checkpoint_id: Mapped[int] = mapped_column(primary_key=True)
    checkpoint_time: Mapped[datetime] = mapped_column(
        MicrosTimestamp(), nullable=False, unique=True
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<CommitLogCheckpoint({self.checkpoint_time})>"


class ReplayConsumer(Base, TimestampMixin):
    """A downstream reader of the commit log (replay job, backup, loader).

    confirmed_through is the instant before which the consumer will never
    request data again. NULL means it has not confirmed anything yet and
    therefore blocks every checkpoint advancement.
    """

    __tablename__ = "replay_consumer"

    consumer_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    confirmed_through: Mapped[datetime | None] = mapped_column(
        MicrosTimestamp(), nullable=True
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ReplayConsumer({self.consumer_name}, through={self.confirmed_through})>"
