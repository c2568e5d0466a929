"""SQLAlchemy models for the registry commit log."""

from registry.models.base import Base, TimestampMixin, async_session_maker, get_async_session
from registry.models.commit_log import (
    CommitLogMutationRecord,
    CommitLogTransactionRecord,
    EntityGroupClock,
)
from registry.models.enums import EntityKind, MutationType
from registry.models.retention import CommitLogCheckpoint, ReplayConsumer

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "async_session_maker",
    "get_async_session",
    # Enums
    "EntityKind",
    "MutationType",
    # Commit log
    "EntityGroupClock",
    "CommitLogTransactionRecord",
    "CommitLogMutationRecord",
    # Retention
    "CommitLogCheckpoint",
    "ReplayConsumer",
]
