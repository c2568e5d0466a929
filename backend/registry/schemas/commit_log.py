"""Pydantic schemas for commit log audit endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from registry.models.enums import MutationType


class MutationSchema(BaseModel):
    """One mutation of a committed transaction."""

    kind: str
    entity_id: str
    mutation_type: MutationType
    payload: Any = None

    model_config = {"from_attributes": True}


class TransactionSchema(BaseModel):
    """A committed transaction with its mutations in commit order."""

    transaction_id: str
    entity_group_id: str
    commit_timestamp: datetime
    mutations: list[MutationSchema]

    model_config = {"from_attributes": True}


class GroupTransactionsSchema(BaseModel):
    """Transactions of one entity group inside a commit-time window."""

    entity_group_id: str
    last_commit_timestamp: datetime
    window_start: datetime
    window_end: datetime
    transactions: list[TransactionSchema]


class CommitRequest(BaseModel):
    """Body of a commit against one entity group."""

    mutations: list[MutationSchema] = Field(min_length=1)
    transaction_id: str | None = Field(
        default=None,
        max_length=64,
        description="Retry key; reusing it returns the original commit",
    )


class CommitResultSchema(BaseModel):
    """Timestamp assigned to an accepted commit."""

    entity_group_id: str
    commit_timestamp: datetime
