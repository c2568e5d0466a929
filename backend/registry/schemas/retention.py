"""Pydantic schemas for checkpoint and retention endpoints.

Request timestamps must carry an offset; naive values are rejected (422).
"""

from datetime import datetime

from pydantic import AwareDatetime, BaseModel, Field


class ConsumerSchema(BaseModel):
    """A registered replay consumer and how far it has confirmed."""

    consumer_name: str
    confirmed_through: datetime | None
    description: str | None = None

    model_config = {"from_attributes": True}


class CheckpointSchema(BaseModel):
    """One checkpoint advancement."""

    checkpoint_time: datetime
    note: str | None = None

    model_config = {"from_attributes": True}


class CheckpointStatusSchema(BaseModel):
    """Current checkpoint plus the furthest it could safely advance."""

    current_checkpoint: datetime | None
    safe_checkpoint: datetime | None = Field(
        description="Earliest confirmation across consumers; null if any is unconfirmed"
    )
    consumers: list[ConsumerSchema]


class ConfirmConsumerRequest(BaseModel):
    """Body of a consumer confirmation."""

    confirmed_through: AwareDatetime
    description: str | None = None


class AdvanceCheckpointRequest(BaseModel):
    """Body of a checkpoint advancement."""

    checkpoint_time: AwareDatetime
    note: str | None = None


class PurgeRequest(BaseModel):
    """Body of a purge; defaults to the current checkpoint."""

    before: AwareDatetime | None = None


class PurgeResultSchema(BaseModel):
    """What a purge removed."""

    checkpoint: datetime
    transactions_purged: int
    segments_purged: int = 0

    model_config = {"from_attributes": True}
