"""CRUD operations for retention checkpoints and replay consumers."""

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from registry.schemas.retention import (
    CheckpointSchema,
    CheckpointStatusSchema,
    ConsumerSchema,
    PurgeResultSchema,
)
from replay.clock import Clock, SystemClock
from replay.retention import ConsumerState, RetentionService, safe_checkpoint


def _service(session: AsyncSession, clock: Clock | None) -> RetentionService:
    return RetentionService(session, clock or SystemClock())


async def get_checkpoint_status(
    session: AsyncSession, clock: Clock | None = None
) -> CheckpointStatusSchema:
    """Return the current checkpoint and every consumer's confirmation."""
    service = _service(session, clock)
    consumers = await service.list_consumers()
    return CheckpointStatusSchema(
        current_checkpoint=await service.current_checkpoint(),
        safe_checkpoint=safe_checkpoint(
            ConsumerState(c.consumer_name, c.confirmed_through) for c in consumers
        ),
        consumers=[ConsumerSchema.model_validate(c) for c in consumers],
    )


async def confirm_consumer(
    session: AsyncSession,
    consumer_name: str,
    confirmed_through: datetime,
    description: str | None = None,
    clock: Clock | None = None,
) -> ConsumerSchema:
    """Register the consumer if needed and record its confirmation."""
    service = _service(session, clock)
    await service.register_consumer(consumer_name, description=description)
    consumer = await service.confirm_consumer(consumer_name, confirmed_through)
    await session.commit()
    return ConsumerSchema.model_validate(consumer)


async def advance_checkpoint(
    session: AsyncSession,
    checkpoint_time: datetime,
    note: str | None = None,
    clock: Clock | None = None,
) -> CheckpointSchema:
    """Advance the checkpoint; raises CheckpointError if a consumer lags."""
    checkpoint = await _service(session, clock).advance_checkpoint(checkpoint_time, note=note)
    await session.commit()
    return CheckpointSchema.model_validate(checkpoint)


async def purge_before(
    session: AsyncSession,
    before: datetime | None = None,
    clock: Clock | None = None,
) -> PurgeResultSchema | None:
    """Purge commit-log rows older than `before` (default: current checkpoint).

    Returns None if no checkpoint has been advanced yet and no horizon was
    given.
    """
    service = _service(session, clock)
    if before is None:
        before = await service.current_checkpoint()
        if before is None:
            return None
    result = await service.purge_before(before)
    await session.commit()
    return PurgeResultSchema.model_validate(result)
