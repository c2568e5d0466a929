"""Checkpoint endpoints: consumer confirmation, advancement and purge."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from registry.crud.retention import (
    advance_checkpoint,
    confirm_consumer,
    get_checkpoint_status,
    purge_before,
)
from registry.models.base import get_async_session
from registry.schemas.retention import (
    AdvanceCheckpointRequest,
    CheckpointSchema,
    CheckpointStatusSchema,
    ConfirmConsumerRequest,
    ConsumerSchema,
    PurgeRequest,
    PurgeResultSchema,
)
from replay.errors import CheckpointError

router = APIRouter()


@router.get("/")
async def checkpoint_status(
    session: AsyncSession = Depends(get_async_session),
) -> CheckpointStatusSchema:
    """Return the current checkpoint and consumer confirmations."""
    return await get_checkpoint_status(session)


@router.put("/consumers/{consumer_name}")
async def put_consumer_confirmation(
    consumer_name: str,
    body: ConfirmConsumerRequest,
    session: AsyncSession = Depends(get_async_session),
) -> ConsumerSchema:
    """Confirm that a consumer no longer needs data before an instant."""
    try:
        return await confirm_consumer(
            session, consumer_name, body.confirmed_through, body.description
        )
    except CheckpointError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


@router.post("/advance")
async def post_advance_checkpoint(
    body: AdvanceCheckpointRequest,
    session: AsyncSession = Depends(get_async_session),
) -> CheckpointSchema:
    """Advance the checkpoint once every consumer has confirmed through it."""
    try:
        return await advance_checkpoint(session, body.checkpoint_time, body.note)
    except CheckpointError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


@router.post("/purge")
async def post_purge(
    body: PurgeRequest,
    session: AsyncSession = Depends(get_async_session),
) -> PurgeResultSchema:
    """Delete commit-log data older than a checkpoint."""
    try:
        result = await purge_before(session, body.before)
    except CheckpointError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    if result is None:
        raise HTTPException(status_code=404, detail="No checkpoint has been advanced")
    return result
