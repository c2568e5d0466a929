"""Commit log endpoints: the write path and per-group audit queries."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from registry.core.commit import get_commit_writer
from registry.crud.commit_log import get_group_transactions
from registry.models.base import get_async_session
from registry.schemas.commit_log import (
    CommitRequest,
    CommitResultSchema,
    GroupTransactionsSchema,
)
from replay.commit_log.writer import CommitWriter
from replay.errors import (
    ClockRegressionError,
    CommitDeadlineError,
    InvalidWindowError,
    TimestampCollisionError,
    TransactionConflictError,
    UnknownKindError,
    WindowGapError,
)
from replay.records import Mutation

router = APIRouter()


@router.post("/groups/{entity_group_id:path}/transactions", status_code=201)
async def commit_transaction(
    entity_group_id: str,
    body: CommitRequest,
    writer: CommitWriter = Depends(get_commit_writer),
) -> CommitResultSchema:
    """Commit mutations atomically against one entity group."""
    try:
        mutations = [
            Mutation(m.kind, m.entity_id, m.mutation_type, m.payload) for m in body.mutations
        ]
        timestamp = await writer.commit(entity_group_id, mutations, body.transaction_id)
    except (UnknownKindError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except (ClockRegressionError, TimestampCollisionError, TransactionConflictError) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except CommitDeadlineError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return CommitResultSchema(entity_group_id=entity_group_id, commit_timestamp=timestamp)


@router.get("/groups/{entity_group_id:path}/transactions")
async def group_transactions(
    entity_group_id: str,
    start: datetime | None = Query(None, description="Exclusive window start"),
    end: datetime | None = Query(None, description="Inclusive window end"),
    session: AsyncSession = Depends(get_async_session),
) -> GroupTransactionsSchema:
    """Return an entity group's committed transactions in (start, end]."""
    try:
        result = await get_group_transactions(session, entity_group_id, start, end)
    except WindowGapError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except (InvalidWindowError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if result is None:
        raise HTTPException(
            status_code=404, detail=f"Entity group '{entity_group_id}' has no commits"
        )
    return result
