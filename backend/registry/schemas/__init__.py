"""Pydantic schemas module.

This module contains Pydantic models used for:
- API request/response validation
- Data transfer between the replay core and the API

Naming convention:
- Schema suffix to distinguish from SQLAlchemy models
- *Request for request bodies
"""

from registry.schemas.commit_log import (
    CommitRequest,
    CommitResultSchema,
    GroupTransactionsSchema,
    MutationSchema,
    TransactionSchema,
)
from registry.schemas.retention import (
    AdvanceCheckpointRequest,
    CheckpointSchema,
    CheckpointStatusSchema,
    ConfirmConsumerRequest,
    ConsumerSchema,
    PurgeRequest,
    PurgeResultSchema,
)

__all__ = [
    # Commit log
    "MutationSchema",
    "TransactionSchema",
    "GroupTransactionsSchema",
    "CommitRequest",
    "CommitResultSchema",
    # Retention
    "ConsumerSchema",
    "CheckpointSchema",
    "CheckpointStatusSchema",
    "ConfirmConsumerRequest",
    "AdvanceCheckpointRequest",
    "PurgeRequest",
    "PurgeResultSchema",
]
