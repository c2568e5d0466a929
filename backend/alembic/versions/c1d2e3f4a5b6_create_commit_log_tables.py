"""Create commit log and retention tables

Revision ID: c1d2e3f4a5b6
Revises:
Create Date: 2026-09-14 09:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "c1d2e3f4a5b6"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the commit log, group clock, checkpoint and consumer tables."""
    mutation_type_enum = sa.Enum(
        "UPSERT", "DELETE", name="mutation_type_enum", create_type=False
    )
    mutation_type_enum.create(op.get_bind(), checkfirst=True)

    # Timestamps are BIGINT microseconds since the epoch (UTC).
    op.create_table(
        "entity_group_clock",
        sa.Column("entity_group_id", sa.String(length=255), nullable=False),
        sa.Column("last_commit_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("entity_group_id", name=op.f("pk_entity_group_clock")),
    )

    op.create_table(
        "commit_log_transaction",
        sa.Column("transaction_id", sa.String(length=64), nullable=False),
        sa.Column("entity_group_id", sa.String(length=255), nullable=False),
        sa.Column("bucket_id", sa.Integer(), nullable=False),
        sa.Column("commit_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint(
            "transaction_id", name=op.f("pk_commit_log_transaction")
        ),
        sa.UniqueConstraint(
            "entity_group_id",
            "commit_timestamp",
            name="uq_commit_log_transaction_group_timestamp",
        ),
    )
    op.create_index(
        "idx_commit_log_transaction_bucket_time",
        "commit_log_transaction",
        ["bucket_id", "commit_timestamp"],
    )
    op.create_index(
        "idx_commit_log_transaction_time", "commit_log_transaction", ["commit_timestamp"]
    )

    op.create_table(
        "commit_log_mutation",
        sa.Column("mutation_id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.String(length=64), nullable=False),
        sa.Column("ordinal", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("mutation_type", mutation_type_enum, nullable=False),
        sa.Column("payload", JSONB(), nullable=True),
        sa.ForeignKeyConstraint(
            ["transaction_id"],
            ["commit_log_transaction.transaction_id"],
            name=op.f("fk_commit_log_mutation_transaction_id_commit_log_transaction"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("mutation_id", name=op.f("pk_commit_log_mutation")),
        sa.UniqueConstraint(
            "transaction_id",
            "ordinal",
            name="uq_commit_log_mutation_transaction_ordinal",
        ),
    )
    op.create_index(
        "idx_commit_log_mutation_entity", "commit_log_mutation", ["kind", "entity_id"]
    )

    op.create_table(
        "commit_log_checkpoint",
        sa.Column("checkpoint_id", sa.Integer(), nullable=False),
        sa.Column("checkpoint_time", sa.BigInteger(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("checkpoint_id", name=op.f("pk_commit_log_checkpoint")),
        sa.UniqueConstraint(
            "checkpoint_time", name=op.f("uq_commit_log_checkpoint_checkpoint_time")
        ),
    )

    op.create_table(
        "replay_consumer",
        sa.Column("consumer_name", sa.String(length=255), nullable=False),
        sa.Column("confirmed_through", sa.BigInteger(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("consumer_name", name=op.f("pk_replay_consumer")),
    )


def downgrade() -> None:
    """Drop the commit log and retention tables."""
    op.drop_table("replay_consumer")
    op.drop_table("commit_log_checkpoint")

    op.drop_index("idx_commit_log_mutation_entity", table_name="commit_log_mutation")
    op.drop_table("commit_log_mutation")

    op.drop_index(
        "idx_commit_log_transaction_time", table_name="commit_log_transaction"
    )
    op.drop_index(
        "idx_commit_log_transaction_bucket_time", table_name="commit_log_transaction"
    )
    op.drop_table("commit_log_transaction")

    op.drop_table("entity_group_clock")

    sa.Enum(name="mutation_type_enum").drop(op.get_bind(), checkfirst=True)
