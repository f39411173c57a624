"""Create adapter state, work-item index, thread and poll-log tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op as alembic_op  # type: ignore[import-untyped]

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the engine state tables and their indexes."""

    alembic_op.create_table(
        "adapter_state",
        sa.Column("source_id", sa.String(length=255), primary_key=True),
        sa.Column("state", sa.JSON(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    alembic_op.create_table(
        "work_item_index",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source_id", sa.String(length=255), nullable=False),
        sa.Column("item_id", sa.String(length=512), nullable=False),
        sa.Column("task_id", sa.String(length=255), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("source_id", "item_id", name="uq_work_item_source_item"),
    )
    alembic_op.create_index("ix_work_item_index_source_id", "work_item_index", ["source_id"])

    alembic_op.create_table(
        "thread_replies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source_id", sa.String(length=255), nullable=False),
        sa.Column("parent_item_id", sa.String(length=512), nullable=False),
        sa.Column("task_id", sa.String(length=255), nullable=False),
        sa.Column("last_reply_id", sa.String(length=512), nullable=True),
        sa.Column("reply_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("source_id", "parent_item_id", name="uq_thread_source_parent"),
    )
    alembic_op.create_index("ix_thread_replies_source_id", "thread_replies", ["source_id"])

    alembic_op.create_table(
        "poll_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("items_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_new", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column(
            "polled_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    alembic_op.create_index("ix_poll_log_source_id", "poll_log", ["source_id"])
    alembic_op.create_index("ix_poll_log_polled_at", "poll_log", ["polled_at"])


def downgrade() -> None:
    """Drop the engine state tables."""

    alembic_op.drop_index("ix_poll_log_polled_at", table_name="poll_log")
    alembic_op.drop_index("ix_poll_log_source_id", table_name="poll_log")
    alembic_op.drop_table("poll_log")
    alembic_op.drop_index("ix_thread_replies_source_id", table_name="thread_replies")
    alembic_op.drop_table("thread_replies")
    alembic_op.drop_index("ix_work_item_index_source_id", table_name="work_item_index")
    alembic_op.drop_table("work_item_index")
    alembic_op.drop_table("adapter_state")
