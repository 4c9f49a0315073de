"""Create local state tables.

Revision ID: 5b8e1c0f2a71
Revises:
Create Date: 2026-10-18 12:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "5b8e1c0f2a71"
down_revision = None
branch_labels = None
depends_on = None


operation_type = sa.Enum("create", "update", "delete", name="operation_type")


def upgrade() -> None:
    op.create_table(
        "pending_operations",
        sa.Column("seq", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("queue_entry_id", sa.String(64), nullable=False, unique=True),
        sa.Column("target_record_id", sa.String(64), nullable=False),
        sa.Column("op_type", operation_type, nullable=False),
        sa.Column("resource", sa.String(64), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("snapshot", sa.JSON()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_pending_operations_target_record_id",
        "pending_operations",
        ["target_record_id"],
    )

    op.create_table(
        "sync_failures",
        sa.Column("queue_entry_id", sa.String(64), primary_key=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    op.create_table(
        "terminal_state",
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("value", sa.JSON()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )


def downgrade() -> None:
    op.drop_table("terminal_state")
    op.drop_table("sync_failures")
    op.drop_index("ix_pending_operations_target_record_id", table_name="pending_operations")
    op.drop_table("pending_operations")
    operation_type.drop(op.get_bind(), checkfirst=True)
