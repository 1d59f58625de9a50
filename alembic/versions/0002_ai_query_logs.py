"""ai query logs

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-17 14:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ai_query_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(36), nullable=True),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("mode", sa.String(8), nullable=True),
        sa.Column("intent_category", sa.String(32), nullable=True),
        sa.Column("engine", sa.String(16), nullable=True),
        sa.Column("row_count", sa.Integer(), nullable=False),
        sa.Column("cached", sa.Boolean(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("timings", sa.JSON(), nullable=True),
        sa.Column("total_ms", sa.Float(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ai_query_logs_user_id", "ai_query_logs", ["user_id"])
    op.create_index("ix_ai_query_logs_created_at", "ai_query_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("ai_query_logs")
