"""Create audit log and analytics events.

Revision ID: 003_audit_analytics
Revises: 002_billing
Create Date: 2026-10-01
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

revision: str = "003_audit_analytics"
down_revision: str | None = "002_billing"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "audit_log",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("target_type", sa.Text(), nullable=True),
        sa.Column("target_id", sa.Text(), nullable=True),
        sa.Column("severity", sa.Text(), nullable=False, server_default=sa.text("'info'")),
        sa.Column("detail", JSONB(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("idx_audit_log_time", "audit_log", ["created_at"])
    op.create_index("idx_audit_log_action", "audit_log", ["action", "created_at"])
    op.create_index("idx_audit_log_target", "audit_log", ["target_type", "target_id"])

    op.create_table(
        "analytics_events",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("idx_analytics_time", "analytics_events", ["created_at"])
    op.create_index("idx_analytics_type", "analytics_events", ["event_type", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_analytics_type", table_name="analytics_events")
    op.drop_index("idx_analytics_time", table_name="analytics_events")
    op.drop_table("analytics_events")
    op.drop_index("idx_audit_log_target", table_name="audit_log")
    op.drop_index("idx_audit_log_action", table_name="audit_log")
    op.drop_index("idx_audit_log_time", table_name="audit_log")
    op.drop_table("audit_log")
