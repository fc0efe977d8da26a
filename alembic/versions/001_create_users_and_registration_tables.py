"""Create users, pending registrations and email verification tokens.

Revision ID: 001_users
Revises:
Create Date: 2026-10-01
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

revision: str = "001_users"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column(
            "subscription_status", sa.Text(), nullable=False, server_default=sa.text("'none'")
        ),
        sa.Column("subscription_tier", sa.Text(), nullable=False, server_default=sa.text("'free'")),
        sa.Column(
            "has_active_subscription",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("FALSE"),
        ),
        sa.Column("trial_used", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("registration_promo_code", sa.Text(), nullable=True),
        sa.Column(
            "has_received_welcome_email",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("FALSE"),
        ),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "subscription_status IN "
            "('none','inactive','active','cancelled','past_due','trialing','admin_access')",
            name="ck_user_subscription_status",
        ),
        sa.CheckConstraint(
            "subscription_tier IN ('free','monthly','annual','admin')",
            name="ck_user_subscription_tier",
        ),
    )
    op.create_index("idx_users_subscription_status", "users", ["subscription_status"])
    op.create_index("idx_users_last_login_at", "users", ["last_login_at"])

    op.create_table(
        "pending_registrations",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("promo_code", sa.Text(), nullable=True),
        sa.Column("plan", sa.Text(), nullable=False, server_default=sa.text("'monthly'")),
        sa.Column("stripe_session_id", sa.Text(), nullable=True, unique=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("checkout_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "last_activity_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("plan IN ('monthly','annual')", name="ck_pending_registration_plan"),
        sa.CheckConstraint(
            "status IN ('pending','checkout_started','expired')",
            name="ck_pending_registration_status",
        ),
    )
    op.create_index(
        "idx_pending_registrations_expires_at", "pending_registrations", ["expires_at"]
    )

    op.create_table(
        "email_verification_tokens",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("token_hash", sa.Text(), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("idx_email_verification_user", "email_verification_tokens", ["user_id"])


def downgrade() -> None:
    op.drop_index("idx_email_verification_user", table_name="email_verification_tokens")
    op.drop_table("email_verification_tokens")
    op.drop_index("idx_pending_registrations_expires_at", table_name="pending_registrations")
    op.drop_table("pending_registrations")
    op.drop_index("idx_users_last_login_at", table_name="users")
    op.drop_index("idx_users_subscription_status", table_name="users")
    op.drop_table("users")
