"""create reconciliation tables

Revision ID: 3b7d2e91c4a0
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b7d2e91c4a0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create processed_events, memberships, bounty_payments, billing_customers,
    pending_actions and installation_bindings."""
    op.create_table(
        "processed_events",
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("provider", "event_id"),
    )
    op.create_index(op.f("ix_processed_events_applied_at"), "processed_events", ["applied_at"], unique=False)

    op.create_table(
        "memberships",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("plan_tier", sa.String(length=64), nullable=True),
        sa.Column("external_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="none"),
        sa.Column("failed_payment_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("period_end_estimated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_memberships_user_id"), "memberships", ["user_id"], unique=True)
    op.create_index(
        op.f("ix_memberships_external_subscription_id"), "memberships", ["external_subscription_id"], unique=False
    )

    op.create_table(
        "bounty_payments",
        sa.Column("bounty_id", sa.String(length=255), nullable=False),
        sa.Column("gross_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("platform_fee", sa.Integer(), nullable=False),
        sa.Column("net_amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="unfunded"),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("provider_payment_id", sa.String(length=255), nullable=True),
        sa.Column("transfer_id", sa.String(length=255), nullable=True),
        sa.Column("refund_id", sa.String(length=255), nullable=True),
        sa.Column("payee_account_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("bounty_id"),
        sa.UniqueConstraint("checkout_session_id"),
    )
    op.create_index(op.f("ix_bounty_payments_status"), "bounty_payments", ["status"], unique=False)

    op.create_table(
        "billing_customers",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("external_customer_id", sa.String(length=255), nullable=True),
        sa.Column("creation_state", sa.String(length=20), nullable=False, server_default="absent"),
        sa.Column("creating_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("user_id"),
        sa.UniqueConstraint("external_customer_id"),
    )

    op.create_table(
        "pending_actions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("action_type", sa.String(length=20), nullable=False),
        sa.Column("action_params", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_pending_actions_user_id"), "pending_actions", ["user_id"], unique=True)

    op.create_table(
        "installation_bindings",
        sa.Column("installation_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("owning_account_id", sa.String(length=64), nullable=True),
        sa.Column("organization_id", sa.String(length=255), nullable=True),
        sa.Column("account_login", sa.String(length=255), nullable=True),
        sa.Column("repository_ids", sa.JSON(), nullable=False),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("installation_id"),
    )
    op.create_index(
        op.f("ix_installation_bindings_owning_account_id"), "installation_bindings", ["owning_account_id"], unique=False
    )
    op.create_index(
        op.f("ix_installation_bindings_organization_id"), "installation_bindings", ["organization_id"], unique=False
    )


def downgrade() -> None:
    """Drop the reconciliation tables."""
    op.drop_index(op.f("ix_installation_bindings_organization_id"), table_name="installation_bindings")
    op.drop_index(op.f("ix_installation_bindings_owning_account_id"), table_name="installation_bindings")
    op.drop_table("installation_bindings")
    op.drop_index(op.f("ix_pending_actions_user_id"), table_name="pending_actions")
    op.drop_table("pending_actions")
    op.drop_table("billing_customers")
    op.drop_index(op.f("ix_bounty_payments_status"), table_name="bounty_payments")
    op.drop_table("bounty_payments")
    op.drop_index(op.f("ix_memberships_external_subscription_id"), table_name="memberships")
    op.drop_index(op.f("ix_memberships_user_id"), table_name="memberships")
    op.drop_table("memberships")
    op.drop_index(op.f("ix_processed_events_applied_at"), table_name="processed_events")
    op.drop_table("processed_events")
