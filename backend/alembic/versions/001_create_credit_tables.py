"""Create credit accounts, subscriptions and the credit ledger.

Revision ID: 001_create_credit_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001_create_credit_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "user_accounts",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits >= 0", name="ck_user_accounts_credits_non_negative"),
    )
    op.create_index("ix_user_accounts_email", "user_accounts", ["email"], unique=False)
    op.create_index("ix_user_accounts_customer_id", "user_accounts", ["customer_id"], unique=False)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("user_accounts.user_id"), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("product_id", sa.String(), nullable=True),
        sa.Column("price_id", sa.String(), nullable=True),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("billing_cycle", sa.String(), nullable=True),
        sa.Column("plan_tier", sa.String(), nullable=True),
        sa.Column("previous_product_id", sa.String(), nullable=True),
        sa.Column("previous_price_id", sa.String(), nullable=True),
        sa.Column("previous_billing_cycle", sa.String(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_ends", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_credit_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_credit_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_subscriptions_id", "subscriptions", ["id"], unique=False)
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)
    op.create_index("ix_subscriptions_subscription_id", "subscriptions", ["subscription_id"], unique=False)
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"], unique=False)
    op.create_index("ix_subscriptions_next_credit_date", "subscriptions", ["next_credit_date"], unique=False)

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("transaction_ref", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("user_accounts.user_id"), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="completed"),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("price_id", sa.String(), nullable=True),
        sa.Column("product_id", sa.String(), nullable=True),
        sa.Column("dedupe_class", sa.String(), nullable=True),
        sa.Column("related_transaction_ref", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("usage_details", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("balance_after - balance_before = amount", name="ck_credit_ledger_delta"),
        sa.UniqueConstraint("transaction_id", "dedupe_class", name="uq_credit_ledger_txn_class"),
    )
    op.create_index("ix_credit_ledger_id", "credit_ledger", ["id"], unique=False)
    op.create_index("ix_credit_ledger_transaction_ref", "credit_ledger", ["transaction_ref"], unique=True)
    op.create_index("ix_credit_ledger_user_id", "credit_ledger", ["user_id"], unique=False)
    op.create_index("ix_credit_ledger_status", "credit_ledger", ["status"], unique=False)
    op.create_index("ix_credit_ledger_transaction_id", "credit_ledger", ["transaction_id"], unique=False)
    op.create_index("ix_credit_ledger_subscription_id", "credit_ledger", ["subscription_id"], unique=False)
    op.create_index(
        "ix_credit_ledger_related_transaction_ref",
        "credit_ledger",
        ["related_transaction_ref"],
        unique=False,
    )
    op.create_index("ix_credit_ledger_idempotency_key", "credit_ledger", ["idempotency_key"], unique=True)
    op.create_index("ix_credit_ledger_user_created", "credit_ledger", ["user_id", "created_at"], unique=False)
    op.create_index(
        "ix_credit_ledger_user_type_created",
        "credit_ledger",
        ["user_id", "type", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("credit_ledger")
    op.drop_table("subscriptions")
    op.drop_table("user_accounts")
