"""initial payments schema

Revision ID: 0001_payments
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_payments"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("buyer_id", sa.String(), nullable=True),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("environment", sa.String(length=20), nullable=False),
        sa.Column("payment_url", sa.Text(), nullable=True),
        sa.Column("gateway_page_uid", sa.String(), nullable=True),
        sa.Column("gateway_transaction_uid", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("race_condition_winner", sa.String(length=20), nullable=True),
        sa.Column("webhook_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gateway_response", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("gateway_page_uid"),
    )
    op.create_index("ix_transactions_buyer_id", "transactions", ["buyer_id"])
    op.create_index("ix_transactions_payment_status", "transactions", ["payment_status"])
    op.create_index("ix_transactions_expires_at", "transactions", ["expires_at"])
    op.create_index("ix_transactions_status_last_checked_at", "transactions", ["status_last_checked_at"])
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])

    op.create_table(
        "purchases",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("buyer_id", sa.String(), nullable=False),
        sa.Column("purchasable_type", sa.String(length=30), nullable=False),
        sa.Column("purchasable_id", sa.String(), nullable=False),
        sa.Column("payment_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("original_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_purchases_buyer_id", "purchases", ["buyer_id"])
    op.create_index("ix_purchases_payment_status", "purchases", ["payment_status"])
    op.create_index("ix_purchases_transaction_id", "purchases", ["transaction_id"])

    op.create_table(
        "transaction_status_events",
        sa.Column("seq", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(length=30), nullable=False),
        sa.Column("from_status", sa.String(length=20), nullable=True),
        sa.Column("to_status", sa.String(length=20), nullable=True),
        sa.Column("source", sa.String(length=20), nullable=True),
        sa.Column("outcome", sa.String(length=30), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("detail", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.PrimaryKeyConstraint("seq"),
    )
    op.create_index("ix_transaction_status_events_transaction_id", "transaction_status_events", ["transaction_id"])
    # Audit rows are append-only.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_status_event_mutation()
        RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'transaction_status_events is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER transaction_status_events_no_update_delete
        BEFORE UPDATE OR DELETE ON transaction_status_events
        FOR EACH ROW EXECUTE FUNCTION prevent_status_event_mutation();
        """
    )

    op.create_table(
        "customer_tokens",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("buyer_id", sa.String(), nullable=False),
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("card_last4", sa.String(length=4), nullable=False),
        sa.Column("card_brand", sa.String(length=20), nullable=False),
        sa.Column("card_expiry_month", sa.String(length=2), nullable=True),
        sa.Column("card_expiry_year", sa.String(length=4), nullable=True),
        sa.Column("card_holder_name", sa.String(), nullable=True),
        sa.Column("is_default", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("source_transaction_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("buyer_id", "token", name="uq_customer_token_buyer"),
    )
    op.create_index("ix_customer_tokens_buyer_id", "customer_tokens", ["buyer_id"])

    op.create_table(
        "subscription_history",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("buyer_id", sa.String(), nullable=False),
        sa.Column("subscription_plan_id", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("billing_period", sa.String(length=20), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("purchased_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("gateway_subscription_uid", sa.String(), nullable=True),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("purchase_id", sa.String(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id", "purchase_id", name="uq_subscription_txn_purchase"),
    )
    op.create_index("ix_subscription_history_buyer_id", "subscription_history", ["buyer_id"])
    op.create_index("ix_subscription_history_transaction_id", "subscription_history", ["transaction_id"])

    op.create_table(
        "coupons",
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("usage_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.PrimaryKeyConstraint("code"),
    )

    op.create_table(
        "files",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("downloads_count", sa.Integer(), server_default="0", nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("files")
    op.drop_table("coupons")
    op.drop_index("ix_subscription_history_transaction_id", table_name="subscription_history")
    op.drop_index("ix_subscription_history_buyer_id", table_name="subscription_history")
    op.drop_table("subscription_history")
    op.drop_index("ix_customer_tokens_buyer_id", table_name="customer_tokens")
    op.drop_table("customer_tokens")
    op.execute("DROP TRIGGER IF EXISTS transaction_status_events_no_update_delete ON transaction_status_events")
    op.execute("DROP FUNCTION IF EXISTS prevent_status_event_mutation()")
    op.drop_index("ix_transaction_status_events_transaction_id", table_name="transaction_status_events")
    op.drop_table("transaction_status_events")
    op.drop_index("ix_purchases_transaction_id", table_name="purchases")
    op.drop_index("ix_purchases_payment_status", table_name="purchases")
    op.drop_index("ix_purchases_buyer_id", table_name="purchases")
    op.drop_table("purchases")
    op.drop_index("ix_transactions_created_at", table_name="transactions")
    op.drop_index("ix_transactions_status_last_checked_at", table_name="transactions")
    op.drop_index("ix_transactions_expires_at", table_name="transactions")
    op.drop_index("ix_transactions_payment_status", table_name="transactions")
    op.drop_index("ix_transactions_buyer_id", table_name="transactions")
    op.drop_table("transactions")
