"""webhook log, token charge guard and abandoned intent index

Revision ID: 0003_webhook_log_token_guard
Revises: 0002_poller_indexes
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0003_webhook_log_token_guard"
down_revision = "0002_poller_indexes"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("transactions", sa.Column("token_charge_state", sa.String(length=20), nullable=True))
    op.add_column("transactions", sa.Column("token_charge_started_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index(
        "ix_transactions_abandoned_expires_at",
        "transactions",
        ["expires_at"],
        postgresql_where=sa.text("payment_status = 'pending' AND gateway_page_uid IS NULL"),
    )

    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=True),
        sa.Column("event_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("sender_info", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("page_request_uid", sa.String(), nullable=True),
        sa.Column("payplus_transaction_uid", sa.String(), nullable=True),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("process_log", sa.Text(), nullable=False),
        sa.Column("processing_duration_ms", sa.Integer(), nullable=True),
        sa.Column("response_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_logs_status", "webhook_logs", ["status"])
    op.create_index("ix_webhook_logs_page_request_uid", "webhook_logs", ["page_request_uid"])
    op.create_index("ix_webhook_logs_transaction_id", "webhook_logs", ["transaction_id"])
    op.create_index("ix_webhook_logs_created_at", "webhook_logs", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_webhook_logs_created_at", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_transaction_id", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_page_request_uid", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_status", table_name="webhook_logs")
    op.drop_table("webhook_logs")
    op.drop_index("ix_transactions_abandoned_expires_at", table_name="transactions")
    op.drop_column("transactions", "token_charge_started_at")
    op.drop_column("transactions", "token_charge_state")
