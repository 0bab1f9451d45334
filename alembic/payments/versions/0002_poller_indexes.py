"""add reconciliation poller indexes

Revision ID: 0002_poller_indexes
Revises: 0001_payments
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_poller_indexes"
down_revision = "0001_payments"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_transactions_open_created_at",
        "transactions",
        ["created_at", "status_last_checked_at"],
        postgresql_where=sa.text("payment_status IN ('pending', 'in_progress') AND gateway_page_uid IS NOT NULL"),
    )
    op.create_index(
        "ix_purchases_buyer_id_payment_status",
        "purchases",
        ["buyer_id", "payment_status"],
    )


def downgrade() -> None:
    op.drop_index("ix_purchases_buyer_id_payment_status", table_name="purchases")
    op.drop_index("ix_transactions_open_created_at", table_name="transactions")
