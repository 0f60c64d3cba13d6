"""create payment_requests and payment_transactions

Revision ID: 3c1f0a9d7e21
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "3c1f0a9d7e21"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # 1) Запросы на оплату; сумма строкой, чтобы не терять точность Decimal
    op.create_table(
        "payment_requests",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("merchant_id", sa.Text(), nullable=False),
        sa.Column("amount", sa.String(64), nullable=True),
        sa.Column("currency", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("label", sa.Text(), nullable=True),
        sa.Column("settled_transaction_id", sa.String(64), nullable=True, unique=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_payment_requests_status_expires_at", "payment_requests", ["status", "expires_at"])
    op.create_index("ix_payment_requests_merchant_id", "payment_requests", ["merchant_id"])

    # 2) История оплат: не больше одной транзакции на запрос
    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("request_id", sa.String(64), nullable=False, unique=True),
        sa.Column("merchant_id", sa.Text(), nullable=False),
        sa.Column("amount", sa.String(64), nullable=False),
        sa.Column("currency", sa.String(16), nullable=False),
        sa.Column("payer_ref", sa.Text(), nullable=False),
        sa.Column("label", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_payment_transactions_merchant_id", "payment_transactions", ["merchant_id"])


def downgrade():
    op.drop_index("ix_payment_transactions_merchant_id", table_name="payment_transactions")
    op.drop_table("payment_transactions")
    op.drop_index("ix_payment_requests_merchant_id", table_name="payment_requests")
    op.drop_index("ix_payment_requests_status_expires_at", table_name="payment_requests")
    op.drop_table("payment_requests")
