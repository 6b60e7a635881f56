"""initial donations schema

Revision ID: 0001_donations
Revises:
Create Date: 2026-10-12
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_donations"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_records",
        sa.Column("external_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("external_event_id"),
    )
    op.create_index("ix_notification_records_event_type", "notification_records", ["event_type"])

    op.create_table(
        "donors",
        sa.Column("donor_id", sa.String(length=36), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("country", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("donor_id"),
        sa.UniqueConstraint("email", name="uq_donors_email"),
    )
    op.create_index("ix_donors_created_at", "donors", ["created_at"])

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.String(length=36), nullable=False),
        sa.Column("donor_id", sa.String(length=36), nullable=True),
        sa.Column("recipient_id", sa.String(length=255), nullable=True),
        sa.Column("campaign_id", sa.String(length=255), nullable=True),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("external_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("external_checkout_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount_minor >= 0", name="ck_payments_amount_non_negative"),
        sa.ForeignKeyConstraint(["donor_id"], ["donors.donor_id"]),
        sa.PrimaryKeyConstraint("payment_id"),
        sa.UniqueConstraint("external_checkout_id", name="uq_payments_external_checkout_id"),
        sa.UniqueConstraint("external_payment_intent_id", name="uq_payments_external_payment_intent_id"),
    )
    op.create_index("ix_payments_donor_id", "payments", ["donor_id"])
    op.create_index("ix_payments_campaign_id", "payments", ["campaign_id"])
    op.create_index("ix_payments_status", "payments", ["status"])

    op.create_table(
        "transaction_trail",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("payment_id", sa.String(length=36), nullable=False),
        sa.Column("entry_type", sa.String(length=50), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.payment_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_transaction_trail_payment_id", "transaction_trail", ["payment_id"])


def downgrade() -> None:
    op.drop_index("ix_transaction_trail_payment_id", table_name="transaction_trail")
    op.drop_table("transaction_trail")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_index("ix_payments_campaign_id", table_name="payments")
    op.drop_index("ix_payments_donor_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_donors_created_at", table_name="donors")
    op.drop_table("donors")
    op.drop_index("ix_notification_records_event_type", table_name="notification_records")
    op.drop_table("notification_records")
