"""create pending payments and entitlement tables

Revision ID: 5c1e9a7b2d40
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision = "5c1e9a7b2d40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "pending_payments" not in existing_tables:
        op.create_table(
            "pending_payments",
            sa.Column("order_id", sa.String(length=64), primary_key=True, nullable=False),
            sa.Column("provider_tracking_id", sa.String(length=120), nullable=True),
            sa.Column(
                "provider",
                sa.Enum("mpesa", "pesapal", "paystack", name="paymentprovidertype"),
                nullable=False,
            ),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column(
                "status",
                sa.Enum("pending", "completed", "failed", name="pendingpaymentstatus"),
                nullable=False,
            ),
            sa.Column(
                "fulfillment_status",
                sa.Enum("pending", "fulfilled", name="fulfillmentstatus"),
                nullable=False,
            ),
            sa.Column("provider_status", sa.JSON(), nullable=True),
            sa.Column("failure_reason", sa.Text(), nullable=True),
            sa.Column("fulfillment_error", sa.Text(), nullable=True),
            sa.Column("fulfillment_receipt", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("fulfilled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index(
            "ix_pending_payments_provider_tracking_id",
            "pending_payments",
            ["provider_tracking_id"],
            unique=True,
        )
        op.create_index(
            "ix_pending_payments_status_fulfillment",
            "pending_payments",
            ["status", "fulfillment_status"],
        )

    if "subscriptions" not in existing_tables:
        op.create_table(
            "subscriptions",
            sa.Column("id", UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("owner_type", sa.Enum("agent", "user", name="ownertype"), nullable=False),
            sa.Column(
                "plan_type",
                sa.Enum("weekly", "monthly", "quarterly", "yearly", name="plantype"),
                nullable=True,
            ),
            sa.Column(
                "status",
                sa.Enum("active", "expired", name="subscriptionstatus"),
                nullable=True,
            ),
            sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("payment_reference", sa.String(length=64), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("payment_method", sa.String(length=40), nullable=True),
            sa.Column("confirmation_code", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("payment_reference"),
        )
        op.create_index("ix_subscriptions_owner_id", "subscriptions", ["owner_id"])

    if "credit_wallets" not in existing_tables:
        op.create_table(
            "credit_wallets",
            sa.Column("id", UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("owner_id"),
        )

    if "credit_transactions" not in existing_tables:
        op.create_table(
            "credit_transactions",
            sa.Column("id", UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column(
                "entry_type",
                sa.Enum("credit", "debit", name="creditentrytype"),
                nullable=True,
            ),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("transaction_reference", sa.String(length=64), nullable=True),
            sa.Column("balance_after", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("transaction_reference"),
        )
        op.create_index(
            "ix_credit_transactions_owner_id", "credit_transactions", ["owner_id"]
        )


def downgrade() -> None:
    op.drop_table("credit_transactions")
    op.drop_table("credit_wallets")
    op.drop_table("subscriptions")
    op.drop_index("ix_pending_payments_status_fulfillment", table_name="pending_payments")
    op.drop_index("ix_pending_payments_provider_tracking_id", table_name="pending_payments")
    op.drop_table("pending_payments")
    for enum_name in (
        "creditentrytype",
        "subscriptionstatus",
        "plantype",
        "ownertype",
        "fulfillmentstatus",
        "pendingpaymentstatus",
        "paymentprovidertype",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
