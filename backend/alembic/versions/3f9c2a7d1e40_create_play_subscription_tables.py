"""create_play_subscription_tables

Revision ID: 3f9c2a7d1e40
Revises:
Create Date: 2026-10-12 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9c2a7d1e40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("role", sa.String(50), nullable=False, server_default="pharmacy"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column(
            "user_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("business_type", sa.String(20), nullable=False),
        sa.Column("sku_id", sa.String(100), nullable=False),
        # Token uniqueness settles concurrent verification of the same purchase
        sa.Column("purchase_token", sa.Text(), nullable=False, unique=True),
        sa.Column("order_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("purchase_date", sa.DateTime(), nullable=False),
        sa.Column("expiry_date", sa.DateTime(), nullable=False),
        sa.Column("renewal_date", sa.DateTime(), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("price_amount_micros", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency_code", sa.String(3), nullable=False, server_default="LKR"),
        sa.Column("cancellation_date", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("raw_provider_response", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_verified_at", sa.DateTime(), nullable=True),
        sa.Column("last_event_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("expiry_date > purchase_date", name="ck_subscriptions_expiry_after_purchase"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_business_type", "subscriptions", ["business_type"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_expiry_date", "subscriptions", ["expiry_date"])

    op.create_table(
        "purchase_events",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.UUID(),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column("notification_id", sa.String(255), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("timestamp", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_purchase_events_subscription_id", "purchase_events", ["subscription_id"])
    op.create_index("ix_purchase_events_user_id", "purchase_events", ["user_id"])
    op.create_index("ix_purchase_events_event_type", "purchase_events", ["event_type"])
    op.create_index("ix_purchase_events_timestamp", "purchase_events", ["timestamp"])
    # Partial index for the fraud review queue
    op.create_index(
        "ix_purchase_events_needs_review",
        "purchase_events",
        ["timestamp"],
        postgresql_where=sa.text("needs_review"),
    )


def downgrade() -> None:
    op.drop_index("ix_purchase_events_needs_review", table_name="purchase_events")
    op.drop_index("ix_purchase_events_timestamp", table_name="purchase_events")
    op.drop_index("ix_purchase_events_event_type", table_name="purchase_events")
    op.drop_index("ix_purchase_events_user_id", table_name="purchase_events")
    op.drop_index("ix_purchase_events_subscription_id", table_name="purchase_events")
    op.drop_table("purchase_events")
    op.drop_index("ix_subscriptions_expiry_date", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_business_type", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
