"""initial schema: users, channels, deals, timeline, escrows, transactions, posts

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("telegram_id", sa.BigInteger(), nullable=False),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("first_name", sa.String(length=255), nullable=True),
        sa.Column("locale", sa.String(length=10), server_default="en", nullable=False),
        sa.Column("wallet_address", sa.String(length=128), nullable=True),
        sa.Column("balance_available", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("total_earned", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("total_spent", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("total_deals", sa.Integer(), server_default="0", nullable=False),
        sa.Column("successful_deals", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_telegram_id", "users", ["telegram_id"], unique=True)

    # --- channels ---
    op.create_table(
        "channels",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("telegram_channel_id", sa.BigInteger(), nullable=False),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("total_deals", sa.Integer(), server_default="0", nullable=False),
        sa.Column("successful_deals", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_earnings", sa.BigInteger(), server_default="0", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_channels_telegram_channel_id", "channels", ["telegram_channel_id"], unique=True)
    op.create_index("ix_channels_owner_id", "channels", ["owner_id"])

    # --- deals ---
    op.create_table(
        "deals",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("reference_code", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=50), server_default="CREATED", nullable=False),
        sa.Column("previous_status", sa.String(length=50), nullable=True),
        sa.Column("advertiser_id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("channel_id", sa.Integer(), nullable=False),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("platform_fee", sa.BigInteger(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("brief", sa.Text(), nullable=True),
        sa.Column("requirements", sa.Text(), nullable=True),
        sa.Column("scheduled_post_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_hours", sa.Integer(), server_default="24", nullable=False),
        sa.Column("is_permanent", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("timeout_minutes", sa.Integer(), server_default="1440", nullable=False),
        sa.Column("payment_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("creative_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("content_submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["advertiser_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("reference_code"),
    )
    op.create_index("ix_deals_status", "deals", ["status"])
    op.create_index("ix_deals_advertiser_id", "deals", ["advertiser_id"])
    op.create_index("ix_deals_owner_id", "deals", ["owner_id"])
    op.create_index("ix_deals_channel_id", "deals", ["channel_id"])
    op.create_index("ix_deals_status_activity", "deals", ["status", "last_activity_at"])

    # --- deal_timeline ---
    op.create_table(
        "deal_timeline",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deal_id", sa.Integer(), nullable=False),
        sa.Column("event", sa.String(length=64), nullable=False),
        sa.Column("from_status", sa.String(length=50), nullable=True),
        sa.Column("to_status", sa.String(length=50), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("actor_type", sa.String(length=16), server_default="SYSTEM", nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_deal_timeline_deal_created", "deal_timeline", ["deal_id", "created_at"])

    # --- escrows ---
    op.create_table(
        "escrows",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deal_id", sa.Integer(), nullable=False),
        sa.Column("contract_address", sa.String(length=128), nullable=False),
        sa.Column("advertiser_wallet", sa.String(length=128), nullable=False),
        sa.Column("owner_wallet", sa.String(length=128), nullable=False),
        sa.Column("platform_wallet", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("platform_fee", sa.BigInteger(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=20), server_default="PENDING", nullable=False),
        sa.Column("deployed", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("funding_tx_hash", sa.String(length=128), nullable=True),
        sa.Column("release_tx_hash", sa.String(length=128), nullable=True),
        sa.Column("refund_tx_hash", sa.String(length=128), nullable=True),
        sa.Column("funded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_escrows_deal_id", "escrows", ["deal_id"], unique=True)
    op.create_index("ix_escrows_contract_address", "escrows", ["contract_address"])
    op.create_index("ix_escrows_status", "escrows", ["status"])

    # --- transactions ---
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("escrow_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), server_default="CONFIRMED", nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=10), server_default="TON", nullable=False),
        sa.Column("from_address", sa.String(length=128), nullable=True),
        sa.Column("to_address", sa.String(length=128), nullable=True),
        sa.Column("tx_hash", sa.String(length=128), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["escrow_id"], ["escrows.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_transactions_escrow_id", "transactions", ["escrow_id"])
    op.create_index("ix_transactions_tx_hash", "transactions", ["tx_hash"])

    # --- published_posts ---
    op.create_table(
        "published_posts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deal_id", sa.Integer(), nullable=False),
        sa.Column("channel_id", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("media_urls", sa.JSON(), nullable=True),
        sa.Column("buttons", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=20), server_default="SCHEDULED", nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("telegram_message_id", sa.BigInteger(), nullable=True),
        sa.Column("post_url", sa.String(length=512), nullable=True),
        sa.Column("scheduled_delete_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("views", sa.Integer(), server_default="0", nullable=False),
        sa.Column("reactions", sa.Integer(), server_default="0", nullable=False),
        sa.Column("forwards", sa.Integer(), server_default="0", nullable=False),
        sa.Column("verification_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_published_posts_deal_id", "published_posts", ["deal_id"])
    op.create_index("ix_published_posts_status_scheduled", "published_posts", ["status", "scheduled_for"])
    op.create_index(
        "uq_published_posts_deal_active",
        "published_posts",
        ["deal_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('SCHEDULED', 'PUBLISHING', 'PUBLISHED')"),
    )

    # --- post_verifications ---
    op.create_table(
        "post_verifications",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("post_id", sa.Integer(), nullable=False),
        sa.Column("exists", sa.Boolean(), nullable=False),
        sa.Column("views", sa.Integer(), nullable=True),
        sa.Column("reactions", sa.Integer(), nullable=True),
        sa.Column("forwards", sa.Integer(), nullable=True),
        sa.Column("is_edited", sa.Boolean(), nullable=True),
        sa.Column("is_final", sa.Boolean(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["post_id"], ["published_posts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_post_verifications_post_id", "post_verifications", ["post_id"])


def downgrade() -> None:
    op.drop_table("post_verifications")
    op.drop_table("published_posts")
    op.drop_table("transactions")
    op.drop_table("escrows")
    op.drop_table("deal_timeline")
    op.drop_table("deals")
    op.drop_table("channels")
    op.drop_table("users")
