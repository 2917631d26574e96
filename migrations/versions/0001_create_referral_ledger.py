"""create referral ledger tables

Revision ID: 0001_create_referral_ledger
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

from taxcomply.db.types import GUID, UTCDateTime

# revision identifiers, used by Alembic.
revision = "0001_create_referral_ledger"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            UTCDateTime(),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            UTCDateTime(),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    earning_status = sa.Enum(
        "pending",
        "available",
        "withdrawn",
        name="referral_earning_status",
        native_enum=False,
    )
    withdrawal_status = sa.Enum(
        "pending",
        "processing",
        "completed",
        "failed",
        "cancelled",
        name="referral_withdrawal_status",
        native_enum=False,
    )

    op.create_table(
        "users",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("first_name", sa.String(length=120), nullable=True),
        sa.Column("last_name", sa.String(length=120), nullable=True),
        sa.Column("referral_id", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("email", name="uq_users_email"),
        sa.UniqueConstraint("referral_id", name="uq_users_referral_id"),
    )

    op.create_table(
        "referrals",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("referrer_id", GUID(), nullable=False),
        sa.Column("referred_user_id", GUID(), nullable=False),
        sa.Column("referral_id", sa.String(length=64), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_referrals"),
        sa.ForeignKeyConstraint(
            ["referrer_id"],
            ["users.id"],
            name="fk_referrals_referrer_id_users",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["referred_user_id"],
            ["users.id"],
            name="fk_referrals_referred_user_id_users",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("referred_user_id", name="uq_referrals_referred_user_id"),
    )
    op.create_index(
        "ix_referrals_referrer_id_created_at",
        "referrals",
        ["referrer_id", "created_at"],
    )
    op.create_index("ix_referrals_referral_id", "referrals", ["referral_id"])

    op.create_table(
        "referral_withdrawals",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("user_id", GUID(), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("bank_code", sa.String(length=16), nullable=False),
        sa.Column("bank_name", sa.String(length=120), nullable=False),
        sa.Column("account_number", sa.String(length=10), nullable=False),
        sa.Column("account_name", sa.String(length=200), nullable=False),
        sa.Column("status", withdrawal_status, nullable=False),
        sa.Column("reference", sa.String(length=64), nullable=True),
        sa.Column("transaction_reference", sa.String(length=128), nullable=True),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("processed_at", UTCDateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_referral_withdrawals"),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            name="fk_referral_withdrawals_user_id_users",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("reference", name="uq_referral_withdrawals_reference"),
        sa.CheckConstraint("amount > 0", name="ck_referral_withdrawals_amount_positive"),
    )
    op.create_index(
        "ix_referral_withdrawals_user_status_created",
        "referral_withdrawals",
        ["user_id", "status", "created_at"],
    )
    op.create_index(
        "ix_referral_withdrawals_status_updated",
        "referral_withdrawals",
        ["status", "updated_at"],
    )
    op.create_index(
        "ix_referral_withdrawals_transaction_reference",
        "referral_withdrawals",
        ["transaction_reference"],
    )

    op.create_table(
        "referral_earnings",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("referrer_id", GUID(), nullable=False),
        sa.Column("referred_user_id", GUID(), nullable=False),
        sa.Column("subscription_id", sa.String(length=64), nullable=False),
        sa.Column("payment_id", sa.String(length=64), nullable=False),
        sa.Column("subscription_plan", sa.String(length=64), nullable=False),
        sa.Column("subscription_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("commission_percentage", sa.Numeric(5, 4), nullable=False),
        sa.Column("commission_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("status", earning_status, nullable=False),
        sa.Column("withdrawal_id", GUID(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_referral_earnings"),
        sa.ForeignKeyConstraint(
            ["referrer_id"],
            ["users.id"],
            name="fk_referral_earnings_referrer_id_users",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["referred_user_id"],
            ["users.id"],
            name="fk_referral_earnings_referred_user_id_users",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["withdrawal_id"],
            ["referral_withdrawals.id"],
            name="fk_referral_earnings_withdrawal_id_referral_withdrawals",
            ondelete="SET NULL",
        ),
        sa.UniqueConstraint("payment_id", name="uq_referral_earnings_payment_id"),
        sa.CheckConstraint(
            "commission_amount >= 0",
            name="ck_referral_earnings_commission_amount_non_negative",
        ),
        sa.CheckConstraint(
            "commission_percentage >= 0 AND commission_percentage <= 1",
            name="ck_referral_earnings_commission_percentage_range",
        ),
        sa.CheckConstraint(
            "subscription_amount > 0",
            name="ck_referral_earnings_subscription_amount_positive",
        ),
    )
    op.create_index(
        "ix_referral_earnings_fifo",
        "referral_earnings",
        ["referrer_id", "status", "created_at", "id"],
    )
    op.create_index(
        "ix_referral_earnings_referred_user_id",
        "referral_earnings",
        ["referred_user_id"],
    )
    op.create_index(
        "ix_referral_earnings_subscription_id",
        "referral_earnings",
        ["subscription_id"],
    )
    op.create_index(
        "ix_referral_earnings_withdrawal_id",
        "referral_earnings",
        ["withdrawal_id"],
    )

    op.create_table(
        "referral_withdrawal_earnings",
        sa.Column("withdrawal_id", GUID(), nullable=False),
        sa.Column("earning_id", GUID(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint(
            "withdrawal_id", "earning_id", name="pk_referral_withdrawal_earnings"
        ),
        sa.ForeignKeyConstraint(
            ["withdrawal_id"],
            ["referral_withdrawals.id"],
            name="fk_referral_withdrawal_earnings_withdrawal_id_referral_withdrawals",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["earning_id"],
            ["referral_earnings.id"],
            name="fk_referral_withdrawal_earnings_earning_id_referral_earnings",
            ondelete="CASCADE",
        ),
    )

    op.create_table(
        "user_bank_details",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("user_id", GUID(), nullable=False),
        sa.Column("bank_code", sa.String(length=16), nullable=False),
        sa.Column("bank_name", sa.String(length=120), nullable=False),
        sa.Column("account_number", sa.String(length=10), nullable=False),
        sa.Column("account_name", sa.String(length=200), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_user_bank_details"),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            name="fk_user_bank_details_user_id_users",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("user_id", name="uq_user_bank_details_user_id"),
        sa.UniqueConstraint(
            "account_number", name="uq_user_bank_details_account_number"
        ),
    )


def downgrade() -> None:
    op.drop_table("user_bank_details")
    op.drop_table("referral_withdrawal_earnings")
    op.drop_index("ix_referral_earnings_withdrawal_id", table_name="referral_earnings")
    op.drop_index(
        "ix_referral_earnings_subscription_id", table_name="referral_earnings"
    )
    op.drop_index(
        "ix_referral_earnings_referred_user_id", table_name="referral_earnings"
    )
    op.drop_index("ix_referral_earnings_fifo", table_name="referral_earnings")
    op.drop_table("referral_earnings")
    op.drop_index(
        "ix_referral_withdrawals_transaction_reference",
        table_name="referral_withdrawals",
    )
    op.drop_index(
        "ix_referral_withdrawals_status_updated", table_name="referral_withdrawals"
    )
    op.drop_index(
        "ix_referral_withdrawals_user_status_created",
        table_name="referral_withdrawals",
    )
    op.drop_table("referral_withdrawals")
    op.drop_index("ix_referrals_referral_id", table_name="referrals")
    op.drop_index("ix_referrals_referrer_id_created_at", table_name="referrals")
    op.drop_table("referrals")
    op.drop_table("users")
