from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from taxcomply.db.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from taxcomply.db.types import GUID, Money, UTCDateTime
from taxcomply.users.models import User

from .enums import EarningStatus, WithdrawalStatus

MONEY = Money()


class Referral(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Referral relationship between users. A user is referred at most once."""

    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referred_user_id", name="uq_referrals_referred_user_id"),
        Index("ix_referrals_referrer_id_created_at", "referrer_id", "created_at"),
        Index("ix_referrals_referral_id", "referral_id"),
    )

    referrer_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    referred_user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    referral_id: Mapped[str] = mapped_column(String(64), nullable=False)

    referrer: Mapped[User] = relationship(foreign_keys=[referrer_id])
    referred_user: Mapped[User] = relationship(foreign_keys=[referred_user_id])


class ReferralEarning(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Commission earned by a referrer from one upstream payment."""

    __tablename__ = "referral_earnings"
    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_referral_earnings_payment_id"),
        Index(
            "ix_referral_earnings_fifo",
            "referrer_id",
            "status",
            "created_at",
            "id",
        ),
        Index("ix_referral_earnings_referred_user_id", "referred_user_id"),
        Index("ix_referral_earnings_subscription_id", "subscription_id"),
        Index("ix_referral_earnings_withdrawal_id", "withdrawal_id"),
        CheckConstraint(
            "commission_amount >= 0", name="commission_amount_non_negative"
        ),
        CheckConstraint(
            "commission_percentage >= 0 AND commission_percentage <= 1",
            name="commission_percentage_range",
        ),
        CheckConstraint("subscription_amount > 0", name="subscription_amount_positive"),
    )

    referrer_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    referred_user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_plan: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    commission_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 4), nullable=False
    )
    commission_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[EarningStatus] = mapped_column(
        Enum(
            EarningStatus,
            name="referral_earning_status",
            native_enum=False,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=EarningStatus.AVAILABLE,
    )
    withdrawal_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(),
        ForeignKey("referral_withdrawals.id", ondelete="SET NULL"),
    )

    referred_user: Mapped[User] = relationship(foreign_keys=[referred_user_id])


class ReferralWithdrawal(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Payout of whole earnings to a bank account snapshot."""

    __tablename__ = "referral_withdrawals"
    __table_args__ = (
        UniqueConstraint("reference", name="uq_referral_withdrawals_reference"),
        Index(
            "ix_referral_withdrawals_user_status_created",
            "user_id",
            "status",
            "created_at",
        ),
        Index("ix_referral_withdrawals_status_updated", "status", "updated_at"),
        Index("ix_referral_withdrawals_transaction_reference", "transaction_reference"),
        CheckConstraint("amount > 0", name="amount_positive"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    bank_code: Mapped[str] = mapped_column(String(16), nullable=False)
    bank_name: Mapped[str] = mapped_column(String(120), nullable=False)
    account_number: Mapped[str] = mapped_column(String(10), nullable=False)
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(
        Enum(
            WithdrawalStatus,
            name="referral_withdrawal_status",
            native_enum=False,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=WithdrawalStatus.PENDING,
    )
    reference: Mapped[str | None] = mapped_column(String(64))
    transaction_reference: Mapped[str | None] = mapped_column(String(128))
    failure_reason: Mapped[str | None] = mapped_column(String(500))
    processed_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())

    earning_links: Mapped[list[ReferralWithdrawalEarning]] = relationship(
        back_populates="withdrawal",
        cascade="all, delete-orphan",
        order_by="ReferralWithdrawalEarning.position",
        lazy="selectin",
    )

    @property
    def earning_ids(self) -> list[uuid.UUID]:
        return [link.earning_id for link in self.earning_links]


class ReferralWithdrawalEarning(Base):
    """Earnings consumed by a withdrawal, in selection order.

    Kept separately from ``ReferralEarning.withdrawal_id`` so history survives
    the compensating rollback that detaches earnings from a failed payout.
    """

    __tablename__ = "referral_withdrawal_earnings"

    withdrawal_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("referral_withdrawals.id", ondelete="CASCADE"),
        primary_key=True,
    )
    earning_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("referral_earnings.id", ondelete="CASCADE"),
        primary_key=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    withdrawal: Mapped[ReferralWithdrawal] = relationship(
        back_populates="earning_links"
    )


class UserBankDetails(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """The single verified payout destination of a user."""

    __tablename__ = "user_bank_details"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_bank_details_user_id"),
        UniqueConstraint(
            "account_number", name="uq_user_bank_details_account_number"
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    bank_code: Mapped[str] = mapped_column(String(16), nullable=False)
    bank_name: Mapped[str] = mapped_column(String(120), nullable=False)
    account_number: Mapped[str] = mapped_column(String(10), nullable=False)
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
