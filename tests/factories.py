from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from itertools import count

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxcomply.referrals.bank_details import BankDetailsInput
from taxcomply.referrals.enums import EarningStatus
from taxcomply.referrals.models import ReferralEarning, UserBankDetails
from taxcomply.users.models import User

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)
ACCOUNT_NUMBER = "0123456789"

_counter = count(1)


def bank_details_input(
    *,
    bank_code: str = "058",
    bank_name: str = "Guaranty Trust Bank",
    account_number: str = ACCOUNT_NUMBER,
    account_name: str = "Ada Okafor",
) -> BankDetailsInput:
    return BankDetailsInput(
        bank_code=bank_code,
        bank_name=bank_name,
        account_number=account_number,
        account_name=account_name,
    )


async def create_user(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    email: str | None = None,
    referral_id: str | None = None,
    first_name: str | None = "Ada",
    last_name: str | None = "Okafor",
) -> User:
    index = next(_counter)
    user = User(
        email=email or f"user{index}@example.com",
        first_name=first_name,
        last_name=last_name,
        referral_id=referral_id,
    )
    async with session_factory() as session, session.begin():
        session.add(user)
    return user


async def add_earning(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    referrer: User,
    referred: User,
    commission: str | Decimal,
    created_at: datetime | None = None,
    earning_id: uuid.UUID | None = None,
    status: EarningStatus = EarningStatus.AVAILABLE,
) -> ReferralEarning:
    """Insert an earning directly, bypassing the commission calculation."""

    index = next(_counter)
    amount = Decimal(str(commission))
    earning = ReferralEarning(
        id=earning_id or uuid.uuid4(),
        referrer_id=referrer.id,
        referred_user_id=referred.id,
        subscription_id=f"sub-{index}",
        payment_id=f"pay-{index}",
        subscription_plan="basic",
        subscription_amount=amount * 10,
        commission_percentage=Decimal("0.1000"),
        commission_amount=amount,
        status=status,
        created_at=created_at or BASE_TIME + timedelta(minutes=index),
    )
    async with session_factory() as session, session.begin():
        session.add(earning)
    return earning


async def add_bank_details(
    session_factory: async_sessionmaker[AsyncSession],
    user: User,
    details: BankDetailsInput | None = None,
) -> UserBankDetails:
    cleaned = (details or bank_details_input()).normalized()
    record = UserBankDetails(
        user_id=user.id,
        bank_code=cleaned.bank_code,
        bank_name=cleaned.bank_name,
        account_number=cleaned.account_number,
        account_name=cleaned.account_name,
        is_default=True,
    )
    async with session_factory() as session, session.begin():
        session.add(record)
    return record
