from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxcomply.core.config import Settings, get_settings
from taxcomply.db.dependencies import get_db_session_factory
from taxcomply.payments.dependencies import get_payout_gateway
from taxcomply.payments.gateway import PayoutGateway
from taxcomply.referrals.bank_details import BankDetailsStore
from taxcomply.referrals.ledger import EarningLedger
from taxcomply.referrals.service import ReferralService
from taxcomply.referrals.withdrawals import WithdrawalService

__all__ = [
    "get_bank_details_store",
    "get_earning_ledger",
    "get_referral_service",
    "get_withdrawal_service",
]


def get_referral_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(
        get_db_session_factory
    ),
) -> ReferralService:
    return ReferralService(session_factory)


def get_earning_ledger(
    session_factory: async_sessionmaker[AsyncSession] = Depends(
        get_db_session_factory
    ),
    settings: Settings = Depends(get_settings),
) -> EarningLedger:
    return EarningLedger(session_factory, settings.referral)


def get_bank_details_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(
        get_db_session_factory
    ),
) -> BankDetailsStore:
    return BankDetailsStore(session_factory)


def get_withdrawal_service(
    gateway: PayoutGateway = Depends(get_payout_gateway),
    session_factory: async_sessionmaker[AsyncSession] = Depends(
        get_db_session_factory
    ),
    settings: Settings = Depends(get_settings),
) -> WithdrawalService:
    return WithdrawalService(gateway, session_factory, settings.referral)
