from __future__ import annotations

from .bank_details import BankDetailsInput, BankDetailsStore
from .enums import EarningStatus, WithdrawalStatus
from .ledger import BalanceSummary, EarningLedger
from .models import (
    Referral,
    ReferralEarning,
    ReferralWithdrawal,
    ReferralWithdrawalEarning,
    UserBankDetails,
)
from .service import ReferralService
from .withdrawals import (
    ReconciliationReport,
    WithdrawalOutcome,
    WithdrawalService,
    generate_withdrawal_reference,
)

__all__ = [
    "BalanceSummary",
    "BankDetailsInput",
    "BankDetailsStore",
    "EarningLedger",
    "EarningStatus",
    "ReconciliationReport",
    "Referral",
    "ReferralEarning",
    "ReferralService",
    "ReferralWithdrawal",
    "ReferralWithdrawalEarning",
    "UserBankDetails",
    "WithdrawalOutcome",
    "WithdrawalService",
    "WithdrawalStatus",
    "generate_withdrawal_reference",
]
