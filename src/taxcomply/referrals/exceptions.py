"""Referral module exceptions."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taxcomply.referrals.models import ReferralWithdrawal


class ReferralError(Exception):
    """Base exception for referral module."""


class ReferralValidationError(ReferralError):
    """Raised when caller-supplied input is malformed or incomplete."""


class SelfReferralError(ReferralValidationError):
    """Raised when trying to refer oneself."""


class BankDetailsRequiredError(ReferralValidationError):
    """Raised when a withdrawal is requested before bank details are saved."""


class BankDetailsMismatchError(ReferralValidationError):
    """Raised when withdrawal destination differs from the saved account."""


class BankAccountConflictError(ReferralError):
    """Raised when an account number already belongs to another user."""


class BankDetailsNotFoundError(ReferralError):
    """Raised when bank details are missing or owned by someone else."""


class BankDetailsConcurrencyError(ReferralError):
    """Raised when the same user's bank details were saved concurrently."""


class WithdrawalNotFoundError(ReferralError):
    """Raised when a withdrawal request is not found."""


class WithdrawalInsufficientFundsError(ReferralError):
    """Raised when withdrawal amount exceeds available balance.

    Also raised when the balance is large enough but no run of whole earnings
    adds up to the requested amount exactly.
    """


class WithdrawalStateError(ReferralError):
    """Raised when a withdrawal cannot move to the requested status."""


class EarningsConcurrencyError(ReferralError):
    """Raised when selected earnings were claimed by a concurrent withdrawal."""


class LedgerIntegrityError(ReferralError):
    """Raised when ledger data violates an internal invariant."""


class WithdrawalPayoutFailedError(ReferralError):
    """Raised after a failed payout has been rolled back."""

    def __init__(self, message: str, *, withdrawal: ReferralWithdrawal) -> None:
        super().__init__(message)
        self.withdrawal = withdrawal

    @property
    def withdrawal_id(self) -> uuid.UUID:
        return self.withdrawal.id
