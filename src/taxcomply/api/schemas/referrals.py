from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from taxcomply.referrals.enums import EarningStatus, WithdrawalStatus


class ReferredUserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    email: str
    full_name: str


class ReferralResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    referral_id: str
    referred_user: ReferredUserSummary
    created_at: dt.datetime


class EarningResponse(BaseModel):
    """A single commission entry."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    referred_user_id: uuid.UUID
    subscription_id: str
    payment_id: str
    subscription_plan: str
    subscription_amount: Decimal
    commission_percentage: Decimal
    commission_amount: Decimal
    status: EarningStatus
    withdrawal_id: uuid.UUID | None = None
    created_at: dt.datetime


class EarningListItem(EarningResponse):
    referred_user: ReferredUserSummary | None = None


class EarningPage(BaseModel):
    items: list[EarningListItem]
    total: int
    page: int
    limit: int
    pages: int


class BalanceSummaryResponse(BaseModel):
    available_balance: Decimal = Field(..., description="Withdrawable right now")
    total_withdrawn: Decimal = Field(
        ..., description="Commission reserved by or paid out through withdrawals"
    )
    pending_balance: Decimal
    total_earnings: Decimal


class BankDetailsRequest(BaseModel):
    bank_code: str = Field(..., max_length=16)
    bank_name: str = Field(..., max_length=120)
    account_number: str = Field(..., max_length=32)
    account_name: str = Field(..., max_length=200)


class BankDetailsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    bank_code: str
    bank_name: str
    account_number: str
    account_name: str
    is_default: bool
    created_at: dt.datetime


class BankDetailsListResponse(BaseModel):
    items: list[BankDetailsResponse]


class WithdrawalRequest(BankDetailsRequest):
    """Amount plus the destination the client expects to be paid into."""

    amount: Decimal = Field(..., description="Amount to withdraw in naira")


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    amount: Decimal
    status: WithdrawalStatus
    bank_code: str
    bank_name: str
    account_number: str
    account_name: str
    reference: str | None = None
    transaction_reference: str | None = None
    failure_reason: str | None = None
    earning_ids: list[uuid.UUID] = Field(default_factory=list)
    created_at: dt.datetime
    processed_at: dt.datetime | None = None


class WithdrawalCreatedResponse(BaseModel):
    withdrawal: WithdrawalResponse
    consumed_earnings: list[EarningResponse]


class WithdrawalPage(BaseModel):
    items: list[WithdrawalResponse]
    total: int
    page: int
    limit: int
    pages: int


class DashboardResponse(BaseModel):
    referral_id: str | None
    referral_link: str | None
    referrals: list[ReferralResponse]
    earnings: EarningPage
    summary: BalanceSummaryResponse
    withdrawals: WithdrawalPage
    bank_details: BankDetailsResponse | None = None


class WebhookAck(BaseModel):
    status: str = "accepted"
