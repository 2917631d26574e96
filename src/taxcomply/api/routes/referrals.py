from __future__ import annotations

import uuid
from typing import NoReturn

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from taxcomply.api.dependencies.users import get_current_user, get_current_user_id
from taxcomply.api.schemas.referrals import (
    BalanceSummaryResponse,
    BankDetailsListResponse,
    BankDetailsRequest,
    BankDetailsResponse,
    DashboardResponse,
    EarningListItem,
    EarningPage,
    EarningResponse,
    ReferralResponse,
    WithdrawalCreatedResponse,
    WithdrawalPage,
    WithdrawalRequest,
    WithdrawalResponse,
)
from taxcomply.core.config import Settings, get_settings
from taxcomply.db.models import Page
from taxcomply.referrals.bank_details import BankDetailsInput, BankDetailsStore
from taxcomply.referrals.dependencies import (
    get_bank_details_store,
    get_earning_ledger,
    get_referral_service,
    get_withdrawal_service,
)
from taxcomply.referrals.enums import EarningStatus
from taxcomply.referrals.exceptions import (
    BankAccountConflictError,
    BankDetailsConcurrencyError,
    BankDetailsNotFoundError,
    EarningsConcurrencyError,
    LedgerIntegrityError,
    ReferralError,
    ReferralValidationError,
    WithdrawalInsufficientFundsError,
    WithdrawalNotFoundError,
    WithdrawalPayoutFailedError,
    WithdrawalStateError,
)
from taxcomply.referrals.ledger import EarningLedger
from taxcomply.referrals.models import ReferralEarning, ReferralWithdrawal
from taxcomply.referrals.service import ReferralService
from taxcomply.referrals.withdrawals import WithdrawalService
from taxcomply.users.models import User

router = APIRouter(prefix="/api/v1/referrals", tags=["referrals"])

logger = structlog.get_logger(__name__)

GENERIC_ERROR_DETAIL = "Something went wrong, please try again or contact support"


def _raise_http(exc: ReferralError) -> NoReturn:
    """Translate a referral domain error into the matching HTTP error."""

    if isinstance(exc, WithdrawalPayoutFailedError):
        raise HTTPException(
            status.HTTP_502_BAD_GATEWAY,
            detail="Withdrawal failed, funds returned to your balance",
        ) from exc
    if isinstance(exc, LedgerIntegrityError):
        logger.error("referral_request_integrity_error", error=str(exc))
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR, detail=GENERIC_ERROR_DETAIL
        ) from exc
    if isinstance(exc, EarningsConcurrencyError):
        raise HTTPException(
            status.HTTP_409_CONFLICT,
            detail="Some earnings are no longer available, please retry",
        ) from exc
    if isinstance(
        exc,
        BankAccountConflictError | BankDetailsConcurrencyError | WithdrawalStateError,
    ):
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, BankDetailsNotFoundError | WithdrawalNotFoundError):
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ReferralValidationError | WithdrawalInsufficientFundsError):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    logger.error("referral_request_failed", error=str(exc))
    raise HTTPException(
        status.HTTP_500_INTERNAL_SERVER_ERROR, detail=GENERIC_ERROR_DETAIL
    ) from exc


def _earning_page(page: Page[ReferralEarning]) -> EarningPage:
    return EarningPage(
        items=[EarningListItem.model_validate(item) for item in page.items],
        total=page.total,
        page=page.page,
        limit=page.limit,
        pages=page.pages,
    )


def _withdrawal_page(page: Page[ReferralWithdrawal]) -> WithdrawalPage:
    return WithdrawalPage(
        items=[WithdrawalResponse.model_validate(item) for item in page.items],
        total=page.total,
        page=page.page,
        limit=page.limit,
        pages=page.pages,
    )


@router.get(
    "/dashboard",
    response_model=DashboardResponse,
    summary="Referral overview for the current user",
)
async def get_dashboard(
    current_user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    referral_service: ReferralService = Depends(get_referral_service),
    ledger: EarningLedger = Depends(get_earning_ledger),
    bank_details: BankDetailsStore = Depends(get_bank_details_store),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
    page: int | None = Query(default=None),
    limit: int | None = Query(default=None),
) -> DashboardResponse:
    referrals = await referral_service.get_referrals_by_referrer(current_user.id)
    earnings = await ledger.get_earnings_by_referrer(
        current_user.id, page=page, limit=limit
    )
    summary = await ledger.get_balance_summary(current_user.id)
    withdrawals = await withdrawal_service.get_withdrawals_by_user(
        current_user.id, page=page, limit=limit
    )
    saved = await bank_details.get_default_bank_details(current_user.id)

    return DashboardResponse(
        referral_id=current_user.referral_id,
        referral_link=settings.referral_link(current_user.referral_id),
        referrals=[ReferralResponse.model_validate(item) for item in referrals],
        earnings=_earning_page(earnings),
        summary=BalanceSummaryResponse(
            available_balance=summary.available,
            total_withdrawn=summary.withdrawn,
            pending_balance=summary.pending,
            total_earnings=summary.total,
        ),
        withdrawals=_withdrawal_page(withdrawals),
        bank_details=BankDetailsResponse.model_validate(saved) if saved else None,
    )


@router.get("/earnings", response_model=EarningPage, summary="List earnings")
async def list_earnings(
    user_id: uuid.UUID = Depends(get_current_user_id),
    ledger: EarningLedger = Depends(get_earning_ledger),
    earning_status: EarningStatus | None = Query(default=None, alias="status"),
    page: int | None = Query(default=None),
    limit: int | None = Query(default=None),
) -> EarningPage:
    result = await ledger.get_earnings_by_referrer(
        user_id, status=earning_status, page=page, limit=limit
    )
    return _earning_page(result)


@router.get(
    "/bank-details",
    response_model=BankDetailsListResponse,
    summary="Get saved bank details",
)
async def get_bank_details(
    user_id: uuid.UUID = Depends(get_current_user_id),
    store: BankDetailsStore = Depends(get_bank_details_store),
) -> BankDetailsListResponse:
    records = await store.get_user_bank_details(user_id)
    return BankDetailsListResponse(
        items=[BankDetailsResponse.model_validate(record) for record in records]
    )


@router.post(
    "/bank-details",
    response_model=BankDetailsResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Save or replace bank details",
)
async def save_bank_details(
    payload: BankDetailsRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    store: BankDetailsStore = Depends(get_bank_details_store),
) -> BankDetailsResponse:
    try:
        record = await store.save_bank_details(
            user_id, BankDetailsInput(**payload.model_dump())
        )
    except ReferralError as exc:
        _raise_http(exc)
    return BankDetailsResponse.model_validate(record)


@router.delete(
    "/bank-details/{bank_details_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete saved bank details",
)
async def delete_bank_details(
    bank_details_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    store: BankDetailsStore = Depends(get_bank_details_store),
) -> None:
    try:
        await store.delete_bank_details(user_id, bank_details_id)
    except ReferralError as exc:
        _raise_http(exc)


@router.post(
    "/withdraw",
    response_model=WithdrawalCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Withdraw available referral earnings",
)
async def request_withdrawal(
    payload: WithdrawalRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
) -> WithdrawalCreatedResponse:
    destination = BankDetailsInput(
        bank_code=payload.bank_code,
        bank_name=payload.bank_name,
        account_number=payload.account_number,
        account_name=payload.account_name,
    )
    try:
        outcome = await withdrawal_service.request_withdrawal(
            user_id, payload.amount, destination
        )
    except ReferralError as exc:
        _raise_http(exc)

    return WithdrawalCreatedResponse(
        withdrawal=WithdrawalResponse.model_validate(outcome.withdrawal),
        consumed_earnings=[
            EarningResponse.model_validate(item) for item in outcome.consumed_earnings
        ],
    )


@router.get(
    "/withdrawals",
    response_model=WithdrawalPage,
    summary="List withdrawal history",
)
async def list_withdrawals(
    user_id: uuid.UUID = Depends(get_current_user_id),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
    page: int | None = Query(default=None),
    limit: int | None = Query(default=None),
) -> WithdrawalPage:
    result = await withdrawal_service.get_withdrawals_by_user(
        user_id, page=page, limit=limit
    )
    return _withdrawal_page(result)


@router.post(
    "/withdrawals/{withdrawal_id}/cancel",
    response_model=WithdrawalResponse,
    summary="Cancel a withdrawal whose payout was never sent",
)
async def cancel_withdrawal(
    withdrawal_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
) -> WithdrawalResponse:
    try:
        withdrawal = await withdrawal_service.cancel_withdrawal(user_id, withdrawal_id)
    except ReferralError as exc:
        _raise_http(exc)
    return WithdrawalResponse.model_validate(withdrawal)
