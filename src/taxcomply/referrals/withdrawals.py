"""Withdrawal settlement: FIFO reservation of whole earnings and payout.

Funds are reserved in one transaction and paid out after it commits, so no
database transaction is held open across the gateway call. A failed payout
is undone by a separate compensating transaction.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import secrets
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from taxcomply.core.config import ReferralSettings, get_settings
from taxcomply.core.logging import mask_account_number
from taxcomply.db.base import utcnow
from taxcomply.db.models import Page, PageParams, paginate_query
from taxcomply.db.session import get_session_factory
from taxcomply.payments.exceptions import PayoutError
from taxcomply.payments.gateway import REJECTED_STATUSES, PayoutGateway
from taxcomply.payments.types import DisbursementRequest, DisbursementResult
from taxcomply.referrals.bank_details import BankDetailsInput, BankDetailsStore
from taxcomply.referrals.enums import EarningStatus, WithdrawalStatus
from taxcomply.referrals.exceptions import (
    BankDetailsMismatchError,
    BankDetailsRequiredError,
    EarningsConcurrencyError,
    LedgerIntegrityError,
    ReferralValidationError,
    WithdrawalInsufficientFundsError,
    WithdrawalNotFoundError,
    WithdrawalPayoutFailedError,
    WithdrawalStateError,
)
from taxcomply.referrals.ledger import sum_commission
from taxcomply.referrals.models import (
    ReferralEarning,
    ReferralWithdrawal,
    ReferralWithdrawalEarning,
    UserBankDetails,
)
from taxcomply.referrals.validation import (
    ZERO,
    quantize_money,
    require_identifier,
    to_money,
)

logger = structlog.get_logger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_FAILURE_REASON_MAX_LENGTH = 500
SUCCESS_STATUS = "SUCCESS"
_OPEN_STATUSES = (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING)


def generate_withdrawal_reference() -> str:
    """Return a payout reference such as ``REF-WD-1718000000000-k3j9x0abq``."""

    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"REF-WD-{int(time.time() * 1000)}-{suffix}"


def withdrawal_narration(earning_count: int) -> str:
    return f"Referral earnings withdrawal - {earning_count} earning(s)"


@dataclass(slots=True)
class WithdrawalOutcome:
    withdrawal: ReferralWithdrawal
    consumed_earnings: list[ReferralEarning]


@dataclass(slots=True)
class ReconciliationReport:
    """Counts produced by one sweep over stale Processing withdrawals."""

    checked: int = 0
    completed: int = 0
    failed: int = 0
    unchanged: int = 0
    errors: list[str] = field(default_factory=list)


class WithdrawalService:
    """Settles withdrawal requests against a referrer's available earnings."""

    def __init__(
        self,
        gateway: PayoutGateway,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: ReferralSettings | None = None,
    ) -> None:
        self._gateway = gateway
        self._session_factory = session_factory or get_session_factory()
        self._settings = settings or get_settings().referral

    async def request_withdrawal(
        self, user_id: Any, amount: Any, destination: BankDetailsInput
    ) -> WithdrawalOutcome:
        owner = require_identifier(user_id, "user_id")
        requested = self._validate_amount(amount)
        target = destination.normalized()
        saved = await self._require_matching_bank_details(owner, target)

        withdrawal, consumed = await self._reserve(owner, requested, saved)

        request = DisbursementRequest(
            amount=withdrawal.amount,
            reference=withdrawal.reference or "",
            narration=withdrawal_narration(len(consumed)),
            destination_bank_code=withdrawal.bank_code,
            destination_account_number=withdrawal.account_number,
            destination_account_name=withdrawal.account_name,
            currency_code=self._settings.currency_code,
        )
        try:
            result = await self._gateway.initiate_disbursement(request)
        except Exception as exc:
            reason = str(exc) or "Payout failed"
            logger.error(
                "withdrawal_payout_failed",
                withdrawal_id=str(withdrawal.id),
                user_id=str(owner),
                amount=str(withdrawal.amount),
                reason=reason,
            )
            failed = await self._compensate(
                withdrawal.id,
                reason=reason,
                final_status=WithdrawalStatus.FAILED,
            )
            for earning in consumed:
                set_committed_value(earning, "status", EarningStatus.AVAILABLE)
                set_committed_value(earning, "withdrawal_id", None)
            raise WithdrawalPayoutFailedError(
                "Withdrawal failed, funds returned to your balance",
                withdrawal=failed,
            ) from exc

        processing = await self._mark_processing(withdrawal.id, result)
        return WithdrawalOutcome(withdrawal=processing, consumed_earnings=consumed)

    async def complete_withdrawal(
        self, reference: str, *, transaction_reference: str | None = None
    ) -> ReferralWithdrawal:
        """Mark a paid-out withdrawal Completed; its earnings stay Withdrawn."""

        async with self._session_factory() as session, session.begin():
            withdrawal = await self._find_by_reference(
                session, reference, for_update=True
            )
            values: dict[str, Any] = {
                "status": WithdrawalStatus.COMPLETED,
                "processed_at": utcnow(),
            }
            if transaction_reference:
                values["transaction_reference"] = transaction_reference
            completed = not withdrawal.status.is_final and await self._transition(
                session, withdrawal, _OPEN_STATUSES, **values
            )
            if not completed:
                self._log_late_completion(withdrawal)
                return withdrawal

        logger.info(
            "withdrawal_completed",
            withdrawal_id=str(withdrawal.id),
            user_id=str(withdrawal.user_id),
            amount=str(withdrawal.amount),
        )
        return withdrawal

    async def fail_withdrawal(self, reference: str, reason: str) -> ReferralWithdrawal:
        async with self._session_factory() as session:
            withdrawal = await self._find_by_reference(session, reference)
        return await self._compensate(
            withdrawal.id,
            reason=reason or "Disbursement failed",
            final_status=WithdrawalStatus.FAILED,
        )

    async def cancel_withdrawal(
        self, user_id: Any, withdrawal_id: Any
    ) -> ReferralWithdrawal:
        """Release a Pending withdrawal whose payout was never sent."""

        owner = require_identifier(user_id, "user_id")
        withdrawal = await self.get_withdrawal(owner, withdrawal_id)
        if withdrawal.status is not WithdrawalStatus.PENDING:
            raise WithdrawalStateError("Only pending withdrawals can be cancelled")

        grace = dt.timedelta(minutes=self._settings.stale_processing_minutes)
        if withdrawal.created_at > utcnow() - grace:
            raise WithdrawalStateError(
                "Withdrawal is still being processed, try again later"
            )

        return await self._compensate(
            withdrawal.id,
            reason="Cancelled by user",
            final_status=WithdrawalStatus.CANCELLED,
        )

    async def get_withdrawal(self, user_id: Any, withdrawal_id: Any) -> ReferralWithdrawal:
        owner = require_identifier(user_id, "user_id")
        try:
            ident = require_identifier(withdrawal_id, "withdrawal_id")
        except ReferralValidationError as exc:
            raise WithdrawalNotFoundError("Withdrawal not found") from exc

        async with self._session_factory() as session:
            withdrawal = await session.get(ReferralWithdrawal, ident)
        if withdrawal is None or withdrawal.user_id != owner:
            raise WithdrawalNotFoundError("Withdrawal not found")
        return withdrawal

    async def get_withdrawals_by_user(
        self,
        user_id: Any,
        *,
        page: int | None = None,
        limit: int | None = None,
    ) -> Page[ReferralWithdrawal]:
        owner = require_identifier(user_id, "user_id")
        params = PageParams.clamp(page, limit, self._settings.pagination)
        stmt = (
            select(ReferralWithdrawal)
            .where(ReferralWithdrawal.user_id == owner)
            .order_by(
                ReferralWithdrawal.created_at.desc(), ReferralWithdrawal.id.desc()
            )
        )
        async with self._session_factory() as session:
            return await paginate_query(session, stmt, params)

    async def reconcile_stale_withdrawals(
        self, older_than: dt.timedelta | None = None
    ) -> ReconciliationReport:
        """Poll the gateway for Processing withdrawals nobody has heard back on.

        SUCCESS completes the withdrawal, FAILED/REVERSED/EXPIRED releases its
        earnings, and anything else is left for the next sweep.
        """

        age = older_than
        if age is None:
            age = dt.timedelta(minutes=self._settings.stale_processing_minutes)
        threshold = utcnow() - age

        stmt = (
            select(ReferralWithdrawal)
            .where(
                ReferralWithdrawal.status == WithdrawalStatus.PROCESSING,
                ReferralWithdrawal.updated_at <= threshold,
            )
            .order_by(ReferralWithdrawal.updated_at.asc())
        )
        async with self._session_factory() as session:
            stale = list((await session.execute(stmt)).scalars().all())

        report = ReconciliationReport()
        for withdrawal in stale:
            report.checked += 1
            if not withdrawal.reference:
                report.unchanged += 1
                continue
            try:
                result = await self._gateway.get_disbursement_status(
                    withdrawal.reference
                )
            except PayoutError as exc:
                logger.warning(
                    "withdrawal_reconcile_lookup_failed",
                    withdrawal_id=str(withdrawal.id),
                    reference=withdrawal.reference,
                    error=str(exc),
                )
                report.unchanged += 1
                report.errors.append(withdrawal.reference)
                continue

            if result.status == SUCCESS_STATUS:
                await self.complete_withdrawal(
                    withdrawal.reference,
                    transaction_reference=result.transaction_reference,
                )
                report.completed += 1
            elif result.status in REJECTED_STATUSES:
                await self.fail_withdrawal(
                    withdrawal.reference, f"Disbursement {result.status.lower()}"
                )
                report.failed += 1
            else:
                report.unchanged += 1

        logger.info(
            "withdrawal_reconcile_finished",
            checked=report.checked,
            completed=report.completed,
            failed=report.failed,
            unchanged=report.unchanged,
        )
        return report

    def _validate_amount(self, amount: Any) -> Decimal:
        requested = to_money(amount)
        if requested != quantize_money(requested):
            raise ReferralValidationError(
                "amount cannot have more than two decimal places"
            )
        minimum = self._settings.min_withdrawal_amount
        maximum = self._settings.max_withdrawal_amount
        if requested < minimum:
            raise ReferralValidationError(f"Minimum withdrawal amount is {minimum}")
        if maximum is not None and requested > maximum:
            raise ReferralValidationError(f"Maximum withdrawal amount is {maximum}")
        return quantize_money(requested)

    async def _require_matching_bank_details(
        self, owner: uuid.UUID, target: BankDetailsInput
    ) -> UserBankDetails:
        async with self._session_factory() as session:
            records = await BankDetailsStore.load_for_user(session, owner)
        if not records:
            raise BankDetailsRequiredError(
                "You must add bank details before requesting a withdrawal"
            )

        saved = records[0]
        if (
            saved.bank_code != target.bank_code
            or saved.account_number != target.account_number
        ):
            logger.warning(
                "withdrawal_destination_mismatch",
                user_id=str(owner),
                requested_bank_code=target.bank_code,
                requested_account_number=mask_account_number(target.account_number),
            )
            raise BankDetailsMismatchError(
                "Withdrawal destination does not match your saved bank details"
            )
        return saved

    async def _reserve(
        self, owner: uuid.UUID, amount: Decimal, saved: UserBankDetails
    ) -> tuple[ReferralWithdrawal, list[ReferralEarning]]:
        async with self._session_factory() as session, session.begin():
            available = await sum_commission(session, owner, EarningStatus.AVAILABLE)
            if amount > available:
                raise WithdrawalInsufficientFundsError(
                    f"Insufficient balance. Available: {available}, "
                    f"Requested: {amount}"
                )

            selected = await self._select_fifo(session, owner, amount)
            selected_total = sum(
                (earning.commission_amount for earning in selected), ZERO
            )
            earning_ids = [earning.id for earning in selected]

            if selected_total > amount:
                logger.error(
                    "ledger_integrity_violation",
                    user_id=str(owner),
                    requested=str(amount),
                    selected_total=str(selected_total),
                    earning_ids=[str(ident) for ident in earning_ids],
                )
                raise LedgerIntegrityError(
                    "Selected earnings exceed the requested amount"
                )
            if selected_total != amount:
                raise WithdrawalInsufficientFundsError(
                    "Available earnings cannot be combined to exactly "
                    f"{amount}. Try a different amount"
                )

            withdrawal = ReferralWithdrawal(
                user_id=owner,
                amount=amount,
                bank_code=saved.bank_code,
                bank_name=saved.bank_name,
                account_number=saved.account_number,
                account_name=saved.account_name,
                status=WithdrawalStatus.PENDING,
                reference=generate_withdrawal_reference(),
                earning_links=[
                    ReferralWithdrawalEarning(earning_id=ident, position=position)
                    for position, ident in enumerate(earning_ids)
                ],
            )
            session.add(withdrawal)
            await session.flush()

            claimed = await session.execute(
                update(ReferralEarning)
                .where(
                    ReferralEarning.id.in_(earning_ids),
                    ReferralEarning.referrer_id == owner,
                    ReferralEarning.status == EarningStatus.AVAILABLE,
                )
                .values(
                    status=EarningStatus.WITHDRAWN,
                    withdrawal_id=withdrawal.id,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != len(earning_ids):
                logger.warning(
                    "withdrawal_earnings_claimed_concurrently",
                    user_id=str(owner),
                    expected=len(earning_ids),
                    claimed=claimed.rowcount,
                )
                raise EarningsConcurrencyError(
                    "Some earnings are no longer available, please retry"
                )

            for earning in selected:
                set_committed_value(earning, "status", EarningStatus.WITHDRAWN)
                set_committed_value(earning, "withdrawal_id", withdrawal.id)

        logger.info(
            "withdrawal_reserved",
            withdrawal_id=str(withdrawal.id),
            user_id=str(owner),
            amount=str(amount),
            earning_ids=[str(ident) for ident in earning_ids],
            account_number=mask_account_number(withdrawal.account_number),
        )
        return withdrawal, selected

    async def _select_fifo(
        self, session: AsyncSession, owner: uuid.UUID, amount: Decimal
    ) -> list[ReferralEarning]:
        """Walk Available earnings oldest first until ``amount`` is covered.

        Earnings are never split: the walk stops at the first earning larger
        than what is left to cover.
        """

        batch_size = self._settings.settlement_batch_size
        remaining = amount
        selected: list[ReferralEarning] = []
        cursor: tuple[dt.datetime, uuid.UUID] | None = None

        while remaining > ZERO:
            stmt = (
                select(ReferralEarning)
                .where(
                    ReferralEarning.referrer_id == owner,
                    ReferralEarning.status == EarningStatus.AVAILABLE,
                )
                .order_by(ReferralEarning.created_at.asc(), ReferralEarning.id.asc())
                .limit(batch_size)
            )
            if cursor is not None:
                created_at, ident = cursor
                stmt = stmt.where(
                    or_(
                        ReferralEarning.created_at > created_at,
                        and_(
                            ReferralEarning.created_at == created_at,
                            ReferralEarning.id > ident,
                        ),
                    )
                )

            batch = list((await session.execute(stmt)).scalars().all())
            for earning in batch:
                if earning.created_at is None:
                    logger.error(
                        "ledger_integrity_violation",
                        user_id=str(owner),
                        earning_id=str(earning.id),
                        detail="earning without created_at",
                    )
                    raise LedgerIntegrityError("Earning is missing its creation time")
                if earning.commission_amount > remaining:
                    return selected
                selected.append(earning)
                remaining -= earning.commission_amount
                if remaining == ZERO:
                    return selected

            if len(batch) < batch_size:
                break
            cursor = (batch[-1].created_at, batch[-1].id)

        return selected

    async def _mark_processing(
        self, withdrawal_id: uuid.UUID, result: DisbursementResult
    ) -> ReferralWithdrawal:
        async with self._session_factory() as session, session.begin():
            withdrawal = await session.get(
                ReferralWithdrawal, withdrawal_id, with_for_update=True
            )
            if withdrawal is None:
                raise WithdrawalNotFoundError("Withdrawal not found")
            moved = withdrawal.status is WithdrawalStatus.PENDING and (
                await self._transition(
                    session,
                    withdrawal,
                    (WithdrawalStatus.PENDING,),
                    status=WithdrawalStatus.PROCESSING,
                    transaction_reference=result.transaction_reference,
                )
            )
            if not moved:
                if withdrawal.status in {
                    WithdrawalStatus.FAILED,
                    WithdrawalStatus.CANCELLED,
                }:
                    logger.critical(
                        "withdrawal_payout_sent_after_release",
                        withdrawal_id=str(withdrawal_id),
                        status=withdrawal.status.value,
                        transaction_reference=result.transaction_reference,
                    )
                    return withdrawal
                # A webhook got here first.
                if withdrawal.transaction_reference is None:
                    withdrawal.transaction_reference = result.transaction_reference
                return withdrawal

        logger.info(
            "withdrawal_payout_initiated",
            withdrawal_id=str(withdrawal_id),
            reference=withdrawal.reference,
            transaction_reference=result.transaction_reference,
            gateway_status=result.status,
        )
        return withdrawal

    async def _compensate(
        self,
        withdrawal_id: uuid.UUID,
        *,
        reason: str,
        final_status: WithdrawalStatus,
    ) -> ReferralWithdrawal:
        attempts = self._settings.compensation_max_attempts
        backoff = self._settings.compensation_backoff_seconds

        for attempt in range(1, attempts + 1):
            try:
                return await self._release(
                    withdrawal_id, reason=reason, final_status=final_status
                )
            except SQLAlchemyError as exc:
                if attempt >= attempts:
                    logger.critical(
                        "withdrawal_compensation_failed",
                        withdrawal_id=str(withdrawal_id),
                        attempts=attempt,
                        reason=reason,
                        error=str(exc),
                    )
                    raise
                delay = backoff[min(attempt - 1, len(backoff) - 1)]
                logger.warning(
                    "withdrawal_compensation_retry",
                    withdrawal_id=str(withdrawal_id),
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover

    async def _release(
        self,
        withdrawal_id: uuid.UUID,
        *,
        reason: str,
        final_status: WithdrawalStatus,
    ) -> ReferralWithdrawal:
        """Detach a withdrawal's earnings and close it as Failed or Cancelled."""

        async with self._session_factory() as session, session.begin():
            withdrawal = await session.get(
                ReferralWithdrawal, withdrawal_id, with_for_update=True
            )
            if withdrawal is None:
                raise WithdrawalNotFoundError("Withdrawal not found")
            cancelling = final_status is WithdrawalStatus.CANCELLED
            if cancelling and withdrawal.status is WithdrawalStatus.PROCESSING:
                raise WithdrawalStateError("Only pending withdrawals can be cancelled")

            # The withdrawal is closed before its earnings are freed.
            closed = not withdrawal.status.is_final and await self._transition(
                session,
                withdrawal,
                (WithdrawalStatus.PENDING,) if cancelling else _OPEN_STATUSES,
                status=final_status,
                failure_reason=reason[:_FAILURE_REASON_MAX_LENGTH],
                processed_at=utcnow(),
            )
            if not closed:
                if not withdrawal.status.is_final:
                    raise WithdrawalStateError(
                        "Only pending withdrawals can be cancelled"
                    )
                logger.info(
                    "withdrawal_already_final",
                    withdrawal_id=str(withdrawal_id),
                    status=withdrawal.status.value,
                    requested=final_status.value,
                )
                return withdrawal

            released = await session.execute(
                update(ReferralEarning)
                .where(
                    ReferralEarning.withdrawal_id == withdrawal.id,
                    ReferralEarning.status == EarningStatus.WITHDRAWN,
                )
                .values(
                    status=EarningStatus.AVAILABLE,
                    withdrawal_id=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )

        logger.info(
            "withdrawal_compensated",
            withdrawal_id=str(withdrawal_id),
            user_id=str(withdrawal.user_id),
            status=final_status.value,
            released_earnings=released.rowcount,
            earning_ids=[str(ident) for ident in withdrawal.earning_ids],
            reason=reason,
        )
        return withdrawal

    @staticmethod
    async def _transition(
        session: AsyncSession,
        withdrawal: ReferralWithdrawal,
        allowed: tuple[WithdrawalStatus, ...],
        **values: Any,
    ) -> bool:
        """Write ``values`` only while the row is still in an ``allowed`` status.

        Returns False, with ``withdrawal`` refreshed from the database, when
        another transaction moved it first.
        """

        values.setdefault("updated_at", utcnow())
        result = await session.execute(
            update(ReferralWithdrawal)
            .where(
                ReferralWithdrawal.id == withdrawal.id,
                ReferralWithdrawal.status.in_(allowed),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.refresh(withdrawal)
            return False
        for key, value in values.items():
            set_committed_value(withdrawal, key, value)
        return True

    @staticmethod
    def _log_late_completion(withdrawal: ReferralWithdrawal) -> None:
        if withdrawal.status is WithdrawalStatus.COMPLETED:
            logger.info(
                "withdrawal_already_final",
                withdrawal_id=str(withdrawal.id),
                status=withdrawal.status.value,
                requested=WithdrawalStatus.COMPLETED.value,
            )
            return
        # Earnings were already released; needs manual follow-up.
        logger.error(
            "withdrawal_paid_after_release",
            withdrawal_id=str(withdrawal.id),
            user_id=str(withdrawal.user_id),
            status=withdrawal.status.value,
            amount=str(withdrawal.amount),
        )

    @staticmethod
    async def _find_by_reference(
        session: AsyncSession, reference: str, *, for_update: bool = False
    ) -> ReferralWithdrawal:
        stmt = select(ReferralWithdrawal).where(
            or_(
                ReferralWithdrawal.reference == reference,
                ReferralWithdrawal.transaction_reference == reference,
            )
        )
        if for_update:
            stmt = stmt.with_for_update()
        withdrawal = (await session.execute(stmt)).scalars().first()
        if withdrawal is None:
            raise WithdrawalNotFoundError("Withdrawal not found")
        return withdrawal
