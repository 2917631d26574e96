from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from taxcomply.core.config import ReferralSettings, get_settings
from taxcomply.db.models import Page, PageParams, paginate_query
from taxcomply.db.session import get_session_factory
from taxcomply.referrals.enums import EarningStatus
from taxcomply.referrals.models import ReferralEarning
from taxcomply.referrals.validation import (
    ZERO,
    calculate_commission,
    quantize_money,
    require_identifier,
    require_text,
    to_money,
)

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class BalanceSummary:
    """Per-status commission totals for one referrer."""

    available: Decimal
    withdrawn: Decimal
    pending: Decimal

    @property
    def total(self) -> Decimal:
        return self.available + self.withdrawn + self.pending


async def sum_commission(
    session: AsyncSession,
    referrer_id: uuid.UUID,
    status: EarningStatus | None = None,
) -> Decimal:
    """Aggregate commission for a referrer inside the caller's session."""

    stmt = select(
        func.coalesce(func.sum(ReferralEarning.commission_amount), ZERO)
    ).where(ReferralEarning.referrer_id == referrer_id)
    if status is not None:
        stmt = stmt.where(ReferralEarning.status == status)
    total = (await session.execute(stmt)).scalar()
    return quantize_money(Decimal(str(total or ZERO)))


class EarningLedger:
    """Append-only commission records, one per upstream payment."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: ReferralSettings | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self._settings = settings or get_settings().referral

    async def create_earning(
        self,
        *,
        referrer_id: Any,
        referred_user_id: Any,
        subscription_id: str,
        payment_id: str,
        plan: str,
        subscription_amount: Any,
    ) -> ReferralEarning:
        """Record the commission for ``payment_id``.

        Repeated calls for the same payment return the stored earning
        unchanged, including when two calls race to insert it.
        """

        referrer = require_identifier(referrer_id, "referrer_id")
        referred_user = require_identifier(referred_user_id, "referred_user_id")
        subscription = require_text(subscription_id, "subscription_id")
        payment = require_text(payment_id, "payment_id")
        plan_name = require_text(plan, "plan")
        amount = quantize_money(
            to_money(subscription_amount, field="subscription_amount")
        )
        percentage = self._settings.commission_percentage

        try:
            async with self._session_factory() as session, session.begin():
                existing = await self._find_by_payment(session, payment)
                if existing is not None:
                    logger.info(
                        "referral_earning_exists",
                        payment_id=payment,
                        earning_id=str(existing.id),
                    )
                    return existing

                earning = ReferralEarning(
                    referrer_id=referrer,
                    referred_user_id=referred_user,
                    subscription_id=subscription,
                    payment_id=payment,
                    subscription_plan=plan_name,
                    subscription_amount=amount,
                    commission_percentage=percentage,
                    commission_amount=calculate_commission(amount, percentage),
                    status=EarningStatus.AVAILABLE,
                )
                session.add(earning)
                await session.flush()
        except IntegrityError:
            async with self._session_factory() as session:
                existing = await self._find_by_payment(session, payment)
            if existing is None:
                raise
            logger.info(
                "referral_earning_race_resolved",
                payment_id=payment,
                earning_id=str(existing.id),
            )
            return existing

        logger.info(
            "referral_earning_created",
            earning_id=str(earning.id),
            referrer_id=str(referrer),
            referred_user_id=str(referred_user),
            plan=plan_name,
            subscription_amount=str(amount),
            commission_amount=str(earning.commission_amount),
        )
        return earning

    async def get_earning_by_payment(self, payment_id: str) -> ReferralEarning | None:
        async with self._session_factory() as session:
            return await self._find_by_payment(session, payment_id.strip())

    async def get_earnings_by_referrer(
        self,
        referrer_id: Any,
        *,
        status: EarningStatus | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> Page[ReferralEarning]:
        """Newest-first page of a referrer's earnings."""

        referrer = require_identifier(referrer_id, "referrer_id")
        params = PageParams.clamp(page, limit, self._settings.pagination)

        stmt = (
            select(ReferralEarning)
            .where(ReferralEarning.referrer_id == referrer)
            .order_by(ReferralEarning.created_at.desc(), ReferralEarning.id.desc())
        )
        if status is not None:
            stmt = stmt.where(ReferralEarning.status == status)

        async with self._session_factory() as session:
            return await paginate_query(
                session,
                stmt,
                params,
                options=(selectinload(ReferralEarning.referred_user),),
            )

    async def get_available_balance(self, referrer_id: Any) -> Decimal:
        referrer = require_identifier(referrer_id, "referrer_id")
        async with self._session_factory() as session:
            return await sum_commission(session, referrer, EarningStatus.AVAILABLE)

    async def get_total_withdrawn(self, referrer_id: Any) -> Decimal:
        referrer = require_identifier(referrer_id, "referrer_id")
        async with self._session_factory() as session:
            return await sum_commission(session, referrer, EarningStatus.WITHDRAWN)

    async def get_total_earnings(self, referrer_id: Any) -> Decimal:
        referrer = require_identifier(referrer_id, "referrer_id")
        async with self._session_factory() as session:
            return await sum_commission(session, referrer)

    async def get_balance_summary(self, referrer_id: Any) -> BalanceSummary:
        """Totals per status from a single grouped aggregate."""

        referrer = require_identifier(referrer_id, "referrer_id")
        stmt = (
            select(
                ReferralEarning.status,
                func.coalesce(func.sum(ReferralEarning.commission_amount), ZERO),
            )
            .where(ReferralEarning.referrer_id == referrer)
            .group_by(ReferralEarning.status)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        totals = {status: ZERO for status in EarningStatus}
        for status, amount in rows:
            totals[EarningStatus(status)] = quantize_money(Decimal(str(amount)))

        return BalanceSummary(
            available=totals[EarningStatus.AVAILABLE],
            withdrawn=totals[EarningStatus.WITHDRAWN],
            pending=totals[EarningStatus.PENDING],
        )

    @staticmethod
    async def _find_by_payment(
        session: AsyncSession, payment_id: str
    ) -> ReferralEarning | None:
        stmt = select(ReferralEarning).where(ReferralEarning.payment_id == payment_id)
        return (await session.execute(stmt)).scalar_one_or_none()
