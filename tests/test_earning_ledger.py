from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxcomply.core.config import ReferralSettings
from taxcomply.referrals.enums import EarningStatus
from taxcomply.referrals.exceptions import ReferralValidationError
from taxcomply.referrals.ledger import EarningLedger
from taxcomply.referrals.models import ReferralEarning
from taxcomply.referrals.validation import calculate_commission
from tests.factories import BASE_TIME, add_earning, create_user


@pytest.fixture
def ledger(
    session_factory: async_sessionmaker[AsyncSession],
    referral_settings: ReferralSettings,
) -> EarningLedger:
    return EarningLedger(session_factory, referral_settings)


async def _count_earnings(
    session_factory: async_sessionmaker[AsyncSession], payment_id: str
) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).where(ReferralEarning.payment_id == payment_id)
        return (await session.execute(stmt)).scalar_one()


class TestCreateEarning:
    async def test_commission_is_percentage_of_subscription(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)

        earning = await ledger.create_earning(
            referrer_id=referrer.id,
            referred_user_id=referred.id,
            subscription_id="sub-001",
            payment_id="pay-001",
            plan="premium",
            subscription_amount=Decimal("20000"),
        )

        assert earning.commission_percentage == Decimal("0.15")
        assert earning.commission_amount == Decimal("3000.00")
        assert earning.subscription_amount == Decimal("20000.00")
        assert earning.status is EarningStatus.AVAILABLE
        assert earning.withdrawal_id is None
        assert earning.subscription_plan == "premium"

    async def test_fractional_commission_is_rounded_to_whole_naira(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)

        earning = await ledger.create_earning(
            referrer_id=referrer.id,
            referred_user_id=referred.id,
            subscription_id="sub-odd",
            payment_id="pay-odd",
            plan="basic",
            subscription_amount="1003",
        )
        stored = await ledger.get_earning_by_payment("pay-odd")

        assert earning.commission_amount == Decimal("150.00")
        assert stored is not None
        assert stored.commission_amount == Decimal("150.00")
        assert await ledger.get_available_balance(referrer.id) == Decimal("150.00")

    async def test_same_payment_returns_existing_earning(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)
        kwargs = dict(
            referrer_id=referrer.id,
            referred_user_id=referred.id,
            subscription_id="sub-002",
            payment_id="pay-002",
            plan="basic",
            subscription_amount="5000",
        )

        first = await ledger.create_earning(**kwargs)
        second = await ledger.create_earning(**{**kwargs, "subscription_amount": "9000"})

        assert second.id == first.id
        assert second.commission_amount == Decimal("750.00")
        assert await _count_earnings(session_factory, "pay-002") == 1

    async def test_insert_race_returns_winning_record(
        self,
        referral_settings: ReferralSettings,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """A duplicate insert that loses the race resolves to the stored row."""

        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)
        ledger = EarningLedger(session_factory, referral_settings)
        winner = await ledger.create_earning(
            referrer_id=referrer.id,
            referred_user_id=referred.id,
            subscription_id="sub-003",
            payment_id="pay-003",
            plan="basic",
            subscription_amount="1000",
        )

        class RacingLedger(EarningLedger):
            misses = 1

            @staticmethod
            async def _find_by_payment(
                session: AsyncSession, payment_id: str
            ) -> ReferralEarning | None:
                if RacingLedger.misses:
                    RacingLedger.misses -= 1
                    return None
                return await EarningLedger._find_by_payment(session, payment_id)

        racing = RacingLedger(session_factory, referral_settings)
        loser = await racing.create_earning(
            referrer_id=referrer.id,
            referred_user_id=referred.id,
            subscription_id="sub-003",
            payment_id="pay-003",
            plan="basic",
            subscription_amount="1000",
        )

        assert RacingLedger.misses == 0
        assert loser.id == winner.id
        assert await _count_earnings(session_factory, "pay-003") == 1

    @pytest.mark.parametrize("amount", [0, "-10", "abc", None, True, "NaN", "Infinity"])
    async def test_rejects_invalid_subscription_amount(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
        amount: object,
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)

        with pytest.raises(ReferralValidationError):
            await ledger.create_earning(
                referrer_id=referrer.id,
                referred_user_id=referred.id,
                subscription_id="sub-004",
                payment_id="pay-004",
                plan="basic",
                subscription_amount=amount,
            )

        assert await _count_earnings(session_factory, "pay-004") == 0

    async def test_rejects_blank_payment_and_bad_identifiers(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)

        with pytest.raises(ReferralValidationError, match="payment_id"):
            await ledger.create_earning(
                referrer_id=referrer.id,
                referred_user_id=referred.id,
                subscription_id="sub-005",
                payment_id="   ",
                plan="basic",
                subscription_amount="1000",
            )
        with pytest.raises(ReferralValidationError, match="referrer_id"):
            await ledger.create_earning(
                referrer_id="not-a-uuid",
                referred_user_id=referred.id,
                subscription_id="sub-005",
                payment_id="pay-005",
                plan="basic",
                subscription_amount="1000",
            )

    async def test_lookup_by_payment(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)
        earning = await ledger.create_earning(
            referrer_id=str(referrer.id),
            referred_user_id=str(referred.id),
            subscription_id="sub-006",
            payment_id="pay-006",
            plan="basic",
            subscription_amount="1000",
        )

        found = await ledger.get_earning_by_payment(" pay-006 ")

        assert found is not None
        assert found.id == earning.id
        assert await ledger.get_earning_by_payment("pay-unknown") is None


def test_commission_rounds_half_up_to_whole_naira() -> None:
    assert calculate_commission(Decimal("1003"), Decimal("0.15")) == Decimal("150.00")
    assert calculate_commission(Decimal("1010"), Decimal("0.15")) == Decimal("152.00")
    assert calculate_commission(Decimal("1000.05"), Decimal("0.15")) == Decimal(
        "150.00"
    )
    assert calculate_commission(Decimal("3"), Decimal("0.15")) == Decimal("0.00")
    assert calculate_commission(Decimal("333.33"), Decimal("0.15")) == Decimal("50.00")


class TestEarningQueries:
    async def test_earnings_are_listed_newest_first(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory, first_name="Bola", last_name="Ade")
        oldest = await add_earning(
            session_factory, referrer=referrer, referred=referred, commission="100",
            created_at=BASE_TIME,
        )
        middle = await add_earning(
            session_factory, referrer=referrer, referred=referred, commission="200",
            created_at=BASE_TIME + timedelta(hours=1),
        )
        newest = await add_earning(
            session_factory, referrer=referrer, referred=referred, commission="300",
            created_at=BASE_TIME + timedelta(hours=2),
        )

        page = await ledger.get_earnings_by_referrer(referrer.id, limit=2)

        assert [item.id for item in page.items] == [newest.id, middle.id]
        assert page.total == 3
        assert page.pages == 2
        assert page.items[0].referred_user.full_name == "Bola Ade"

        second = await ledger.get_earnings_by_referrer(referrer.id, page=2, limit=2)
        assert [item.id for item in second.items] == [oldest.id]

    async def test_pagination_is_clamped(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)

        huge = await ledger.get_earnings_by_referrer(referrer.id, page=-3, limit=10_000)
        assert (huge.page, huge.limit) == (1, 50)

        defaults = await ledger.get_earnings_by_referrer(referrer.id, page=0, limit=0)
        assert (defaults.page, defaults.limit) == (1, 20)

        negative = await ledger.get_earnings_by_referrer(referrer.id, limit=-5)
        assert negative.limit == 1
        assert negative.items == []
        assert negative.total == 0

    async def test_status_filter(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)
        available = await add_earning(
            session_factory, referrer=referrer, referred=referred, commission="100"
        )
        await add_earning(
            session_factory,
            referrer=referrer,
            referred=referred,
            commission="200",
            status=EarningStatus.WITHDRAWN,
        )

        page = await ledger.get_earnings_by_referrer(
            referrer.id, status=EarningStatus.AVAILABLE
        )

        assert [item.id for item in page.items] == [available.id]
        assert page.total == 1

    async def test_balances_are_scoped_per_referrer(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        other = await create_user(session_factory)
        referred = await create_user(session_factory)
        await add_earning(
            session_factory, referrer=referrer, referred=referred, commission="2000"
        )
        await add_earning(
            session_factory, referrer=referrer, referred=referred, commission="1500.50"
        )
        await add_earning(
            session_factory,
            referrer=referrer,
            referred=referred,
            commission="3000",
            status=EarningStatus.WITHDRAWN,
        )
        await add_earning(
            session_factory,
            referrer=referrer,
            referred=referred,
            commission="400",
            status=EarningStatus.PENDING,
        )
        await add_earning(
            session_factory, referrer=other, referred=referred, commission="999"
        )

        assert await ledger.get_available_balance(referrer.id) == Decimal("3500.50")
        assert await ledger.get_total_withdrawn(referrer.id) == Decimal("3000.00")
        assert await ledger.get_total_earnings(referrer.id) == Decimal("6900.50")

        summary = await ledger.get_balance_summary(referrer.id)
        assert summary.available == Decimal("3500.50")
        assert summary.withdrawn == Decimal("3000.00")
        assert summary.pending == Decimal("400.00")
        assert summary.total == Decimal("6900.50")

    async def test_empty_ledger_has_zero_balances(
        self,
        ledger: EarningLedger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)

        summary = await ledger.get_balance_summary(referrer.id)

        assert await ledger.get_available_balance(referrer.id) == Decimal("0.00")
        assert summary.total == Decimal("0.00")
