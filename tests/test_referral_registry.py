from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxcomply.referrals import service as service_module
from taxcomply.referrals.exceptions import (
    ReferralError,
    ReferralValidationError,
    SelfReferralError,
)
from taxcomply.referrals.models import Referral
from taxcomply.referrals.service import ReferralService
from tests.factories import BASE_TIME, create_user


@pytest.fixture
def referral_service(
    session_factory: async_sessionmaker[AsyncSession],
) -> ReferralService:
    return ReferralService(session_factory)


async def _referral_count(
    session_factory: async_sessionmaker[AsyncSession], referred_user_id
) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).where(Referral.referred_user_id == referred_user_id)
        return (await session.execute(stmt)).scalar_one()


class TestReferralIdentifiers:
    @pytest.mark.parametrize(
        ("email", "expected"),
        [
            ("Ada.Okafor@example.com", "adaokafor"),
            ("tunde_99+tax@example.ng", "tunde99tax"),
            ("BOLA@example.com", "bola"),
        ],
    )
    def test_generate_referral_id_from_email(self, email: str, expected: str) -> None:
        assert ReferralService.generate_referral_id(email) == expected

    @pytest.mark.parametrize("email", ["", "no-at-sign"])
    def test_generate_referral_id_rejects_invalid_email(self, email: str) -> None:
        with pytest.raises(ReferralValidationError):
            ReferralService.generate_referral_id(email)

    async def test_ensure_unique_appends_counter(
        self,
        referral_service: ReferralService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        assert await referral_service.ensure_unique_referral_id("ada") == "ada"

        await create_user(session_factory, referral_id="ada")
        await create_user(session_factory, referral_id="ada1")

        assert await referral_service.ensure_unique_referral_id("ada") == "ada2"

    async def test_ensure_unique_rejects_empty_base(
        self, referral_service: ReferralService
    ) -> None:
        with pytest.raises(ReferralValidationError):
            await referral_service.ensure_unique_referral_id("")

    async def test_ensure_unique_gives_up_after_max_attempts(
        self,
        referral_service: ReferralService,
        session_factory: async_sessionmaker[AsyncSession],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(service_module, "MAX_REFERRAL_ID_ATTEMPTS", 3)
        await create_user(session_factory, referral_id="busy")
        for counter in range(1, 4):
            await create_user(session_factory, referral_id=f"busy{counter}")

        with pytest.raises(ReferralError, match="maximum attempts"):
            await referral_service.ensure_unique_referral_id("busy")

    async def test_find_user_by_referral_id_is_case_insensitive(
        self,
        referral_service: ReferralService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        user = await create_user(session_factory, referral_id="adaokafor")

        found = await referral_service.find_user_by_referral_id("  AdaOkafor ")

        assert found is not None
        assert found.id == user.id
        assert await referral_service.find_user_by_referral_id("   ") is None
        assert await referral_service.find_user_by_referral_id(None) is None
        assert await referral_service.find_user_by_referral_id("nobody") is None


class TestCreateReferral:
    async def test_creates_relationship_with_normalized_code(
        self,
        referral_service: ReferralService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory, referral_id="adaokafor")
        referred = await create_user(session_factory)

        referral = await referral_service.create_referral(
            referrer.id, referred.id, " AdaOkafor "
        )

        assert referral.referrer_id == referrer.id
        assert referral.referred_user_id == referred.id
        assert referral.referral_id == "adaokafor"

    async def test_self_referral_is_rejected(
        self,
        referral_service: ReferralService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        user = await create_user(session_factory)

        with pytest.raises(SelfReferralError):
            await referral_service.create_referral(user.id, str(user.id), "code")

        assert await _referral_count(session_factory, user.id) == 0

    async def test_referred_user_is_only_referred_once(
        self,
        referral_service: ReferralService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        first_referrer = await create_user(session_factory)
        second_referrer = await create_user(session_factory)
        referred = await create_user(session_factory)

        original = await referral_service.create_referral(
            first_referrer.id, referred.id, "first"
        )
        repeated = await referral_service.create_referral(
            second_referrer.id, referred.id, "second"
        )

        assert repeated.id == original.id
        assert repeated.referrer_id == first_referrer.id
        assert await _referral_count(session_factory, referred.id) == 1

    async def test_insert_race_returns_existing_referral(
        self,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)
        existing = await ReferralService(session_factory).create_referral(
            referrer.id, referred.id, "code"
        )

        class RacingService(ReferralService):
            misses = 1

            @staticmethod
            async def _find_by_referred_user(session, referred_user_id):
                if RacingService.misses:
                    RacingService.misses -= 1
                    return None
                return await ReferralService._find_by_referred_user(
                    session, referred_user_id
                )

        resolved = await RacingService(session_factory).create_referral(
            referrer.id, referred.id, "code"
        )

        assert RacingService.misses == 0
        assert resolved.id == existing.id
        assert await _referral_count(session_factory, referred.id) == 1

    async def test_blank_code_is_rejected(
        self,
        referral_service: ReferralService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)

        with pytest.raises(ReferralValidationError):
            await referral_service.create_referral(referrer.id, referred.id, "  ")


class TestReferralQueries:
    async def test_referrals_by_referrer_newest_first(
        self,
        referral_service: ReferralService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        older_user = await create_user(session_factory, first_name="Chidi")
        newer_user = await create_user(session_factory, first_name="Ngozi")
        older = await referral_service.create_referral(
            referrer.id, older_user.id, "code"
        )
        newer = await referral_service.create_referral(
            referrer.id, newer_user.id, "code"
        )
        async with session_factory() as session, session.begin():
            await session.execute(
                update(Referral)
                .where(Referral.id == older.id)
                .values(created_at=BASE_TIME)
            )
            await session.execute(
                update(Referral)
                .where(Referral.id == newer.id)
                .values(created_at=BASE_TIME + timedelta(days=1))
            )

        referrals = await referral_service.get_referrals_by_referrer(referrer.id)

        assert [item.id for item in referrals] == [newer.id, older.id]
        assert referrals[0].referred_user.first_name == "Ngozi"
        assert await referral_service.get_referrals_by_referrer(newer_user.id) == []

    async def test_referral_by_referred_user(
        self,
        referral_service: ReferralService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        referrer = await create_user(session_factory)
        referred = await create_user(session_factory)
        referral = await referral_service.create_referral(
            referrer.id, referred.id, "code"
        )

        found = await referral_service.get_referral_by_referred_user(referred.id)

        assert found is not None
        assert found.id == referral.id
        assert await referral_service.get_referral_by_referred_user(referrer.id) is None
