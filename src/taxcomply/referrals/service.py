from __future__ import annotations

import re
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from taxcomply.db.session import get_session_factory
from taxcomply.referrals.exceptions import (
    ReferralError,
    ReferralValidationError,
    SelfReferralError,
)
from taxcomply.referrals.models import Referral
from taxcomply.referrals.validation import require_identifier
from taxcomply.users.models import User

logger = structlog.get_logger(__name__)

MAX_REFERRAL_ID_ATTEMPTS = 1000
_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")


class ReferralService:
    """Referral identifiers and referrer/referred-user relationships."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._session_factory = session_factory or get_session_factory()

    @staticmethod
    def generate_referral_id(email: str) -> str:
        """Derive a referral id from the local part of ``email``."""

        if not email or "@" not in email:
            raise ReferralValidationError("Invalid email format")
        prefix = email.split("@", 1)[0].lower()
        return _NON_ALPHANUMERIC.sub("", prefix)

    async def ensure_unique_referral_id(self, base_referral_id: str) -> str:
        """Append 1, 2, ... to ``base_referral_id`` until no user holds it."""

        if not base_referral_id:
            raise ReferralValidationError("Base referral id cannot be empty")

        async with self._session_factory() as session:
            candidate = base_referral_id
            for counter in range(1, MAX_REFERRAL_ID_ATTEMPTS + 1):
                taken = (
                    await session.execute(
                        select(User.id).where(User.referral_id == candidate).limit(1)
                    )
                ).scalar_one_or_none()
                if taken is None:
                    return candidate
                candidate = f"{base_referral_id}{counter}"

        raise ReferralError(
            "Unable to generate a unique referral id after maximum attempts"
        )

    async def find_user_by_referral_id(self, referral_id: str | None) -> User | None:
        cleaned = (referral_id or "").strip().lower()
        if not cleaned:
            return None
        async with self._session_factory() as session:
            stmt = select(User).where(func.lower(User.referral_id) == cleaned)
            return (await session.execute(stmt)).scalar_one_or_none()

    async def create_referral(
        self, referrer_id: Any, referred_user_id: Any, referral_id: str
    ) -> Referral:
        """Record that ``referrer_id`` referred ``referred_user_id``.

        A referred user has at most one referral; repeated or concurrent
        calls return the existing relationship.
        """

        referrer = require_identifier(referrer_id, "referrer_id")
        referred_user = require_identifier(referred_user_id, "referred_user_id")
        if referrer == referred_user:
            raise SelfReferralError("User cannot refer themselves")
        code = (referral_id or "").strip().lower()
        if not code:
            raise ReferralValidationError("Referral id is required")

        try:
            async with self._session_factory() as session, session.begin():
                existing = await self._find_by_referred_user(session, referred_user)
                if existing is not None:
                    logger.warning(
                        "referral_already_exists",
                        referrer_id=str(referrer),
                        referred_user_id=str(referred_user),
                        existing_referrer_id=str(existing.referrer_id),
                    )
                    return existing

                referral = Referral(
                    referrer_id=referrer,
                    referred_user_id=referred_user,
                    referral_id=code,
                )
                session.add(referral)
                await session.flush()
        except IntegrityError:
            async with self._session_factory() as session:
                existing = await self._find_by_referred_user(session, referred_user)
            if existing is None:
                raise
            logger.warning(
                "referral_race_resolved",
                referred_user_id=str(referred_user),
                referral_pk=str(existing.id),
            )
            return existing

        logger.info(
            "referral_created",
            referrer_id=str(referrer),
            referred_user_id=str(referred_user),
            referral_id=code,
        )
        return referral

    async def get_referral_by_referred_user(
        self, referred_user_id: Any
    ) -> Referral | None:
        referred_user = require_identifier(referred_user_id, "referred_user_id")
        async with self._session_factory() as session:
            return await self._find_by_referred_user(session, referred_user)

    async def get_referrals_by_referrer(self, referrer_id: Any) -> list[Referral]:
        referrer = require_identifier(referrer_id, "referrer_id")
        stmt = (
            select(Referral)
            .where(Referral.referrer_id == referrer)
            .options(selectinload(Referral.referred_user))
            .order_by(Referral.created_at.desc(), Referral.id.desc())
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    @staticmethod
    async def _find_by_referred_user(
        session: AsyncSession, referred_user_id: Any
    ) -> Referral | None:
        stmt = select(Referral).where(Referral.referred_user_id == referred_user_id)
        return (await session.execute(stmt)).scalar_one_or_none()
