from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxcomply.core.logging import mask_account_number
from taxcomply.db.session import get_session_factory
from taxcomply.referrals.exceptions import (
    BankAccountConflictError,
    BankDetailsConcurrencyError,
    BankDetailsNotFoundError,
    ReferralError,
    ReferralValidationError,
)
from taxcomply.referrals.models import UserBankDetails
from taxcomply.referrals.validation import (
    normalize_account_number,
    require_identifier,
    require_text,
)
from taxcomply.users.models import User

logger = structlog.get_logger(__name__)

ACCOUNT_TAKEN_MESSAGE = "This account number is already registered by another user"


@dataclass(slots=True)
class BankDetailsInput:
    """Destination account as submitted by a user."""

    bank_code: str
    bank_name: str
    account_number: str
    account_name: str

    def normalized(self) -> BankDetailsInput:
        return BankDetailsInput(
            bank_code=require_text(self.bank_code, "bank_code"),
            bank_name=require_text(self.bank_name, "bank_name"),
            account_number=normalize_account_number(
                require_text(self.account_number, "account_number")
            ),
            account_name=require_text(self.account_name, "account_name"),
        )


class BankDetailsStore:
    """One payout destination per user, unique across all users."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._session_factory = session_factory or get_session_factory()

    async def save_bank_details(
        self, user_id: Any, details: BankDetailsInput
    ) -> UserBankDetails:
        """Replace the user's bank details with ``details``.

        The previous record is deleted and the new one inserted in the same
        transaction, so a rejected save leaves the old record in place.
        """

        owner = require_identifier(user_id, "user_id")
        cleaned = details.normalized()

        try:
            async with self._session_factory() as session, session.begin():
                await self._delete_existing(session, owner)

                claimed_by = await self._account_owner(
                    session, cleaned.account_number, owner
                )
                if claimed_by is not None:
                    raise BankAccountConflictError(ACCOUNT_TAKEN_MESSAGE)

                record = UserBankDetails(
                    user_id=owner,
                    bank_code=cleaned.bank_code,
                    bank_name=cleaned.bank_name,
                    account_number=cleaned.account_number,
                    account_name=cleaned.account_name,
                    is_default=True,
                )
                session.add(record)
                await session.flush()
        except BankAccountConflictError:
            logger.warning(
                "bank_details_conflict",
                user_id=str(owner),
                account_number=mask_account_number(cleaned.account_number),
            )
            raise
        except IntegrityError as exc:
            raise await self._explain_rejected_save(owner, cleaned) from exc

        logger.info(
            "bank_details_saved",
            user_id=str(owner),
            bank_code=record.bank_code,
            account_number=mask_account_number(record.account_number),
        )
        return record

    async def get_user_bank_details(self, user_id: Any) -> list[UserBankDetails]:
        """Return zero or one record; never more."""

        owner = require_identifier(user_id, "user_id")
        async with self._session_factory() as session:
            return await self.load_for_user(session, owner)

    async def get_default_bank_details(self, user_id: Any) -> UserBankDetails | None:
        records = await self.get_user_bank_details(user_id)
        return records[0] if records else None

    async def delete_bank_details(self, user_id: Any, bank_details_id: Any) -> None:
        owner = require_identifier(user_id, "user_id")
        record_id = require_identifier(bank_details_id, "bank_details_id")

        async with self._session_factory() as session, session.begin():
            record = await session.get(UserBankDetails, record_id)
            if record is None or record.user_id != owner:
                raise BankDetailsNotFoundError("Bank details not found")
            await session.delete(record)

        logger.info(
            "bank_details_deleted",
            user_id=str(owner),
            bank_details_id=str(record_id),
        )

    async def _explain_rejected_save(
        self, owner: uuid.UUID, cleaned: BankDetailsInput
    ) -> ReferralError:
        """Work out which constraint a rolled-back save ran into."""

        async with self._session_factory() as session:
            if await session.get(User, owner) is None:
                logger.warning("bank_details_unknown_user", user_id=str(owner))
                return ReferralValidationError("User not found")
            claimed_by = await self._account_owner(
                session, cleaned.account_number, owner
            )

        if claimed_by is not None:
            logger.warning(
                "bank_details_conflict",
                user_id=str(owner),
                account_number=mask_account_number(cleaned.account_number),
                race=True,
            )
            return BankAccountConflictError(ACCOUNT_TAKEN_MESSAGE)

        logger.warning("bank_details_concurrent_save", user_id=str(owner))
        return BankDetailsConcurrencyError(
            "Bank details were updated at the same time, please retry"
        )

    @staticmethod
    async def _delete_existing(session: AsyncSession, owner: uuid.UUID) -> None:
        await session.execute(
            delete(UserBankDetails).where(UserBankDetails.user_id == owner)
        )

    @staticmethod
    async def _account_owner(
        session: AsyncSession, account_number: str, owner: uuid.UUID
    ) -> uuid.UUID | None:
        """Return the other user holding ``account_number``, if any."""

        stmt = select(UserBankDetails.user_id).where(
            UserBankDetails.account_number == account_number,
            UserBankDetails.user_id != owner,
        )
        return (await session.execute(stmt)).scalars().first()

    @staticmethod
    async def load_for_user(
        session: AsyncSession, user_id: uuid.UUID
    ) -> list[UserBankDetails]:
        stmt = (
            select(UserBankDetails)
            .where(UserBankDetails.user_id == user_id)
            .order_by(UserBankDetails.created_at.asc(), UserBankDetails.id.asc())
        )
        records = list((await session.execute(stmt)).scalars().all())
        if len(records) > 1:
            logger.warning(
                "bank_details_multiple_records",
                user_id=str(user_id),
                count=len(records),
            )
            return records[:1]
        return records
