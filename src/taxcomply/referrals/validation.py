"""Input normalisation shared by the ledger, bank details and withdrawals."""

from __future__ import annotations

import re
import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from taxcomply.referrals.exceptions import ReferralValidationError

KOBO = Decimal("0.01")
NAIRA = Decimal("1")
ZERO = Decimal("0.00")

_WHITESPACE = re.compile(r"\s+")
_ACCOUNT_NUMBER = re.compile(r"^[0-9]{10}$")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(KOBO, rounding=ROUND_HALF_UP)


def to_money(value: Any, *, field: str = "amount") -> Decimal:
    """Coerce ``value`` into a finite, positive Decimal amount."""

    if isinstance(value, bool) or value is None:
        raise ReferralValidationError(f"{field} must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ReferralValidationError(f"{field} must be a number") from exc
    if not amount.is_finite():
        raise ReferralValidationError(f"{field} must be a finite number")
    if amount <= 0:
        raise ReferralValidationError(f"{field} must be greater than zero")
    return amount


def calculate_commission(amount: Decimal, percentage: Decimal) -> Decimal:
    """Commission in whole naira, rounded half-up, kept at two places."""

    whole = (amount * percentage).quantize(NAIRA, rounding=ROUND_HALF_UP)
    return quantize_money(whole)


def normalize_account_number(value: str | None) -> str:
    """Strip whitespace and require exactly ten digits."""

    normalized = _WHITESPACE.sub("", value or "")
    if not _ACCOUNT_NUMBER.match(normalized):
        raise ReferralValidationError("Account number must be exactly 10 digits")
    return normalized


def require_text(value: str | None, field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ReferralValidationError(f"{field} is required")
    return cleaned


def require_identifier(value: Any, field: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError) as exc:
        raise ReferralValidationError(f"{field} is not a valid identifier") from exc
