from __future__ import annotations

import datetime as dt
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.engine import Dialect
from sqlalchemy.sql.type_api import TypeEngine
from sqlalchemy.types import CHAR, DateTime, Numeric, TypeDecorator


class GUID(TypeDecorator[uuid.UUID]):
    """Platform-independent GUID type.

    Uses PostgreSQL's native UUID type when available, otherwise falls back to
    a CHAR(36) representation.
    """

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> TypeEngine[Any]:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value: uuid.UUID | None, dialect: Dialect) -> Any:
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            if dialect.name == "postgresql":
                return value
            return str(value)
        raise TypeError("GUID values must be UUID instances")

    def process_result_value(self, value: Any, dialect: Dialect) -> uuid.UUID | None:
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


class UTCDateTime(TypeDecorator[dt.datetime]):
    """Timezone-aware datetime type that ensures UTC timezone.

    SQLite stores naive values, so results are re-tagged as UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> TypeEngine[Any]:
        return dialect.type_descriptor(DateTime(timezone=True))

    def process_bind_param(self, value: dt.datetime | None, dialect: Dialect) -> Any:
        if value is None:
            return value
        if isinstance(value, dt.datetime):
            if value.tzinfo is None:
                raise ValueError("UTCDateTime requires timezone-aware datetime")
            converted = value.astimezone(dt.UTC)
            if dialect.name == "sqlite":
                return converted.replace(tzinfo=None)
            return converted
        raise TypeError("UTCDateTime values must be datetime instances")

    def process_result_value(self, value: Any, dialect: Dialect) -> dt.datetime | None:
        if value is None:
            return value
        if isinstance(value, dt.datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=dt.UTC)
            return value.astimezone(dt.UTC)
        if isinstance(value, str):
            parsed = dt.datetime.fromisoformat(value)
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=dt.UTC)
            return parsed.astimezone(dt.UTC)
        raise TypeError(f"Expected datetime, got {type(value)}")


class Money(TypeDecorator[Decimal]):
    """Naira amount stored as NUMERIC(14, 2) and read back kobo-exact.

    Bound values are rounded half-up to two places so SQLite, which keeps
    numerics as floats, cannot drift a balance by a fraction of a kobo.
    """

    impl = Numeric
    cache_ok = True

    _KOBO = Decimal("0.01")

    def __init__(self, precision: int = 14) -> None:
        super().__init__(precision=precision, scale=2, asdecimal=True)

    def process_bind_param(self, value: Any, dialect: Dialect) -> Decimal | None:
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError("Money values must not be floats")
        return Decimal(value).quantize(self._KOBO, rounding=ROUND_HALF_UP)

    def process_result_value(self, value: Any, dialect: Dialect) -> Decimal | None:
        if value is None:
            return None
        return Decimal(str(value)).quantize(self._KOBO, rounding=ROUND_HALF_UP)
