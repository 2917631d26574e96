"""Common database models and utilities."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.interfaces import ORMOption

from taxcomply.core.config import PaginationSettings

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class PageParams:
    """Pagination parameters after server-side clamping."""

    page: int
    limit: int

    @classmethod
    def clamp(
        cls,
        page: int | None,
        limit: int | None,
        bounds: PaginationSettings,
    ) -> PageParams:
        """Force client-supplied values into the configured bounds.

        Missing or zero values fall back to the configured defaults.
        """
        resolved_page = max(bounds.min_page, page or bounds.default_page)
        resolved_limit = max(
            bounds.min_limit,
            min(limit or bounds.default_limit, bounds.max_limit),
        )
        return cls(page=resolved_page, limit=resolved_limit)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(slots=True)
class Page(Generic[T]):
    """A single page of results plus the totals needed to render pagers."""

    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


async def paginate_query(
    session: AsyncSession,
    stmt: Select[Any],
    params: PageParams,
    *,
    options: Sequence[ORMOption] = (),
) -> Page[Any]:
    """Paginate a SQLAlchemy query and return items with total count.

    Loader options are applied to the item query only so the count stays a
    plain aggregate.
    """
    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total_result = await session.execute(count_stmt)
    total = total_result.scalar() or 0

    paginated_stmt = stmt.options(*options).offset(params.offset).limit(params.limit)
    result = await session.execute(paginated_stmt)
    items = list(result.scalars().unique().all())

    return Page(items=items, total=total, page=params.page, limit=params.limit)
