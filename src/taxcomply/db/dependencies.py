from __future__ import annotations

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxcomply.db.session import get_session, get_session_factory


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory handed to services that own their transactions."""
    return get_session_factory()


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session
