"""Process-wide engine and session factory for the referral ledger database."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from taxcomply.core.config import Settings, get_settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def build_engine(dsn: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine for ``dsn``.

    SQLite ignores foreign keys unless asked per connection, so every SQLite
    connection switches them on to behave like PostgreSQL.
    """

    engine = create_async_engine(dsn, echo=echo, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def use_engine(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Install ``engine`` as the process-wide engine and return its factory."""

    global _engine, _session_factory
    _engine = engine
    # Services hand ORM objects back after commit, so nothing may expire.
    _session_factory = async_sessionmaker(
        engine, expire_on_commit=False, autoflush=False
    )
    return _session_factory


def get_engine(settings: Settings | None = None) -> AsyncEngine:
    if _engine is None:
        settings = settings or get_settings()
        use_engine(build_engine(settings.database.dsn, echo=settings.database.echo))
    assert _engine is not None
    return _engine


def get_session_factory(
    settings: Settings | None = None,
) -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        use_engine(get_engine(settings))
    assert _session_factory is not None
    return _session_factory


async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        yield session


async def dispose_engine() -> None:
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
