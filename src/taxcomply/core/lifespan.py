from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from starlette.types import Lifespan

from taxcomply.core.config import Settings
from taxcomply.db.session import dispose_engine, get_engine
from taxcomply.payments.dependencies import close_payout_gateway


def create_lifespan(settings: Settings) -> Lifespan[FastAPI]:
    logger = structlog.get_logger(__name__).bind(environment=settings.environment)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("application_startup")
        # Create the pool up front so the first request does not pay for it.
        get_engine(settings)

        try:
            yield
        finally:
            await close_payout_gateway()
            await dispose_engine()
            logger.info("application_shutdown")

    return lifespan
