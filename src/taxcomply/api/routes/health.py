from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from taxcomply.core.config import Settings, get_settings
from taxcomply.db.dependencies import get_db_session

router = APIRouter(prefix="/health", tags=["health"])
logger = structlog.get_logger(__name__)


class HealthResponse(BaseModel):
    status: Literal["ok", "error"]
    service: str
    version: str
    timestamp: datetime
    environment: str
    database: Literal["ok", "error"]
    payouts_configured: bool

    model_config = ConfigDict(extra="ignore")


@router.get("", summary="Service health check", response_model=HealthResponse)
async def health(
    settings: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_db_session),
) -> HealthResponse:
    database: Literal["ok", "error"] = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        database = "error"
        logger.error("database_health_check_failed", error=str(exc))

    return HealthResponse(
        status="ok" if database == "ok" else "error",
        service=settings.service_name,
        version=settings.project_version,
        timestamp=datetime.now(UTC),
        environment=settings.environment.value,
        database=database,
        payouts_configured=settings.monnify.is_configured,
    )
