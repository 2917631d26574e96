from __future__ import annotations

import uuid

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from taxcomply.core.constants import USER_ID_HEADER
from taxcomply.db.dependencies import get_db_session
from taxcomply.users.models import User


async def get_current_user_id(
    current_user_id: str | None = Header(
        default=None,
        alias=USER_ID_HEADER,
        convert_underscores=False,
        description="Identifier of the user authenticated upstream",
    ),
) -> uuid.UUID:
    if not current_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    try:
        return uuid.UUID(current_user_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authenticated user identifier",
        ) from exc


async def get_current_user(
    session: AsyncSession = Depends(get_db_session),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authenticated user not found",
        )
    return user
