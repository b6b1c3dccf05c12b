# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Activity log API."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.auth import require_admin
from jfmanager_server.database import get_db
from jfmanager_server.models import AppUser
from jfmanager_server.services.activity import activity_to_dict, recent_activity
from jfmanager_server.services.server_settings import feature_enabled

router = APIRouter(prefix="/activity", tags=["activity"])


@router.get("")
async def list_activity(
    limit: int = Query(100, ge=1, le=500),
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[dict]:
    """Most recent activity first. Admin only."""
    if not await feature_enabled(db, "enableActivityLog"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Activity log is disabled")
    return [activity_to_dict(entry) for entry in await recent_activity(db, limit)]
