# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Jellyfin user management API. Requires an admin session."""

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import JellyfinUserUpdate, NewJellyfinUser
from jfmanager_server.auth import require_admin
from jfmanager_server.database import get_db
from jfmanager_server.models import AppUser
from jfmanager_server.services.accounts import (
    create_jellyfin_user,
    delete_jellyfin_user,
    describe_user,
    describe_users,
    update_jellyfin_user,
)
from jfmanager_server.services.jellyfin import JellyfinClient, get_jellyfin
from jfmanager_server.services.server_settings import feature_enabled

router = APIRouter(prefix="/users", tags=["users"])


async def require_watch_history(db: AsyncSession = Depends(get_db)) -> None:
    """Dependency: 403 when the watch history feature is switched off."""
    if not await feature_enabled(db, "enableWatchHistory"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Watch history is disabled")


@router.get("")
async def list_users(
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> list[dict]:
    """All Jellyfin users with their local expiry and role."""
    return await describe_users(db, jellyfin, await jellyfin.list_users())


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    data: NewJellyfinUser,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> dict:
    return await create_jellyfin_user(db, jellyfin, data, admin.username)


@router.get("/library-folders")
async def library_folders(
    _admin: AppUser = Depends(require_admin),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> list[dict]:
    """Media folders, for picking a profile's library access."""
    return await jellyfin.media_folders()


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> dict:
    return await describe_user(db, jellyfin, user_id)


@router.patch("/{user_id}")
async def update_user(
    user_id: str,
    data: JellyfinUserUpdate,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> dict:
    return await update_jellyfin_user(db, jellyfin, user_id, data, admin.username)


@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> dict:
    name = await delete_jellyfin_user(db, jellyfin, user_id, admin.username)
    return {"success": True, "message": f"User {name} deleted"}


@router.get("/{user_id}/activity")
async def user_activity(
    user_id: str,
    limit: int = Query(10, ge=1, le=100),
    _admin: AppUser = Depends(require_admin),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> dict:
    """Jellyfin's own activity entries for one user."""
    return await jellyfin.activity(user_id, limit)


@router.get("/{user_id}/favorites")
async def user_favorites(
    user_id: str,
    limit: int = Query(20, ge=1, le=100),
    _admin: AppUser = Depends(require_admin),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> list[dict]:
    return await jellyfin.favorites(user_id, limit)


@router.get("/{user_id}/watch-history", dependencies=[Depends(require_watch_history)])
async def user_watch_history(
    user_id: str,
    limit: int = Query(10, ge=1, le=100),
    _admin: AppUser = Depends(require_admin),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> list[dict]:
    return await jellyfin.watch_history(user_id, limit)


@router.get("/{user_id}/watch-time", dependencies=[Depends(require_watch_history)])
async def user_watch_time(
    user_id: str,
    _admin: AppUser = Depends(require_admin),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> dict:
    minutes = await jellyfin.watch_time_minutes(user_id)
    return {"userId": user_id, "minutes": minutes, "hours": round(minutes / 60, 1)}


@router.get("/{user_id}/item-image/{item_id}")
async def item_image(
    user_id: str,
    item_id: str,
    tag: str | None = None,
    _admin: AppUser = Depends(require_admin),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> Response:
    """Proxy an item's primary image so the browser never sees the server token."""
    content, media_type = await jellyfin.item_image(item_id, tag)
    return Response(content=content, media_type=media_type)
