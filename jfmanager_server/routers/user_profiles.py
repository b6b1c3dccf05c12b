# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""User profile API. Admin only."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import UserProfileCreate, UserProfileResponse, UserProfileUpdate
from jfmanager_server.auth import require_admin
from jfmanager_server.database import get_db
from jfmanager_server.errors import NotFoundError
from jfmanager_server.models import AppUser
from jfmanager_server.services import catalog
from jfmanager_server.services.jellyfin import JellyfinClient, get_jellyfin

router = APIRouter(prefix="/user-profiles", tags=["user-profiles"])


@router.get("", response_model=list[UserProfileResponse])
async def list_profiles(
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[UserProfileResponse]:
    return [UserProfileResponse.from_profile(p) for p in await catalog.list_profiles(db)]


@router.post("", response_model=UserProfileResponse, status_code=status.HTTP_201_CREATED)
async def create_profile(
    data: UserProfileCreate,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> UserProfileResponse:
    """Snapshot a Jellyfin user's library access and home layout into a profile."""
    profile = await catalog.create_profile(db, jellyfin, data, admin.username)
    return UserProfileResponse.from_profile(profile)


@router.get("/{profile_id}", response_model=UserProfileResponse)
async def get_profile(
    profile_id: int,
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> UserProfileResponse:
    profile = await catalog.get_profile(db, profile_id)
    if not profile:
        raise NotFoundError("Profile not found")
    return UserProfileResponse.from_profile(profile)


@router.patch("/{profile_id}", response_model=UserProfileResponse)
async def update_profile(
    profile_id: int,
    data: UserProfileUpdate,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> UserProfileResponse:
    profile = await catalog.update_profile(db, profile_id, data, admin.username)
    return UserProfileResponse.from_profile(profile)


@router.delete("/{profile_id}")
async def delete_profile(
    profile_id: int,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Delete a profile. 409 while a live invite still uses it."""
    await catalog.delete_profile(db, profile_id, admin.username)
    return {"success": True, "message": "Profile deleted"}
