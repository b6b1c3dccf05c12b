# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Local app accounts and their application roles. Admin only."""

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import AppUserResponse, AppUserUpdate, RoleAssign, UserRoleResponse
from jfmanager_server.auth import require_admin
from jfmanager_server.database import get_db
from jfmanager_server.errors import DuplicateError
from jfmanager_server.models import AppUser
from jfmanager_server.models.timestamp import as_utc
from jfmanager_server.services.accounts import get_app_user, list_app_users
from jfmanager_server.services.activity import ActivityType, log_activity
from jfmanager_server.services.catalog import assign_role, role_for_user, role_names
from jfmanager_server.services.expiry import enforce_expiry
from jfmanager_server.services.jellyfin import JellyfinClient, get_optional_jellyfin

router = APIRouter(prefix="/app-users", tags=["app-users"])


@router.get("", response_model=list[AppUserResponse])
async def list_accounts(
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient | None = Depends(get_optional_jellyfin),
) -> list[AppUserResponse]:
    roles = await role_names(db)
    out = []
    for user in await list_app_users(db):
        account = await enforce_expiry(db, jellyfin, user)
        out.append(AppUserResponse.from_user(user, roles.get(user.role_id), account.to_dict()))
    return out


@router.patch("/{user_id}", response_model=AppUserResponse)
async def update_account(
    user_id: int,
    data: AppUserUpdate,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient | None = Depends(get_optional_jellyfin),
) -> AppUserResponse:
    """Edit contact fields, expiry and disabled state."""
    user = await get_app_user(db, user_id)
    fields = data.model_fields_set
    if "email" in fields and data.email and data.email != user.email:
        taken = await db.scalar(
            select(AppUser.id).where(AppUser.email == data.email, AppUser.id != user.id)
        )
        if taken:
            raise DuplicateError("Email already registered")
    for name in (
        "email",
        "plex_email",
        "emby_email",
        "paypal_email",
        "discord_username",
        "discord_id",
        "notes",
    ):
        if name in fields:
            setattr(user, name, getattr(data, name))
    if "expires_at" in fields:
        user.expires_at = as_utc(data.expires_at)

    if data.disabled is not None and data.disabled != user.disabled:
        if jellyfin is not None and user.jellyfin_user_id:
            await jellyfin.set_disabled(user.jellyfin_user_id, data.disabled)
        user.disabled = data.disabled
        log_activity(
            db,
            ActivityType.ACCOUNT_DISABLED if data.disabled else ActivityType.ACCOUNT_ENABLED,
            f"Account {user.username} {'disabled' if data.disabled else 'enabled'}",
            username=user.username,
            user_id=user.jellyfin_user_id,
            created_by=admin.username,
        )
    await db.flush()
    log_activity(
        db,
        ActivityType.ACCOUNT_UPDATED,
        f"Account {user.username} updated",
        username=user.username,
        user_id=user.jellyfin_user_id,
        created_by=admin.username,
        metadata={"fields": sorted(fields)},
    )
    account = await enforce_expiry(db, jellyfin, user)
    role = await role_for_user(db, user)
    return AppUserResponse.from_user(user, role.name if role else None, account.to_dict())


@router.get("/{user_id}/role", response_model=UserRoleResponse | None)
async def get_account_role(
    user_id: int,
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> UserRoleResponse | None:
    """Assigned role, or the default role when none is assigned."""
    role = await role_for_user(db, await get_app_user(db, user_id))
    return UserRoleResponse.from_role(role) if role else None


@router.post("/{user_id}/role", response_model=UserRoleResponse)
async def set_account_role(
    user_id: int,
    data: RoleAssign,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> UserRoleResponse:
    user = await get_app_user(db, user_id)
    role = await assign_role(db, user, data.role_id, admin.username)
    return UserRoleResponse.from_role(role)
