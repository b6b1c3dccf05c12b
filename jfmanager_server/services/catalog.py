# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""User profiles and application roles.

At most one row of each table is the default: setting the flag clears it on
every other row in the same transaction. Rows still referenced elsewhere
cannot be deleted.
"""

import json
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import (
    UserProfileCreate,
    UserProfileUpdate,
    UserRoleCreate,
    UserRoleUpdate,
)
from jfmanager_server.errors import DuplicateError, InUseConflict, NotFoundError
from jfmanager_server.models import AppUser, Invite, UserProfile, UserRole
from jfmanager_server.services.activity import ActivityType, log_activity
from jfmanager_server.services.jellyfin import JellyfinClient

logger = logging.getLogger(__name__)

# Configuration fields copied from the source user into a profile's home layout
LAYOUT_FIELDS = ("OrderedViews", "LatestItemsExcludes", "MyMediaExcludes")


async def _clear_default(db: AsyncSession, model, keep_id: int | None) -> None:
    stmt = update(model).where(model.is_default == True)  # noqa: E712
    if keep_id is not None:
        stmt = stmt.where(model.id != keep_id)
    await db.execute(stmt.values(is_default=False).execution_options(synchronize_session="fetch"))


# Profiles


async def list_profiles(db: AsyncSession) -> list[UserProfile]:
    result = await db.execute(select(UserProfile).order_by(UserProfile.name))
    return list(result.scalars().all())


async def get_profile(db: AsyncSession, profile_id: int) -> UserProfile | None:
    result = await db.execute(select(UserProfile).where(UserProfile.id == profile_id))
    return result.scalar_one_or_none()


async def get_default_profile(db: AsyncSession) -> UserProfile | None:
    result = await db.execute(
        select(UserProfile).where(UserProfile.is_default == True).limit(1)  # noqa: E712
    )
    return result.scalar_one_or_none()


async def _require_profile(db: AsyncSession, profile_id: int) -> UserProfile:
    profile = await get_profile(db, profile_id)
    if not profile:
        raise NotFoundError("Profile not found")
    return profile


async def snapshot_user_settings(jellyfin: JellyfinClient, user_id: str) -> tuple[str, list[str], dict]:
    """Name, library folder ids and home layout of a Jellyfin user."""
    source = await jellyfin.get_user(user_id)
    policy = source.get("Policy") or {}
    if policy.get("EnableAllFolders"):
        libraries = [folder["id"] for folder in await jellyfin.media_folders() if folder.get("id")]
    else:
        libraries = [str(f) for f in policy.get("EnabledFolders") or []]
    configuration = source.get("Configuration") or {}
    layout = {key: configuration[key] for key in LAYOUT_FIELDS if key in configuration}
    return source.get("Name") or user_id, libraries, layout


async def create_profile(
    db: AsyncSession,
    jellyfin: JellyfinClient,
    data: UserProfileCreate,
    actor: str | None,
) -> UserProfile:
    source_name, libraries, layout = await snapshot_user_settings(jellyfin, data.source_user_id)
    if data.library_access is not None:
        libraries = data.library_access
    if data.home_layout is not None:
        layout = data.home_layout

    if data.is_default:
        await _clear_default(db, UserProfile, None)
    profile = UserProfile(
        name=data.name,
        source_user_id=data.source_user_id,
        source_name=source_name,
        is_default=data.is_default,
        library_access=json.dumps(libraries),
        home_layout=json.dumps(layout),
    )
    db.add(profile)
    await db.flush()
    log_activity(
        db,
        ActivityType.PROFILE_CREATED,
        f"Profile {profile.name} created from {source_name}",
        user_id=data.source_user_id,
        created_by=actor,
        metadata={"profileId": profile.id, "libraries": len(libraries)},
    )
    return profile


async def update_profile(
    db: AsyncSession, profile_id: int, data: UserProfileUpdate, actor: str | None
) -> UserProfile:
    profile = await _require_profile(db, profile_id)
    if data.name is not None:
        profile.name = data.name
    if data.library_access is not None:
        profile.library_access = json.dumps(data.library_access)
    if data.home_layout is not None:
        profile.home_layout = json.dumps(data.home_layout)
    if data.is_default is not None:
        if data.is_default:
            await _clear_default(db, UserProfile, profile.id)
        profile.is_default = data.is_default
    await db.flush()
    log_activity(
        db,
        ActivityType.PROFILE_UPDATED,
        f"Profile {profile.name} updated",
        created_by=actor,
        metadata={"profileId": profile.id},
    )
    return profile


async def delete_profile(db: AsyncSession, profile_id: int, actor: str | None) -> None:
    profile = await _require_profile(db, profile_id)
    in_use = await db.scalar(
        select(func.count(Invite.id)).where(
            Invite.profile_id == profile.id, Invite.deleted_at.is_(None)
        )
    )
    if in_use:
        raise InUseConflict(f"Profile {profile.name} is used by {in_use} invite(s)")
    await db.delete(profile)
    log_activity(
        db,
        ActivityType.PROFILE_DELETED,
        f"Profile {profile.name} deleted",
        created_by=actor,
        metadata={"profileId": profile_id},
    )
    await db.flush()


# Roles


async def list_roles(db: AsyncSession) -> list[UserRole]:
    result = await db.execute(select(UserRole).order_by(UserRole.name))
    return list(result.scalars().all())


async def get_role(db: AsyncSession, role_id: int) -> UserRole | None:
    result = await db.execute(select(UserRole).where(UserRole.id == role_id))
    return result.scalar_one_or_none()


async def get_default_role(db: AsyncSession) -> UserRole | None:
    result = await db.execute(
        select(UserRole).where(UserRole.is_default == True).limit(1)  # noqa: E712
    )
    return result.scalar_one_or_none()


async def _require_role(db: AsyncSession, role_id: int) -> UserRole:
    role = await get_role(db, role_id)
    if not role:
        raise NotFoundError("Role not found")
    return role


async def _ensure_role_name_free(db: AsyncSession, name: str, role_id: int | None = None) -> None:
    stmt = select(UserRole.id).where(func.lower(UserRole.name) == name.lower())
    if role_id is not None:
        stmt = stmt.where(UserRole.id != role_id)
    if await db.scalar(stmt):
        raise DuplicateError(f"A role named {name} already exists")


async def create_role(db: AsyncSession, data: UserRoleCreate, actor: str | None) -> UserRole:
    await _ensure_role_name_free(db, data.name)
    if data.is_default:
        await _clear_default(db, UserRole, None)
    role = UserRole(
        name=data.name,
        description=data.description,
        is_default=data.is_default,
        is_admin=data.is_admin,
        permissions=json.dumps(data.permissions),
    )
    db.add(role)
    await db.flush()
    log_activity(
        db,
        ActivityType.ROLE_CREATED,
        f"Role {role.name} created",
        created_by=actor,
        metadata={"roleId": role.id, "isAdmin": role.is_admin},
    )
    return role


async def update_role(
    db: AsyncSession, role_id: int, data: UserRoleUpdate, actor: str | None
) -> UserRole:
    role = await _require_role(db, role_id)
    if data.name is not None and data.name != role.name:
        await _ensure_role_name_free(db, data.name, role.id)
        role.name = data.name
    if "description" in data.model_fields_set:
        role.description = data.description
    if data.is_admin is not None:
        role.is_admin = data.is_admin
    if data.permissions is not None:
        role.permissions = json.dumps(data.permissions)
    if data.is_default is not None:
        if data.is_default:
            await _clear_default(db, UserRole, role.id)
        role.is_default = data.is_default
    await db.flush()
    log_activity(
        db,
        ActivityType.ROLE_UPDATED,
        f"Role {role.name} updated",
        created_by=actor,
        metadata={"roleId": role.id},
    )
    return role


async def delete_role(db: AsyncSession, role_id: int, actor: str | None) -> None:
    role = await _require_role(db, role_id)
    in_use = await db.scalar(select(func.count(AppUser.id)).where(AppUser.role_id == role.id))
    if in_use:
        raise InUseConflict(f"Role {role.name} is assigned to {in_use} user(s)")
    await db.delete(role)
    log_activity(
        db,
        ActivityType.ROLE_DELETED,
        f"Role {role.name} deleted",
        created_by=actor,
        metadata={"roleId": role_id},
    )
    await db.flush()


async def role_names(db: AsyncSession) -> dict[int, str]:
    result = await db.execute(select(UserRole.id, UserRole.name))
    return {row.id: row.name for row in result}


async def role_for_user(db: AsyncSession, user: AppUser) -> UserRole | None:
    """The user's assigned role, or the default role when none is assigned."""
    if user.role_id is not None:
        role = await get_role(db, user.role_id)
        if role:
            return role
    return await get_default_role(db)


async def assign_role(db: AsyncSession, user: AppUser, role_id: int, actor: str | None) -> UserRole:
    role = await _require_role(db, role_id)
    previous = user.role_id
    user.role_id = role.id
    await db.flush()
    log_activity(
        db,
        ActivityType.ROLE_ASSIGNED,
        f"Role {role.name} assigned to {user.username}",
        username=user.username,
        user_id=user.jellyfin_user_id,
        created_by=actor,
        metadata={"roleId": role.id, "previousRoleId": previous},
    )
    logger.info("Role %s assigned to %s by %s", role.name, user.username, actor)
    return role
