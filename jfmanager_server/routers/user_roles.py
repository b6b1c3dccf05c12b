# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Application role API. Admin only."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import UserRoleCreate, UserRoleResponse, UserRoleUpdate
from jfmanager_server.auth import require_admin
from jfmanager_server.database import get_db
from jfmanager_server.errors import NotFoundError
from jfmanager_server.models import AppUser
from jfmanager_server.services import catalog

router = APIRouter(prefix="/user-roles", tags=["user-roles"])


@router.get("", response_model=list[UserRoleResponse])
async def list_roles(
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[UserRoleResponse]:
    return [UserRoleResponse.from_role(r) for r in await catalog.list_roles(db)]


@router.post("", response_model=UserRoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    data: UserRoleCreate,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> UserRoleResponse:
    return UserRoleResponse.from_role(await catalog.create_role(db, data, admin.username))


@router.get("/{role_id}", response_model=UserRoleResponse)
async def get_role(
    role_id: int,
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> UserRoleResponse:
    role = await catalog.get_role(db, role_id)
    if not role:
        raise NotFoundError("Role not found")
    return UserRoleResponse.from_role(role)


@router.patch("/{role_id}", response_model=UserRoleResponse)
async def update_role(
    role_id: int,
    data: UserRoleUpdate,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> UserRoleResponse:
    return UserRoleResponse.from_role(await catalog.update_role(db, role_id, data, admin.username))


@router.delete("/{role_id}")
async def delete_role(
    role_id: int,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Delete a role. 409 while any app user is assigned to it."""
    await catalog.delete_role(db, role_id, admin.username)
    return {"success": True, "message": "Role deleted"}
