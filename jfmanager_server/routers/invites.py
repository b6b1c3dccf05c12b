# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite API. Management is admin only; preview and redemption are public."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import (
    InviteCreate,
    InvitePublic,
    InviteResponse,
    InviteSignup,
    InviteUpdate,
    RedemptionResponse,
)
from jfmanager_server.auth import require_admin
from jfmanager_server.database import get_db
from jfmanager_server.models import AppUser
from jfmanager_server.rate_limit import rate_limit_dep
from jfmanager_server.services import invites as invite_service
from jfmanager_server.services.jellyfin import JellyfinClient, get_jellyfin

router = APIRouter(prefix="/invites", tags=["invites"])


@router.get("", response_model=list[InviteResponse])
async def list_invites(
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[InviteResponse]:
    """Live invites, newest first."""
    invites = await invite_service.list_invites(db)
    names = await invite_service.profile_names(db, invites)
    return [InviteResponse.from_invite(inv, names.get(inv.profile_id)) for inv in invites]


@router.post("", response_model=InviteResponse, status_code=status.HTTP_201_CREATED)
async def create_invite(
    data: InviteCreate,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> InviteResponse:
    invite = await invite_service.create_invite(db, data, admin.username)
    names = await invite_service.profile_names(db, [invite])
    return InviteResponse.from_invite(invite, names.get(invite.profile_id))


@router.get("/by-code/{code}", response_model=InvitePublic)
async def preview_invite(code: str, db: AsyncSession = Depends(get_db)) -> InvitePublic:
    """What the signup page shows for a code, including whether it can still be used."""
    return await invite_service.preview_invite(db, code)


@router.post(
    "/use/{code}",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_dep)],
)
async def use_invite(
    code: str,
    data: InviteSignup,
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient = Depends(get_jellyfin),
) -> RedemptionResponse:
    """Redeem an invite: creates the Jellyfin account and the local login."""
    user = await invite_service.redeem_invite(db, jellyfin, code, data)
    return RedemptionResponse(
        message=f"Account {user.username} created",
        user_id=user.jellyfin_user_id,
        username=user.username,
        expires_at=user.expires_at,
    )


@router.get("/{invite_id}", response_model=InviteResponse)
async def get_invite(
    invite_id: int,
    _admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> InviteResponse:
    invite = await invite_service.get_invite(db, invite_id)
    names = await invite_service.profile_names(db, [invite])
    return InviteResponse.from_invite(invite, names.get(invite.profile_id))


@router.patch("/{invite_id}", response_model=InviteResponse)
async def update_invite(
    invite_id: int,
    data: InviteUpdate,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> InviteResponse:
    invite = await invite_service.update_invite(db, invite_id, data, admin.username)
    names = await invite_service.profile_names(db, [invite])
    return InviteResponse.from_invite(invite, names.get(invite.profile_id))


@router.delete("/{invite_id}")
async def delete_invite(
    invite_id: int,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    invite = await invite_service.delete_invite(db, invite_id, admin.username)
    return {"success": True, "message": f"Invite {invite.label or invite.code} deleted"}
