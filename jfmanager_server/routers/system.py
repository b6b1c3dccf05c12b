# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Dashboard settings and maintenance."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import ServerSettingsUpdate
from jfmanager_server.auth import get_optional_user, require_admin
from jfmanager_server.database import async_session_maker, get_db
from jfmanager_server.errors import AppError
from jfmanager_server.models import AppUser, JellyfinCredentials
from jfmanager_server.services.activity import ActivityType, log_activity
from jfmanager_server.services.expiry import run_expiry_sweep
from jfmanager_server.services.jellyfin import get_credentials, normalize_url
from jfmanager_server.services.server_settings import get_server_settings, save_server_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/system", tags=["system"])

MASKED_KEY = "***"


async def _status(db: AsyncSession, user: AppUser | None) -> dict:
    server_settings = await get_server_settings(db)
    stored = await get_credentials(db)
    api_key = stored.api_key if stored else None
    return {
        "serverName": server_settings["server_name"],
        "serverUrl": stored.url if stored else None,
        "logoUrl": server_settings["logo_url"],
        "features": server_settings["features"],
        "inviteDuration": server_settings["invite_duration_hours"],
        "connected": bool(stored and stored.token),
        # Only admins learn whether a key is stored, never the key itself
        "apiKey": MASKED_KEY if api_key and user and user.is_admin else "",
    }


@router.get("/status")
async def system_status(
    user: AppUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await _status(db, user)


@router.post("/settings")
async def update_settings(
    data: ServerSettingsUpdate,
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Update server name, logo, feature toggles, invite duration and connection details."""
    updates: dict = {}
    if data.server_name is not None:
        updates["server_name"] = data.server_name.strip() or "Jellyfin Server"
    if "logo_url" in data.model_fields_set:
        updates["logo_url"] = data.logo_url or None
    if data.invite_duration is not None:
        updates["invite_duration_hours"] = data.invite_duration
    features = data.feature_updates()
    if features:
        updates["features"] = features
    if updates:
        await save_server_settings(db, updates)

    stored = await get_credentials(db)
    new_key = data.api_key if data.api_key and data.api_key != MASKED_KEY else None
    if data.server_url:
        url = normalize_url(data.server_url)
        if not url.startswith(("http://", "https://")):
            raise AppError("URL must start with http:// or https://", status_code=400)
        if stored is None:
            if not new_key:
                raise AppError("An API key is required to connect to a new server", status_code=400)
            stored = JellyfinCredentials(url=url, api_key=new_key, admin_username=admin.username)
            db.add(stored)
        elif url != stored.url:
            # Session token belongs to the old server
            stored.url = url
            stored.access_token = None
    if stored is not None and new_key:
        stored.api_key = new_key
    await db.flush()

    changed = sorted(updates) + [k for k in ("server_url", "api_key") if getattr(data, k)]
    log_activity(
        db,
        ActivityType.SETTINGS_UPDATED,
        "Server settings updated",
        username=admin.username,
        created_by=admin.username,
        metadata={"fields": changed},
    )
    logger.info("Server settings updated by %s: %s", admin.username, ", ".join(changed) or "nothing")
    return await _status(db, admin)


@router.post("/expiry-sweep")
async def expiry_sweep(_admin: AppUser = Depends(require_admin)) -> dict:
    """Disable every expired account now instead of waiting for the periodic sweep."""
    disabled = await run_expiry_sweep(async_session_maker)
    return {"success": True, "disabled": disabled}
