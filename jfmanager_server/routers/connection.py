# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Connecting the dashboard to a Jellyfin server."""

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import ConnectRequest, ValidateUrlRequest
from jfmanager_server.auth import (
    TOKEN_COOKIE_NAME,
    bearer_scheme,
    close_session,
    get_optional_user,
    hash_password,
    open_session,
    require_admin,
    token_from_request,
)
from jfmanager_server.database import get_db
from jfmanager_server.errors import AppError, JellyfinError
from jfmanager_server.models import AppUser, JellyfinCredentials
from jfmanager_server.rate_limit import rate_limit_dep
from jfmanager_server.routers.auth import set_session_cookie
from jfmanager_server.services.activity import ActivityType, log_activity
from jfmanager_server.services.jellyfin import JellyfinClient, get_credentials, normalize_url
from jfmanager_server.services.server_settings import get_server_settings, save_server_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connection"])


@router.post("/validate-url")
async def validate_url(data: ValidateUrlRequest) -> dict:
    """Probe a URL for a Jellyfin server."""
    url = normalize_url(data.url)
    if not url.startswith(("http://", "https://")):
        raise AppError("URL must start with http:// or https://", status_code=400)
    try:
        async with JellyfinClient(url) as client:
            info = await client.public_info()
    except JellyfinError as e:
        raise AppError(f"No Jellyfin server found at {url}: {e.message}", status_code=400) from e
    return {
        "valid": True,
        "serverName": info.get("ServerName"),
        "version": info.get("Version"),
    }


@router.post("/connect", dependencies=[Depends(rate_limit_dep)])
async def connect(
    data: ConnectRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Authenticate a Jellyfin administrator, store the connection and log them in."""
    url = normalize_url(data.url)
    async with JellyfinClient(url) as client:
        auth = await client.authenticate(data.username, data.password)
        info = await client.public_info()
    jellyfin_user = auth.get("User") or {}
    if not (jellyfin_user.get("Policy") or {}).get("IsAdministrator"):
        raise AppError("This Jellyfin account is not an administrator", status_code=403)

    await db.execute(delete(JellyfinCredentials))
    db.add(
        JellyfinCredentials(
            url=url,
            api_key=data.api_key or None,
            admin_username=data.username,
            access_token=auth["AccessToken"],
            user_id=jellyfin_user.get("Id"),
        )
    )

    result = await db.execute(select(AppUser).where(AppUser.username == data.username))
    user = result.scalar_one_or_none()
    if user is None:
        user = AppUser(username=data.username, password_hash=hash_password(data.password))
        db.add(user)
    user.password_hash = hash_password(data.password)
    user.is_admin = True
    user.disabled = False
    user.jellyfin_user_id = jellyfin_user.get("Id")
    await db.flush()

    server_name = info.get("ServerName")
    if server_name:
        current = await get_server_settings(db)
        if "server_name" not in current or current["server_name"] == "Jellyfin Server":
            await save_server_settings(db, {"server_name": server_name})
    log_activity(
        db,
        ActivityType.CONNECTED,
        f"Connected to {server_name or url}",
        username=data.username,
        user_id=jellyfin_user.get("Id"),
        created_by=data.username,
        metadata={"url": url, "version": info.get("Version")},
    )
    token = await open_session(db, user)
    set_session_cookie(response, token)
    logger.info("Connected to Jellyfin server %s as %s", url, data.username)
    return {
        "success": True,
        "access_token": token,
        "token_type": "bearer",
        "serverName": server_name,
        "user": {"id": user.id, "username": user.username, "isAdmin": True},
    }


@router.post("/disconnect")
async def disconnect(
    request: Request,
    response: Response,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    admin: AppUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Forget the stored server and end the current session."""
    stored = await get_credentials(db)
    await db.execute(delete(JellyfinCredentials))
    await close_session(db, token_from_request(request, credentials))
    log_activity(
        db,
        ActivityType.DISCONNECTED,
        f"Disconnected from {stored.url if stored else 'Jellyfin'}",
        username=admin.username,
        created_by=admin.username,
    )
    response.delete_cookie(TOKEN_COOKIE_NAME)
    logger.info("Disconnected from Jellyfin by %s", admin.username)
    return {"success": True, "message": "Disconnected"}


@router.get("/connection-status")
async def connection_status(
    user: AppUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    stored = await get_credentials(db)
    server_settings = await get_server_settings(db)
    return {
        "connected": bool(stored and stored.token),
        "configured": stored is not None,
        "authenticated": user is not None,
        "isAdmin": bool(user and user.is_admin),
        "serverUrl": stored.url if stored else None,
        "serverName": server_settings["server_name"],
    }
