# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Jellyfin REST API client.

Thin async wrappers over the upstream endpoints used by the dashboard. Every
non-2xx response becomes a JellyfinError carrying the upstream message; nothing
is retried.
"""

import logging
from collections.abc import AsyncGenerator
from enum import Enum
from typing import Any

import httpx
from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.config import settings
from jfmanager_server.database import get_db
from jfmanager_server.errors import JellyfinError, NotConnected
from jfmanager_server.models import JellyfinCredentials

logger = logging.getLogger(__name__)

CLIENT_VERSION = "1.0.0"
TICKS_PER_MINUTE = 600_000_000


class JellyfinRole(str, Enum):
    """Role label derived from a Jellyfin policy."""

    ADMINISTRATOR = "Administrator"
    CONTENT_MANAGER = "ContentManager"
    USER = "User"

    @classmethod
    def from_policy(cls, policy: dict | None) -> "JellyfinRole":
        policy = policy or {}
        if policy.get("IsAdministrator"):
            return cls.ADMINISTRATOR
        if policy.get("EnableMediaPlayback") and policy.get("EnableContentDeletion"):
            return cls.CONTENT_MANAGER
        return cls.USER

    def policy_flags(self) -> dict[str, bool]:
        """Policy fields that make from_policy() return this role."""
        if self is JellyfinRole.ADMINISTRATOR:
            return {"IsAdministrator": True, "EnableMediaPlayback": True}
        if self is JellyfinRole.CONTENT_MANAGER:
            return {
                "IsAdministrator": False,
                "EnableMediaPlayback": True,
                "EnableContentDeletion": True,
            }
        return {
            "IsAdministrator": False,
            "EnableMediaPlayback": True,
            "EnableContentDeletion": False,
        }


def normalize_url(url: str) -> str:
    """Strip whitespace and trailing slashes from a server URL."""
    return url.strip().rstrip("/")


def _authorization_header(token: str | None = None) -> str:
    value = (
        f'MediaBrowser Client="{settings.jellyfin_client_name}", '
        f'Device="{settings.jellyfin_client_name}", '
        f'DeviceId="{settings.jellyfin_device_id}", '
        f'Version="{CLIENT_VERSION}"'
    )
    if token:
        value += f', Token="{token}"'
    return value


class JellyfinClient:
    """Async client bound to one Jellyfin server and access token."""

    # Used when no transport is passed; None means a real network transport
    default_transport: httpx.AsyncBaseTransport | None = None

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = normalize_url(base_url)
        headers = {
            "Accept": "application/json",
            "X-Emby-Authorization": _authorization_header(token),
        }
        if token:
            headers["X-Emby-Token"] = token
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or settings.jellyfin_timeout_seconds,
            transport=transport or self.default_transport,
        )

    async def __aenter__(self) -> "JellyfinClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Jellyfin %s %s failed: %s", method, path, e)
            raise JellyfinError(f"Could not reach Jellyfin server: {e}") from e
        if response.is_error:
            upstream = response.text.strip()[:300] or response.reason_phrase
            logger.warning(
                "Jellyfin %s %s returned %s: %s", method, path, response.status_code, upstream
            )
            raise JellyfinError(
                f"Jellyfin returned {response.status_code}: {upstream}",
                status_code=response.status_code,
            )
        return response

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._send(method, path, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise JellyfinError("Jellyfin returned an invalid JSON response") from e

    # System / auth

    async def public_info(self) -> dict:
        return await self._json("GET", "/System/Info/Public") or {}

    async def authenticate(self, username: str, password: str) -> dict:
        """Authenticate by name. Returns the body with AccessToken and User."""
        data = await self._json(
            "POST",
            "/Users/AuthenticateByName",
            json={"Username": username, "Pw": password},
        )
        if not isinstance(data, dict) or not data.get("AccessToken"):
            raise JellyfinError("Jellyfin did not return an access token", status_code=401)
        return data

    # Users

    async def list_users(self) -> list[dict]:
        return await self._json("GET", "/Users") or []

    async def get_user(self, user_id: str) -> dict:
        return await self._json("GET", f"/Users/{user_id}")

    async def create_user(self, name: str, password: str | None = None) -> dict:
        body: dict[str, Any] = {"Name": name}
        if password:
            body["Password"] = password
        return await self._json("POST", "/Users/New", json=body)

    async def rename_user(self, user_id: str, name: str) -> None:
        user = await self.get_user(user_id)
        user["Name"] = name
        await self._send("POST", f"/Users/{user_id}", json=user)

    async def set_password(self, user_id: str, password: str) -> None:
        await self._send(
            "POST",
            f"/Users/{user_id}/Password",
            json={"CurrentPw": "", "NewPw": password},
        )

    async def update_policy(self, user_id: str, **fields: Any) -> dict:
        """Merge fields into the current policy and write it back."""
        user = await self.get_user(user_id)
        policy = dict(user.get("Policy") or {})
        policy.update(fields)
        await self._send("POST", f"/Users/{user_id}/Policy", json=policy)
        return policy

    async def update_configuration(self, user_id: str, **fields: Any) -> dict:
        user = await self.get_user(user_id)
        configuration = dict(user.get("Configuration") or {})
        configuration.update(fields)
        await self._send("POST", f"/Users/{user_id}/Configuration", json=configuration)
        return configuration

    async def set_disabled(self, user_id: str, disabled: bool = True) -> dict:
        return await self.update_policy(user_id, IsDisabled=disabled)

    async def apply_role(self, user_id: str, role: JellyfinRole, **extra: Any) -> dict:
        return await self.update_policy(user_id, **role.policy_flags(), **extra)

    async def apply_profile(self, user_id: str, library_ids: list[str], layout: dict) -> None:
        """Restrict library access and copy home layout from a profile."""
        await self.update_policy(user_id, EnableAllFolders=False, EnabledFolders=library_ids)
        if layout:
            await self.update_configuration(user_id, **layout)

    async def delete_user(self, user_id: str) -> None:
        await self._send("DELETE", f"/Users/{user_id}")

    # Activity and media

    async def activity(self, user_id: str, limit: int = 10) -> dict:
        data = await self._json(
            "GET",
            "/System/ActivityLog/Entries",
            params={"userId": user_id, "limit": limit},
        ) or {}
        return {
            "Items": data.get("Items", []),
            "TotalRecordCount": data.get("TotalRecordCount", 0),
        }

    async def _user_items(self, user_id: str, **params: Any) -> list[dict]:
        params.setdefault("Recursive", "true")
        data = await self._json("GET", f"/Users/{user_id}/Items", params=params) or {}
        return data.get("Items", [])

    async def favorites(self, user_id: str, limit: int = 20) -> list[dict]:
        return await self._user_items(
            user_id,
            Filters="IsFavorite",
            IncludeItemTypes="Movie,Series,Episode,MusicAlbum",
            SortBy="SortName",
            Limit=limit,
            Fields="PrimaryImageAspectRatio,ProductionYear",
        )

    async def watch_history(self, user_id: str, limit: int = 10) -> list[dict]:
        return await self._user_items(
            user_id,
            Filters="IsPlayed",
            IncludeItemTypes="Movie,Episode",
            SortBy="DatePlayed",
            SortOrder="Descending",
            Limit=limit,
            Fields="UserData,ProductionYear",
        )

    async def watch_time_minutes(self, user_id: str) -> int:
        """Total minutes played, counting repeated plays."""
        items = await self._user_items(
            user_id,
            Filters="IsPlayed",
            IncludeItemTypes="Movie,Episode",
            Fields="UserData",
        )
        ticks = 0
        for item in items:
            plays = max((item.get("UserData") or {}).get("PlayCount") or 1, 1)
            ticks += (item.get("RunTimeTicks") or 0) * plays
        return ticks // TICKS_PER_MINUTE

    async def media_folders(self) -> list[dict]:
        data = await self._json("GET", "/Library/MediaFolders") or {}
        return [
            {
                "id": item.get("Id"),
                "name": item.get("Name"),
                "type": item.get("CollectionType") or "general",
                "path": item.get("Path"),
            }
            for item in data.get("Items", [])
        ]

    async def item_image(self, item_id: str, tag: str | None = None) -> tuple[bytes, str]:
        params = {"tag": tag} if tag else None
        response = await self._send("GET", f"/Items/{item_id}/Images/Primary", params=params)
        return response.content, response.headers.get("content-type", "image/jpeg")


async def get_credentials(db: AsyncSession) -> JellyfinCredentials | None:
    result = await db.execute(select(JellyfinCredentials).order_by(JellyfinCredentials.id).limit(1))
    return result.scalar_one_or_none()


def client_for(credentials: JellyfinCredentials) -> JellyfinClient:
    return JellyfinClient(credentials.url, credentials.token)


async def get_jellyfin(
    db: AsyncSession = Depends(get_db),
) -> AsyncGenerator[JellyfinClient, None]:
    """Dependency: client for the stored server. Raises 401 when not connected."""
    credentials = await get_credentials(db)
    if not credentials or not credentials.token:
        raise NotConnected()
    async with client_for(credentials) as client:
        yield client


async def get_optional_jellyfin(
    db: AsyncSession = Depends(get_db),
) -> AsyncGenerator[JellyfinClient | None, None]:
    """Dependency: client for the stored server, or None when not connected."""
    credentials = await get_credentials(db)
    if not credentials or not credentials.token:
        yield None
        return
    async with client_for(credentials) as client:
        yield client
