# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Server settings (name, logo, feature toggles, invite duration) from DB."""

import json

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.models.server_config import DEFAULT_FEATURES, DEFAULT_SERVER_SETTINGS, ServerConfig

SERVER_SETTINGS_KEY = "server_settings"


async def get_server_settings(db: AsyncSession) -> dict:
    """Return server_settings from DB or defaults."""
    result = await db.execute(
        select(ServerConfig).where(ServerConfig.key == SERVER_SETTINGS_KEY)
    )
    row = result.scalar_one_or_none()
    if row:
        try:
            out = json.loads(row.value)
            features = {**DEFAULT_FEATURES, **(out.get("features") or {})}
            return {**DEFAULT_SERVER_SETTINGS, **out, "features": features}
        except json.JSONDecodeError:
            pass
    return {**DEFAULT_SERVER_SETTINGS, "features": dict(DEFAULT_FEATURES)}


async def save_server_settings(db: AsyncSession, updates: dict) -> dict:
    """Merge updates into the stored settings and return the result."""
    current = await get_server_settings(db)
    merged = {**current, **updates}
    if "features" in updates:
        merged["features"] = {**current["features"], **(updates["features"] or {})}
    value_str = json.dumps(merged)
    result = await db.execute(
        select(ServerConfig).where(ServerConfig.key == SERVER_SETTINGS_KEY)
    )
    row = result.scalar_one_or_none()
    if row:
        row.value = value_str
    else:
        db.add(ServerConfig(key=SERVER_SETTINGS_KEY, value=value_str))
    await db.flush()
    return merged


async def feature_enabled(db: AsyncSession, feature: str) -> bool:
    server_settings = await get_server_settings(db)
    return bool(server_settings["features"].get(feature, True))
