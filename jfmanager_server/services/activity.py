# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Activity log writes and reads."""

import json
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.models import ActivityLog


class ActivityType(str, Enum):
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_UPDATED = "account_updated"
    ACCOUNT_DELETED = "account_deleted"
    ACCOUNT_DISABLED = "account_disabled"
    ACCOUNT_ENABLED = "account_enabled"
    ACCOUNT_EXPIRED = "account_expired"
    INVITE_CREATED = "invite_created"
    INVITE_UPDATED = "invite_updated"
    INVITE_DELETED = "invite_deleted"
    INVITE_USED = "invite_used"
    INVITE_INCOMPLETE = "invite_incomplete"
    PROFILE_CREATED = "profile_created"
    PROFILE_UPDATED = "profile_updated"
    PROFILE_DELETED = "profile_deleted"
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    ROLE_ASSIGNED = "role_assigned"
    SETTINGS_UPDATED = "settings_updated"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def log_activity(
    db: AsyncSession,
    type: ActivityType,
    message: str,
    *,
    username: str | None = None,
    user_id: str | None = None,
    invite_code: str | None = None,
    created_by: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> ActivityLog:
    """Add an activity row to the session. Committed with the caller's transaction."""
    entry = ActivityLog(
        type=type.value,
        message=message,
        username=username,
        user_id=user_id,
        invite_code=invite_code,
        created_by=created_by,
        metadata_json=json.dumps(metadata, default=str) if metadata else None,
    )
    db.add(entry)
    return entry


async def recent_activity(db: AsyncSession, limit: int = 100) -> list[ActivityLog]:
    result = await db.execute(
        select(ActivityLog).order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


def activity_to_dict(entry: ActivityLog) -> dict:
    metadata = None
    if entry.metadata_json:
        try:
            metadata = json.loads(entry.metadata_json)
        except json.JSONDecodeError:
            metadata = None
    return {
        "id": entry.id,
        "type": entry.type,
        "message": entry.message,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        "username": entry.username,
        "userId": entry.user_id,
        "inviteCode": entry.invite_code,
        "createdBy": entry.created_by,
        "metadata": metadata,
    }
