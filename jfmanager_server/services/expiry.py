# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Account expiry: status classification and enforcement.

Enforcement happens lazily whenever an account is read, and periodically via
the sweep started in the app lifespan. Both paths claim the account with a
conditional update so Jellyfin receives exactly one disable call per expiry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from jfmanager_server.errors import JellyfinError
from jfmanager_server.models import AppUser
from jfmanager_server.models.timestamp import utcnow
from jfmanager_server.services.activity import ActivityType, log_activity
from jfmanager_server.services.jellyfin import JellyfinClient, client_for, get_credentials

logger = logging.getLogger(__name__)


class AccountState(str, Enum):
    PERMANENT = "permanent"
    DISABLED = "disabled"
    EXPIRED = "expired"
    ACTIVE = "active"


@dataclass(frozen=True)
class AccountStatus:
    state: AccountState
    remaining: timedelta | None = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "remainingSeconds": int(self.remaining.total_seconds()) if self.remaining is not None else None,
        }


def compute_status(expires_at: datetime | None, disabled: bool, now: datetime) -> AccountStatus:
    """Classify an account. Disabled wins; no expiry date means permanent."""
    if disabled:
        return AccountStatus(AccountState.DISABLED)
    if expires_at is None:
        return AccountStatus(AccountState.PERMANENT)
    if now >= expires_at:
        return AccountStatus(AccountState.EXPIRED)
    return AccountStatus(AccountState.ACTIVE, expires_at - now)


async def _set_disabled_flag(db: AsyncSession, user: AppUser, disabled: bool) -> bool:
    """Flip the flag only if it currently has the opposite value. Returns True when this call flipped it."""
    result = await db.execute(
        update(AppUser)
        .where(AppUser.id == user.id, AppUser.disabled == (not disabled))
        .values(disabled=disabled, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    set_committed_value(user, "disabled", disabled)
    return result.rowcount == 1


async def enforce_expiry(
    db: AsyncSession,
    jellyfin: JellyfinClient | None,
    user: AppUser,
    now: datetime | None = None,
) -> AccountStatus:
    """Return the account's status, disabling it first if it has just expired."""
    now = now or utcnow()
    status = compute_status(user.expires_at, user.disabled, now)
    if status.state is not AccountState.EXPIRED or jellyfin is None:
        return status

    if not await _set_disabled_flag(db, user, True):
        # Another request or the sweep got there first
        return status

    if user.jellyfin_user_id:
        try:
            await jellyfin.set_disabled(user.jellyfin_user_id, True)
        except JellyfinError as e:
            logger.warning(
                "Could not disable expired Jellyfin user %s, will retry on next access: %s",
                user.username,
                e.message,
            )
            await _set_disabled_flag(db, user, False)
            return status

    log_activity(
        db,
        ActivityType.ACCOUNT_EXPIRED,
        f"Account {user.username} expired and was disabled",
        username=user.username,
        user_id=user.jellyfin_user_id,
        created_by="system",
        metadata={"expiresAt": user.expires_at.isoformat() if user.expires_at else None},
    )
    await db.commit()
    logger.info("Disabled expired account %s (expired %s)", user.username, user.expires_at)
    return status


async def sweep_expired_accounts(
    db: AsyncSession,
    jellyfin: JellyfinClient,
    now: datetime | None = None,
) -> int:
    """Disable every expired, still-enabled account. Returns how many were disabled."""
    now = now or utcnow()
    result = await db.execute(
        select(AppUser).where(
            AppUser.disabled == False,  # noqa: E712
            AppUser.expires_at.is_not(None),
            AppUser.expires_at <= now,
        )
    )
    disabled = 0
    for user in result.scalars().all():
        await enforce_expiry(db, jellyfin, user, now)
        if user.disabled:
            disabled += 1
    return disabled


async def run_expiry_sweep(session_maker) -> int:
    """One sweep pass with its own session and client. Skipped when not connected."""
    async with session_maker() as db:
        credentials = await get_credentials(db)
        if not credentials or not credentials.token:
            logger.debug("Expiry sweep skipped: not connected to Jellyfin")
            return 0
        async with client_for(credentials) as jellyfin:
            count = await sweep_expired_accounts(db, jellyfin)
    if count:
        logger.info("Expiry sweep disabled %d account(s)", count)
    return count
