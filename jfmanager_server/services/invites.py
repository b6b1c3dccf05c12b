# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite management and redemption.

Redemption reserves a use slot with a single conditional UPDATE before any
upstream call, so concurrent redemptions of the same code can never exceed
max_uses. The slot is handed back only when Jellyfin definitively refused to
create the account.
"""

import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import (
    ExpiryDuration,
    InviteCreate,
    InvitePublic,
    InviteSignup,
    InviteUpdate,
)
from jfmanager_server.auth import hash_password
from jfmanager_server.errors import (
    AppError,
    DuplicateError,
    InviteExhausted,
    InviteExpired,
    InviteNotFound,
    JellyfinError,
    RedemptionIncomplete,
    SlotReleaseFailed,
)
from jfmanager_server.models import ActivityLog, AppUser, Invite, UserProfile
from jfmanager_server.models.timestamp import as_utc, utcnow
from jfmanager_server.services.activity import ActivityType, log_activity
from jfmanager_server.services.catalog import get_default_profile, get_profile
from jfmanager_server.services.jellyfin import JellyfinClient, JellyfinRole
from jfmanager_server.services.server_settings import get_server_settings

logger = logging.getLogger(__name__)

_ADJECTIVES = ["Happy", "Brave", "Calm", "Eager", "Gentle", "Jolly", "Kind", "Lively", "Merry", "Neat"]
_NOUNS = ["Tiger", "Eagle", "Dolphin", "Panda", "Wolf", "Bear", "Lion", "Falcon", "Hawk", "Fox"]


def generate_invite_code() -> str:
    return secrets.token_hex(16)


def generate_invite_label() -> str:
    return f"{secrets.choice(_ADJECTIVES)} {secrets.choice(_NOUNS)}"


def unredeemable_reason(invite: Invite | None, now: datetime) -> AppError | None:
    """The error a redemption would fail with right now, checked in order, or None."""
    if invite is None or invite.deleted_at is not None:
        return InviteNotFound()
    if invite.max_uses is not None and invite.used_count >= invite.max_uses:
        return InviteExhausted()
    if invite.expires_at is not None and now >= invite.expires_at:
        return InviteExpired()
    return None


async def get_invite_by_code(db: AsyncSession, code: str) -> Invite | None:
    result = await db.execute(
        select(Invite).where(Invite.code == code).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_invite(db: AsyncSession, invite_id: int) -> Invite:
    result = await db.execute(
        select(Invite).where(Invite.id == invite_id, Invite.deleted_at.is_(None))
    )
    invite = result.scalar_one_or_none()
    if not invite:
        raise InviteNotFound()
    return invite


async def list_invites(db: AsyncSession) -> list[Invite]:
    result = await db.execute(
        select(Invite)
        .where(Invite.deleted_at.is_(None))
        .order_by(Invite.created_at.desc(), Invite.id.desc())
    )
    return list(result.scalars().all())


async def profile_names(db: AsyncSession, invites: list[Invite]) -> dict[int, str]:
    ids = {inv.profile_id for inv in invites if inv.profile_id is not None}
    if not ids:
        return {}
    result = await db.execute(select(UserProfile.id, UserProfile.name).where(UserProfile.id.in_(ids)))
    return {row.id: row.name for row in result}


async def _require_profile(db: AsyncSession, profile_id: int | None) -> None:
    if profile_id is not None and await get_profile(db, profile_id) is None:
        raise AppError("Profile not found", status_code=400)


async def create_invite(
    db: AsyncSession,
    data: InviteCreate,
    created_by: str | None,
    now: datetime | None = None,
) -> Invite:
    """Create an invite. Without an explicit expiresAt the configured default duration applies."""
    now = now or utcnow()
    await _require_profile(db, data.profile_id)
    if "expires_at" in data.model_fields_set:
        expires_at = as_utc(data.expires_at)
        if expires_at is not None and expires_at <= now:
            raise AppError("Expiry date must be in the future", status_code=400)
    else:
        server_settings = await get_server_settings(db)
        expires_at = now + timedelta(hours=server_settings["invite_duration_hours"])

    invite = Invite(
        code=generate_invite_code(),
        label=data.label or generate_invite_label(),
        user_label=data.user_label,
        profile_id=data.profile_id,
        max_uses=data.max_uses,
        used_count=0,
        expires_at=expires_at,
        user_expiry=data.user_expiry(),
        created_by=created_by,
    )
    db.add(invite)
    await db.flush()
    log_activity(
        db,
        ActivityType.INVITE_CREATED,
        f"Invite {invite.label} created",
        invite_code=invite.code,
        created_by=created_by,
        metadata={"maxUses": invite.max_uses, "expiresAt": expires_at},
    )
    logger.info("Invite %s created by %s", invite.id, created_by)
    return invite


async def update_invite(
    db: AsyncSession, invite_id: int, data: InviteUpdate, actor: str | None
) -> Invite:
    invite = await get_invite(db, invite_id)
    fields = data.model_fields_set
    if "label" in fields:
        invite.label = data.label
    if "user_label" in fields:
        invite.user_label = data.user_label
    if "profile_id" in fields:
        await _require_profile(db, data.profile_id)
        invite.profile_id = data.profile_id
    if "max_uses" in fields:
        if data.max_uses is not None and data.max_uses < invite.used_count:
            raise AppError(
                f"Max uses cannot be lower than the {invite.used_count} use(s) already made",
                status_code=400,
            )
        invite.max_uses = data.max_uses
    if "expires_at" in fields:
        invite.expires_at = as_utc(data.expires_at)
    if data.user_expiry_enabled is not None:
        invite.user_expiry = data.user_expiry()
    await db.flush()
    log_activity(
        db,
        ActivityType.INVITE_UPDATED,
        f"Invite {invite.label or invite.code} updated",
        invite_code=invite.code,
        created_by=actor,
        metadata={"fields": sorted(fields)},
    )
    return invite


async def delete_invite(db: AsyncSession, invite_id: int, actor: str | None) -> Invite:
    """Soft delete: the row stays for the audit trail but can no longer be used."""
    invite = await get_invite(db, invite_id)
    invite.deleted_at = utcnow()
    await db.flush()
    log_activity(
        db,
        ActivityType.INVITE_DELETED,
        f"Invite {invite.label or invite.code} deleted",
        invite_code=invite.code,
        created_by=actor,
        metadata={"usedCount": invite.used_count},
    )
    return invite


async def reserve_slot(db: AsyncSession, code: str, now: datetime) -> bool:
    """Atomically consume one use if the invite is still redeemable. Commits."""
    result = await db.execute(
        update(Invite)
        .where(
            Invite.code == code,
            Invite.deleted_at.is_(None),
            or_(Invite.max_uses.is_(None), Invite.used_count < Invite.max_uses),
            or_(Invite.expires_at.is_(None), Invite.expires_at > now),
        )
        .values(used_count=Invite.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def release_slot(db: AsyncSession, code: str) -> None:
    """Give back a reserved use after Jellyfin refused the account. Commits."""
    try:
        await db.execute(
            update(Invite)
            .where(Invite.code == code, Invite.used_count > 0)
            .values(used_count=Invite.used_count - 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception(
            "Could not release use slot of invite %s; used_count overcounts by one and needs manual reconciliation",
            code,
        )
        raise SlotReleaseFailed() from e


async def _ensure_unique_account(db: AsyncSession, signup: InviteSignup) -> None:
    taken = await db.scalar(select(AppUser.id).where(AppUser.username == signup.username))
    if taken:
        raise DuplicateError("Username already taken")
    if signup.email:
        taken = await db.scalar(select(AppUser.id).where(AppUser.email == signup.email))
        if taken:
            raise DuplicateError("Email already registered")


async def _profile_for(db: AsyncSession, invite: Invite) -> UserProfile | None:
    if invite.profile_id is not None:
        return await get_profile(db, invite.profile_id)
    return await get_default_profile(db)


async def preview_invite(db: AsyncSession, code: str, now: datetime | None = None) -> InvitePublic:
    """Public view of an invite with its current redeemability."""
    now = now or utcnow()
    invite = await get_invite_by_code(db, code)
    if invite is None or invite.deleted_at is not None:
        raise InviteNotFound()
    profile = await _profile_for(db, invite)
    reason = unredeemable_reason(invite, now)
    duration = ExpiryDuration.from_timedelta(invite.user_expiry)
    return InvitePublic(
        code=invite.code,
        label=invite.label,
        user_label=invite.user_label,
        profile_name=profile.name if profile else None,
        expires_at=invite.expires_at,
        max_uses=invite.max_uses,
        used_count=invite.used_count,
        uses_remaining=invite.uses_remaining,
        user_expiry_enabled=invite.user_expiry_enabled,
        user_expiry_months=duration.months,
        user_expiry_days=duration.days,
        user_expiry_hours=duration.hours,
        user_expiry_minutes=duration.minutes,
        valid=reason is None,
        reason=reason.message if reason else None,
    )


async def _pending_jellyfin_id(db: AsyncSession, code: str, username: str) -> str | None:
    """Jellyfin id left behind by an earlier attempt with this invite and username, if still unlinked."""
    jellyfin_id = await db.scalar(
        select(ActivityLog.user_id)
        .where(
            ActivityLog.type == ActivityType.INVITE_INCOMPLETE.value,
            ActivityLog.invite_code == code,
            ActivityLog.username == username,
            ActivityLog.user_id.is_not(None),
        )
        .order_by(ActivityLog.id.desc())
        .limit(1)
    )
    if jellyfin_id is None:
        return None
    linked = await db.scalar(select(AppUser.id).where(AppUser.jellyfin_user_id == jellyfin_id))
    return None if linked else jellyfin_id


async def _claim_pending_account(
    jellyfin: JellyfinClient, signup: InviteSignup, jellyfin_id: str
) -> None:
    """Only whoever chose the password of the earlier attempt may finish it."""
    try:
        auth = await jellyfin.authenticate(signup.username, signup.password)
    except JellyfinError as e:
        if e.definitive:
            raise DuplicateError("Username already taken") from e
        raise
    if (auth.get("User") or {}).get("Id") != jellyfin_id:
        raise DuplicateError("Username already taken")


async def _record_incomplete(
    db: AsyncSession, code: str, label: str, username: str, jellyfin_id: str | None
) -> None:
    """Leave a marker so the invitee's retry resumes setup instead of creating a second account."""
    try:
        log_activity(
            db,
            ActivityType.INVITE_INCOMPLETE,
            f"Invite {label}: setup of {username} did not complete",
            username=username,
            user_id=jellyfin_id,
            invite_code=code,
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Invite %s: could not record unfinished setup of %s (%s); a retry will not resume it",
            code,
            username,
            jellyfin_id,
        )


async def _finish_redemption(
    db: AsyncSession,
    jellyfin: JellyfinClient,
    invite: Invite,
    signup: InviteSignup,
    jellyfin_id: str,
    now: datetime,
    resumed: bool = False,
) -> AppUser:
    """Role, profile and local account for a Jellyfin user created through an invite."""
    # Rollback expires the invite, so keep what the failure path needs
    code, label = invite.code, invite.label or invite.code
    try:
        await jellyfin.apply_role(jellyfin_id, JellyfinRole.USER)
        profile = await _profile_for(db, invite)
        if profile:
            await jellyfin.apply_profile(jellyfin_id, profile.library_ids, profile.layout)
        expires_at = now + invite.user_expiry if invite.user_expiry else None
        user = AppUser(
            username=signup.username,
            email=signup.email,
            password_hash=hash_password(signup.password),
            is_admin=False,
            jellyfin_user_id=jellyfin_id,
            notes=invite.user_label,
            expires_at=expires_at,
            disabled=False,
        )
        db.add(user)
        log_activity(
            db,
            ActivityType.INVITE_USED,
            f"Invite {invite.label or invite.code} used by {signup.username}",
            username=signup.username,
            user_id=jellyfin_id,
            invite_code=invite.code,
            metadata={
                "usedCount": invite.used_count,
                "maxUses": invite.max_uses,
                "resumed": resumed,
            },
        )
        log_activity(
            db,
            ActivityType.ACCOUNT_CREATED,
            f"Account {signup.username} created via invite",
            username=signup.username,
            user_id=jellyfin_id,
            invite_code=invite.code,
            metadata={
                "expiresAt": expires_at,
                "profileId": profile.id if profile else None,
            },
        )
        await db.commit()
    except (JellyfinError, SQLAlchemyError) as e:
        await db.rollback()
        logger.error(
            "Invite %s: Jellyfin user %s (%s) exists but local setup failed; use slot kept: %s",
            code,
            signup.username,
            jellyfin_id,
            e,
        )
        await _record_incomplete(db, code, label, signup.username, jellyfin_id)
        raise RedemptionIncomplete() from e
    return user


async def redeem_invite(
    db: AsyncSession,
    jellyfin: JellyfinClient,
    code: str,
    signup: InviteSignup,
    now: datetime | None = None,
) -> AppUser:
    """Create a Jellyfin account through an invite and record it locally.

    A retry after RedemptionIncomplete finishes the account created by the
    earlier attempt, under the use slot that attempt already consumed.
    """
    now = now or utcnow()
    invite = await get_invite_by_code(db, code)
    pending_id = None
    if invite is not None and invite.deleted_at is None:
        pending_id = await _pending_jellyfin_id(db, code, signup.username)
    if pending_id is None:
        error = unredeemable_reason(invite, now)
        if error:
            raise error
    await _ensure_unique_account(db, signup)

    if pending_id is not None:
        await _claim_pending_account(jellyfin, signup, pending_id)
        user = await _finish_redemption(db, jellyfin, invite, signup, pending_id, now, resumed=True)
        logger.info("Invite %s: resumed setup of %s", code, signup.username)
        return user

    if not await reserve_slot(db, code, now):
        # Lost a race or the invite changed since the check above
        raise unredeemable_reason(await get_invite_by_code(db, code), now) or InviteExhausted()
    invite = await get_invite_by_code(db, code)

    try:
        created = await jellyfin.create_user(signup.username, signup.password)
    except JellyfinError as e:
        if e.definitive:
            await release_slot(db, code)
        else:
            logger.error(
                "Invite %s: Jellyfin user creation for %s had no definite outcome; keeping the used slot: %s",
                code,
                signup.username,
                e.message,
            )
        raise

    user = await _finish_redemption(db, jellyfin, invite, signup, created.get("Id"), now)
    logger.info("Invite %s redeemed by %s", code, signup.username)
    return user
