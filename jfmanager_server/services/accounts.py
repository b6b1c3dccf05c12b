# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Jellyfin users joined with their local app accounts.

Upstream user objects are passed through in Jellyfin's own PascalCase shape
and enriched with the local fields the dashboard shows (expiry, app role).
Reading an account runs lazy expiry enforcement.
"""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import JellyfinUserUpdate, NewJellyfinUser
from jfmanager_server.auth import hash_password
from jfmanager_server.errors import DuplicateError, NotFoundError
from jfmanager_server.models import AppUser
from jfmanager_server.models.timestamp import as_utc, utcnow
from jfmanager_server.services.activity import ActivityType, log_activity
from jfmanager_server.services.catalog import get_role, role_names
from jfmanager_server.services.expiry import AccountStatus, enforce_expiry
from jfmanager_server.services.jellyfin import JellyfinClient, JellyfinRole

logger = logging.getLogger(__name__)


async def linked_accounts(db: AsyncSession, jellyfin_ids: list[str]) -> dict[str, AppUser]:
    if not jellyfin_ids:
        return {}
    result = await db.execute(select(AppUser).where(AppUser.jellyfin_user_id.in_(jellyfin_ids)))
    return {u.jellyfin_user_id: u for u in result.scalars().all()}


async def get_linked_account(db: AsyncSession, jellyfin_id: str) -> AppUser | None:
    result = await db.execute(select(AppUser).where(AppUser.jellyfin_user_id == jellyfin_id))
    return result.scalars().first()


async def get_app_user(db: AsyncSession, user_id: int) -> AppUser:
    result = await db.execute(select(AppUser).where(AppUser.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")
    return user


async def list_app_users(db: AsyncSession) -> list[AppUser]:
    result = await db.execute(select(AppUser).order_by(AppUser.username))
    return list(result.scalars().all())


def enrich_user(
    upstream: dict,
    account: AppUser | None,
    status: AccountStatus | None,
    roles: dict[int, str],
) -> dict:
    """Upstream user plus Role, roleName, expiry and app account fields."""
    policy = dict(upstream.get("Policy") or {})
    if account is not None and account.disabled:
        policy["IsDisabled"] = True
    role = JellyfinRole.from_policy(policy)
    app_role = roles.get(account.role_id) if account is not None and account.role_id else None
    return {
        **upstream,
        "Policy": policy,
        "Role": role.value,
        "roleName": app_role or role.value,
        "appUserId": account.id if account else None,
        "email": account.email if account else None,
        "expiresAt": account.expires_at.isoformat() if account and account.expires_at else None,
        "disabled": bool(policy.get("IsDisabled")),
        "status": status.to_dict() if status else None,
    }


async def describe_users(
    db: AsyncSession, jellyfin: JellyfinClient, upstream_users: list[dict], now: datetime | None = None
) -> list[dict]:
    now = now or utcnow()
    accounts = await linked_accounts(db, [u["Id"] for u in upstream_users if u.get("Id")])
    roles = await role_names(db)
    described = []
    for upstream in upstream_users:
        account = accounts.get(upstream.get("Id"))
        status = await enforce_expiry(db, jellyfin, account, now) if account else None
        described.append(enrich_user(upstream, account, status, roles))
    return described


async def describe_user(db: AsyncSession, jellyfin: JellyfinClient, user_id: str) -> dict:
    upstream = await jellyfin.get_user(user_id)
    return (await describe_users(db, jellyfin, [upstream]))[0]


async def create_jellyfin_user(
    db: AsyncSession, jellyfin: JellyfinClient, data: NewJellyfinUser, actor: str | None
) -> dict:
    """Create the upstream user with its role, and the linked local account."""
    taken = await db.scalar(select(AppUser.id).where(AppUser.username == data.Name))
    if taken:
        raise DuplicateError("Username already taken")
    if data.Email:
        taken = await db.scalar(select(AppUser.id).where(AppUser.email == data.Email))
        if taken:
            raise DuplicateError("Email already registered")
    role_id = None
    if data.roleId is not None:
        role = await get_role(db, data.roleId)
        if not role:
            raise NotFoundError("Role not found")
        role_id = role.id

    created = await jellyfin.create_user(data.Name, data.Password)
    jellyfin_id = created["Id"]
    extra = {"IsDisabled": data.IsDisabled} if data.IsDisabled is not None else {}
    await jellyfin.apply_role(jellyfin_id, data.Role, **extra)

    account = AppUser(
        username=data.Name,
        email=data.Email,
        password_hash=hash_password(data.Password),
        is_admin=data.Role is JellyfinRole.ADMINISTRATOR,
        role_id=role_id,
        jellyfin_user_id=jellyfin_id,
        expires_at=as_utc(data.expiresAt),
        disabled=bool(data.IsDisabled),
    )
    db.add(account)
    await db.flush()
    log_activity(
        db,
        ActivityType.ACCOUNT_CREATED,
        f"User {data.Name} created with role {data.Role.value}",
        username=data.Name,
        user_id=jellyfin_id,
        created_by=actor,
        metadata={"role": data.Role.value, "expiresAt": data.expiresAt},
    )
    logger.info("Jellyfin user %s created by %s", data.Name, actor)
    return await describe_user(db, jellyfin, jellyfin_id)


async def update_jellyfin_user(
    db: AsyncSession,
    jellyfin: JellyfinClient,
    user_id: str,
    data: JellyfinUserUpdate,
    actor: str | None,
) -> dict:
    upstream = await jellyfin.get_user(user_id)
    account = await get_linked_account(db, user_id)
    changes: list[str] = []

    if data.Name and data.Name != upstream.get("Name"):
        if account is not None:
            taken = await db.scalar(
                select(AppUser.id).where(AppUser.username == data.Name, AppUser.id != account.id)
            )
            if taken:
                raise DuplicateError("Username already taken")
        await jellyfin.rename_user(user_id, data.Name)
        if account is not None:
            account.username = data.Name
        changes.append("name")
    if data.Password:
        await jellyfin.set_password(user_id, data.Password)
        if account is not None:
            account.password_hash = hash_password(data.Password)
        changes.append("password")
    if data.Role is not None:
        await jellyfin.apply_role(user_id, data.Role)
        if account is not None:
            account.is_admin = data.Role is JellyfinRole.ADMINISTRATOR
        changes.append("role")
    if data.IsDisabled is not None:
        await jellyfin.set_disabled(user_id, data.IsDisabled)
        if account is not None:
            account.disabled = data.IsDisabled
        log_activity(
            db,
            ActivityType.ACCOUNT_DISABLED if data.IsDisabled else ActivityType.ACCOUNT_ENABLED,
            f"User {data.Name or upstream.get('Name')} {'disabled' if data.IsDisabled else 'enabled'}",
            username=data.Name or upstream.get("Name"),
            user_id=user_id,
            created_by=actor,
        )
    if "expiresAt" in data.model_fields_set:
        if account is None:
            raise NotFoundError("User has no app account to set an expiry on")
        account.expires_at = as_utc(data.expiresAt)
        changes.append("expiresAt")

    await db.flush()
    if changes:
        log_activity(
            db,
            ActivityType.ACCOUNT_UPDATED,
            f"User {data.Name or upstream.get('Name')} updated",
            username=data.Name or upstream.get("Name"),
            user_id=user_id,
            created_by=actor,
            metadata={"fields": changes},
        )
    return await describe_user(db, jellyfin, user_id)


async def delete_jellyfin_user(
    db: AsyncSession, jellyfin: JellyfinClient, user_id: str, actor: str | None
) -> str:
    upstream = await jellyfin.get_user(user_id)
    name = upstream.get("Name") or user_id
    await jellyfin.delete_user(user_id)
    account = await get_linked_account(db, user_id)
    if account is not None:
        await db.delete(account)
    log_activity(
        db,
        ActivityType.ACCOUNT_DELETED,
        f"User {name} deleted",
        username=name,
        user_id=user_id,
        created_by=actor,
    )
    await db.flush()
    return name
