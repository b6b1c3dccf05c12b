# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pydantic schemas for API request/response."""

import re
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from jfmanager_server.models import AppUser, Invite, UserProfile, UserRole
from jfmanager_server.services.jellyfin import JellyfinRole

MINUTES_PER_MONTH = 30 * 24 * 60
USERNAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names, as the browser client uses them."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Auth / connection
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ConnectRequest(CamelModel):
    url: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str
    api_key: str | None = None

    @field_validator("url")
    @classmethod
    def url_has_scheme(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v


class ValidateUrlRequest(BaseModel):
    url: str = Field(min_length=1)


# User expiry
class ExpiryDuration(CamelModel):
    """Presentation form of a duration. A month counts as 30 days."""

    months: int = Field(default=0, ge=0)
    days: int = Field(default=0, ge=0)
    hours: int = Field(default=0, ge=0)
    minutes: int = Field(default=0, ge=0)

    def to_timedelta(self) -> timedelta:
        return timedelta(
            days=self.months * 30 + self.days, hours=self.hours, minutes=self.minutes
        )

    @classmethod
    def from_timedelta(cls, value: timedelta | None) -> "ExpiryDuration":
        if value is None:
            return cls()
        total_minutes = int(value.total_seconds() // 60)
        months, rest = divmod(total_minutes, MINUTES_PER_MONTH)
        days, rest = divmod(rest, 24 * 60)
        hours, minutes = divmod(rest, 60)
        return cls(months=months, days=days, hours=hours, minutes=minutes)


# Invites
class UserExpiryFields(CamelModel):
    """Lifetime of accounts created through an invite."""

    user_expiry_enabled: bool | None = None
    user_expiry_months: int = Field(default=0, ge=0)
    user_expiry_days: int = Field(default=0, ge=0)
    user_expiry_hours: int = Field(default=0, ge=0)
    user_expiry_minutes: int = Field(default=0, ge=0)

    def _duration(self) -> timedelta:
        return ExpiryDuration(
            months=self.user_expiry_months,
            days=self.user_expiry_days,
            hours=self.user_expiry_hours,
            minutes=self.user_expiry_minutes,
        ).to_timedelta()

    @model_validator(mode="after")
    def enabled_expiry_is_positive(self):
        if self.user_expiry_enabled and self._duration() <= timedelta(0):
            raise ValueError("User expiry duration must be positive")
        return self

    def user_expiry(self) -> timedelta | None:
        return self._duration() if self.user_expiry_enabled else None


class InviteCreate(UserExpiryFields):
    label: str | None = Field(default=None, max_length=255)
    user_label: str | None = Field(default=None, max_length=255)
    profile_id: int | None = None
    max_uses: int | None = Field(default=None, ge=1)
    # Omitted = default invite duration from settings; explicit null = never expires
    expires_at: datetime | None = None
    user_expiry_enabled: bool = False


class InviteUpdate(UserExpiryFields):
    label: str | None = Field(default=None, max_length=255)
    user_label: str | None = Field(default=None, max_length=255)
    profile_id: int | None = None
    max_uses: int | None = Field(default=None, ge=1)
    expires_at: datetime | None = None


class InviteResponse(CamelModel):
    id: int
    code: str
    label: str | None = None
    user_label: str | None = None
    profile_id: int | None = None
    profile_name: str | None = None
    max_uses: int | None = None
    used_count: int
    uses_remaining: int | None = None
    expires_at: datetime | None = None
    user_expiry_enabled: bool
    user_expiry_months: int = 0
    user_expiry_days: int = 0
    user_expiry_hours: int = 0
    user_expiry_minutes: int = 0
    created_at: datetime
    created_by: str | None = None
    is_expired: bool = False
    is_exhausted: bool = False

    @classmethod
    def from_invite(
        cls, invite: Invite, profile_name: str | None = None, now: datetime | None = None
    ) -> "InviteResponse":
        now = now or datetime.now(timezone.utc)
        duration = ExpiryDuration.from_timedelta(invite.user_expiry)
        return cls(
            id=invite.id,
            code=invite.code,
            label=invite.label,
            user_label=invite.user_label,
            profile_id=invite.profile_id,
            profile_name=profile_name,
            max_uses=invite.max_uses,
            used_count=invite.used_count,
            uses_remaining=invite.uses_remaining,
            expires_at=invite.expires_at,
            user_expiry_enabled=invite.user_expiry_enabled,
            user_expiry_months=duration.months,
            user_expiry_days=duration.days,
            user_expiry_hours=duration.hours,
            user_expiry_minutes=duration.minutes,
            created_at=invite.created_at,
            created_by=invite.created_by,
            is_expired=invite.expires_at is not None and now >= invite.expires_at,
            is_exhausted=invite.max_uses is not None and invite.used_count >= invite.max_uses,
        )


class InvitePublic(CamelModel):
    """What an invitee sees before signing up."""

    code: str
    label: str | None = None
    user_label: str | None = None
    profile_name: str | None = None
    expires_at: datetime | None = None
    max_uses: int | None = None
    used_count: int
    uses_remaining: int | None = None
    user_expiry_enabled: bool
    user_expiry_months: int = 0
    user_expiry_days: int = 0
    user_expiry_hours: int = 0
    user_expiry_minutes: int = 0
    valid: bool
    reason: str | None = None


class InviteSignup(BaseModel):
    username: str
    password: str
    email: EmailStr | None = None

    @field_validator("username")
    @classmethod
    def username_rules(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 3:
            raise ValueError("Username must be at least 3 characters")
        if len(v) > 64:
            raise ValueError("Username must be at most 64 characters")
        if not USERNAME_RE.match(v):
            raise ValueError("Username may only contain letters, numbers, dots, underscores and hyphens")
        return v

    @field_validator("password")
    @classmethod
    def password_rules(cls, v: str) -> str:
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        if not re.search(r"[A-Z]", v):
            raise ValueError("Password must contain at least one uppercase letter")
        if not re.search(r"[a-z]", v):
            raise ValueError("Password must contain at least one lowercase letter")
        if not re.search(r"[0-9]", v):
            raise ValueError("Password must contain at least one number")
        return v

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class RedemptionResponse(CamelModel):
    success: bool = True
    message: str
    user_id: str
    username: str
    expires_at: datetime | None = None


# Profiles
class UserProfileCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    source_user_id: str = Field(min_length=1)
    is_default: bool = False
    library_access: list[str] | None = None
    home_layout: dict[str, Any] | None = None


class UserProfileUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    is_default: bool | None = None
    library_access: list[str] | None = None
    home_layout: dict[str, Any] | None = None


class UserProfileResponse(CamelModel):
    id: int
    name: str
    source_user_id: str
    source_name: str
    is_default: bool
    library_access: list[str]
    home_layout: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserProfileResponse":
        return cls(
            id=profile.id,
            name=profile.name,
            source_user_id=profile.source_user_id,
            source_name=profile.source_name,
            is_default=profile.is_default,
            library_access=profile.library_ids,
            home_layout=profile.layout,
            created_at=profile.created_at,
            updated_at=profile.updated_at,
        )


# Roles
class UserRoleCreate(CamelModel):
    name: str = Field(min_length=1, max_length=64)
    description: str | None = None
    is_default: bool = False
    is_admin: bool = False
    permissions: dict[str, Any] = Field(default_factory=dict)


class UserRoleUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=64)
    description: str | None = None
    is_default: bool | None = None
    is_admin: bool | None = None
    permissions: dict[str, Any] | None = None


class UserRoleResponse(CamelModel):
    id: int
    name: str
    description: str | None = None
    is_default: bool
    is_admin: bool
    permissions: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_role(cls, role: UserRole) -> "UserRoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            is_default=role.is_default,
            is_admin=role.is_admin,
            permissions=role.permission_map,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class RoleAssign(CamelModel):
    role_id: int


# App users
class AppUserUpdate(CamelModel):
    email: EmailStr | None = None
    plex_email: str | None = None
    emby_email: str | None = None
    paypal_email: str | None = None
    discord_username: str | None = None
    discord_id: str | None = None
    notes: str | None = None
    expires_at: datetime | None = None
    disabled: bool | None = None


class AppUserResponse(CamelModel):
    id: int
    username: str
    email: str | None = None
    is_admin: bool
    role_id: int | None = None
    role_name: str | None = None
    jellyfin_user_id: str | None = None
    plex_email: str | None = None
    emby_email: str | None = None
    paypal_email: str | None = None
    discord_username: str | None = None
    discord_id: str | None = None
    notes: str | None = None
    expires_at: datetime | None = None
    disabled: bool
    status: dict[str, Any] | None = None
    created_at: datetime

    @classmethod
    def from_user(
        cls, user: AppUser, role_name: str | None = None, status: dict[str, Any] | None = None
    ) -> "AppUserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            is_admin=user.is_admin,
            role_id=user.role_id,
            role_name=role_name,
            jellyfin_user_id=user.jellyfin_user_id,
            plex_email=user.plex_email,
            emby_email=user.emby_email,
            paypal_email=user.paypal_email,
            discord_username=user.discord_username,
            discord_id=user.discord_id,
            notes=user.notes,
            expires_at=user.expires_at,
            disabled=user.disabled,
            status=status,
            created_at=user.created_at,
        )


# Jellyfin users (PascalCase, mirrors the upstream API)
class NewJellyfinUser(BaseModel):
    Name: str = Field(min_length=1, max_length=64)
    Password: str = Field(min_length=1)
    Email: EmailStr | None = None
    Role: JellyfinRole = JellyfinRole.USER
    IsDisabled: bool | None = None
    expiresAt: datetime | None = None
    roleId: int | None = None


class JellyfinUserUpdate(BaseModel):
    Name: str | None = Field(default=None, min_length=1, max_length=64)
    Password: str | None = None
    Role: JellyfinRole | None = None
    IsDisabled: bool | None = None
    expiresAt: datetime | None = None


# System
class FeatureToggles(CamelModel):
    enable_theme_switcher: bool | None = None
    enable_watch_history: bool | None = None
    enable_activity_log: bool | None = None


class ServerSettingsUpdate(CamelModel):
    server_name: str | None = None
    server_url: str | None = None
    api_key: str | None = None
    logo_url: str | None = None
    invite_duration: int | None = Field(default=None, ge=1)
    features: FeatureToggles | None = None
    # Flat toggles as sent by the settings form
    enable_theme_switcher: bool | None = None
    enable_watch_history: bool | None = None
    enable_activity_log: bool | None = None

    def feature_updates(self) -> dict[str, bool]:
        merged = self.features.model_dump(by_alias=True, exclude_none=True) if self.features else {}
        for name in ("enable_theme_switcher", "enable_watch_history", "enable_activity_log"):
            value = getattr(self, name)
            if value is not None:
                merged[to_camel(name)] = value
        return merged
