# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""App user model - dashboard accounts, optionally linked to a Jellyfin user."""

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from jfmanager_server.models.base import Base
from jfmanager_server.models.timestamp import TimestampMixin, UTCDateTime


class AppUser(Base, TimestampMixin):
    """Operator or invited-user account of the management panel."""

    __tablename__ = "app_users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    role_id: Mapped[int | None] = mapped_column(ForeignKey("user_roles.id"), nullable=True)
    jellyfin_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    plex_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    emby_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paypal_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    discord_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discord_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

