# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Jellyfin connection credentials (single row)."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from jfmanager_server.models.base import Base
from jfmanager_server.models.timestamp import TimestampMixin


class JellyfinCredentials(Base, TimestampMixin):
    """Upstream server URL and the admin token used for every Jellyfin call."""

    __tablename__ = "jellyfin_credentials"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    url: Mapped[str] = mapped_column(String(512), nullable=False)
    api_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    admin_username: Mapped[str] = mapped_column(String(255), nullable=False)
    access_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    @property
    def token(self) -> str:
        """Prefer the session token from authentication; fall back to the API key."""
        return self.access_token or self.api_key or ""
