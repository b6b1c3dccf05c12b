# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Application role model (separate from Jellyfin policy flags)."""

import json

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from jfmanager_server.models.base import Base
from jfmanager_server.models.timestamp import TimestampMixin


class UserRole(Base, TimestampMixin):
    """Named role with a permissions blob. At most one row is the default."""

    __tablename__ = "user_roles"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    permissions: Mapped[str] = mapped_column(Text, default="{}", nullable=False)

    @property
    def permission_map(self) -> dict:
        try:
            value = json.loads(self.permissions or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}
