# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""User profile model - library access and home layout template."""

import json

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from jfmanager_server.models.base import Base
from jfmanager_server.models.timestamp import TimestampMixin


class UserProfile(Base, TimestampMixin):
    """Settings copied from a source Jellyfin user, stamped onto invited users."""

    __tablename__ = "user_profiles"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # JSON list of library folder ids
    library_access: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    # JSON object of Jellyfin Configuration fields
    home_layout: Mapped[str] = mapped_column(Text, default="{}", nullable=False)

    @property
    def library_ids(self) -> list[str]:
        try:
            value = json.loads(self.library_access or "[]")
        except json.JSONDecodeError:
            return []
        return [str(v) for v in value] if isinstance(value, list) else []

    @property
    def layout(self) -> dict:
        try:
            value = json.loads(self.home_layout or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}
