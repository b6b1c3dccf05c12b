# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite model - redeemable signup codes."""

from datetime import datetime, timedelta

from sqlalchemy import CheckConstraint, ForeignKey, Integer, Interval, String
from sqlalchemy.orm import Mapped, mapped_column

from jfmanager_server.models.base import Base
from jfmanager_server.models.timestamp import UTCDateTime, utcnow


class Invite(Base):
    """Signup invite. Soft-deleted rows stay for the audit trail."""

    __tablename__ = "invites"
    __table_args__ = (
        CheckConstraint(
            "max_uses IS NULL OR used_count <= max_uses",
            name="invites_used_within_max",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_id: Mapped[int | None] = mapped_column(
        ForeignKey("user_profiles.id"), nullable=True, index=True
    )
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Lifetime of accounts created through this invite; None = accounts never expire
    user_expiry: Mapped[timedelta | None] = mapped_column(Interval, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def user_expiry_enabled(self) -> bool:
        return self.user_expiry is not None

    @property
    def uses_remaining(self) -> int | None:
        if self.max_uses is None:
            return None
        return max(self.max_uses - self.used_count, 0)
