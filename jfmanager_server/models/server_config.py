# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Server configuration - admin-controlled dashboard settings."""

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from jfmanager_server.models.base import Base

DEFAULT_FEATURES = {
    "enableThemeSwitcher": True,
    "enableWatchHistory": True,
    "enableActivityLog": True,
}

# Default server settings when none is stored.
DEFAULT_SERVER_SETTINGS = {
    "server_name": "Jellyfin Server",
    "logo_url": None,
    "features": DEFAULT_FEATURES,
    "invite_duration_hours": 24,
}


class ServerConfig(Base):
    """Key-value server configuration. Values are JSON."""

    __tablename__ = "server_config"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
