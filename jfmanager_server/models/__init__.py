# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database models."""

from jfmanager_server.models.base import Base
from jfmanager_server.models.user_role import UserRole
from jfmanager_server.models.user_profile import UserProfile
from jfmanager_server.models.app_user import AppUser
from jfmanager_server.models.session import Session
from jfmanager_server.models.invite import Invite
from jfmanager_server.models.activity_log import ActivityLog
from jfmanager_server.models.server_config import ServerConfig
from jfmanager_server.models.jellyfin_credentials import JellyfinCredentials

__all__ = [
    "Base",
    "UserRole",
    "UserProfile",
    "AppUser",
    "Session",
    "Invite",
    "ActivityLog",
    "ServerConfig",
    "JellyfinCredentials",
]
