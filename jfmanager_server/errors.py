# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Domain errors. Rendered as {"message": ...} by the handlers in main."""


class AppError(Exception):
    """Base error carrying an HTTP status and a user-readable message."""

    status_code: int = 400
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class NotConnected(AppError):
    status_code = 401
    default_message = "Not connected to Jellyfin server"


class JellyfinError(AppError):
    """Upstream Jellyfin returned non-2xx or could not be reached."""

    status_code = 502
    default_message = "Jellyfin request failed"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        # Only a 4xx proves the request had no effect upstream
        self.definitive = status_code is not None and 400 <= status_code < 500
        # Upstream 5xx and transport failures are reported as a bad gateway
        if status_code is not None and status_code >= 500:
            status_code = 502
        super().__init__(message, status_code)


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class InviteNotFound(NotFoundError):
    default_message = "Invite not found"


class InviteExhausted(AppError):
    status_code = 410
    default_message = "This invite has reached its maximum number of uses"


class InviteExpired(AppError):
    status_code = 410
    default_message = "This invite has expired"


class InUseConflict(AppError):
    status_code = 409
    default_message = "Resource is still in use"


class DuplicateError(AppError):
    status_code = 409
    default_message = "Already exists"


class RedemptionIncomplete(AppError):
    """Jellyfin account exists but local bookkeeping failed; safe to report and retry later."""

    status_code = 503
    default_message = (
        "Your account was created but setup could not be completed. "
        "Please try again shortly or contact the administrator."
    )


class SlotReleaseFailed(AppError):
    """Jellyfin refused the account and the reserved invite use could not be given back."""

    status_code = 500
    default_message = (
        "Account could not be created and the invite use could not be restored. "
        "Please contact the administrator."
    )
