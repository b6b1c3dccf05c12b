# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication API routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.api.schemas import AppUserResponse, LoginRequest, Token
from jfmanager_server.auth import (
    TOKEN_COOKIE_NAME,
    bearer_scheme,
    close_session,
    get_current_user,
    open_session,
    token_from_request,
    verify_password,
)
from jfmanager_server.config import settings
from jfmanager_server.database import get_db
from jfmanager_server.models import AppUser
from jfmanager_server.rate_limit import rate_limit_dep
from jfmanager_server.services.catalog import role_for_user
from jfmanager_server.services.expiry import AccountState, enforce_expiry
from jfmanager_server.services.jellyfin import JellyfinClient, get_optional_jellyfin

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        TOKEN_COOKIE_NAME,
        token,
        max_age=settings.jwt_expire_minutes * 60,
        httponly=True,
        samesite="lax",
    )


@router.post("/login", response_model=Token, dependencies=[Depends(rate_limit_dep)])
async def login(
    data: LoginRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient | None = Depends(get_optional_jellyfin),
) -> Token:
    """Authenticate and return JWT. Expired accounts are disabled and refused."""
    result = await db.execute(select(AppUser).where(AppUser.username == data.username))
    user = result.scalar_one_or_none()
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )
    account = await enforce_expiry(db, jellyfin, user)
    if account.state is AccountState.EXPIRED:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account has expired")
    if account.state is AccountState.DISABLED:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is disabled")
    token = await open_session(db, user)
    set_session_cookie(response, token)
    logger.info("User %s logged in", user.username)
    return Token(access_token=token)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Revoke the current session."""
    closed = await close_session(db, token_from_request(request, credentials))
    response.delete_cookie(TOKEN_COOKIE_NAME)
    return {"success": True, "message": "Logged out" if closed else "No active session"}


@router.get("/me", response_model=AppUserResponse)
async def me(
    user: AppUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    jellyfin: JellyfinClient | None = Depends(get_optional_jellyfin),
) -> AppUserResponse:
    """Current account with its expiry status."""
    account = await enforce_expiry(db, jellyfin, user)
    role = await role_for_user(db, user)
    return AppUserResponse.from_user(user, role.name if role else None, account.to_dict())
