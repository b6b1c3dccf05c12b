# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication: JWT, password hashing and server-side sessions."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from jfmanager_server.config import settings
from jfmanager_server.database import get_db
from jfmanager_server.models import AppUser, Session
from jfmanager_server.models.timestamp import utcnow
from jfmanager_server.services.expiry import AccountState, compute_status

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

TOKEN_COOKIE_NAME = "jfm_token"


def hash_password(password: str) -> str:
    """Hash a password for storage."""
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a password against its hash."""
    return pwd_context.verify(plain, hashed)


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.jwt_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
        return payload
    except JWTError:
        return None


async def open_session(db: AsyncSession, user: AppUser) -> str:
    """Record a session for the user and return a JWT referencing it."""
    sid = secrets.token_hex(32)
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)
    db.add(Session(user_id=user.id, token=sid, expires_at=expires_at))
    await db.flush()
    return create_access_token({"sub": str(user.id), "sid": sid})


async def close_session(db: AsyncSession, token: str | None) -> bool:
    """Delete the session behind a JWT. Returns False when there was none."""
    payload = decode_token(token) if token else None
    if not payload or not payload.get("sid"):
        return False
    result = await db.execute(delete(Session).where(Session.token == payload["sid"]))
    return result.rowcount > 0


def token_from_request(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = None,
) -> str | None:
    """Extract JWT from Bearer header or the session cookie."""
    if credentials:
        return credentials.credentials
    return request.cookies.get(TOKEN_COOKIE_NAME)


async def _user_for_token(db: AsyncSession, token: str | None) -> AppUser | None:
    payload = decode_token(token) if token else None
    if not payload or not payload.get("sub") or not payload.get("sid"):
        return None
    result = await db.execute(
        select(Session).where(
            Session.token == payload["sid"],
            Session.expires_at > datetime.now(timezone.utc),
        )
    )
    session = result.scalar_one_or_none()
    if not session or str(session.user_id) != str(payload["sub"]):
        return None
    result = await db.execute(select(AppUser).where(AppUser.id == session.user_id))
    return result.scalar_one_or_none()


def _refusal(user: AppUser) -> str | None:
    """Why a known user may not act through an existing session, if anything."""
    state = compute_status(user.expires_at, user.disabled, utcnow()).state
    if state is AccountState.DISABLED:
        return "Account is disabled"
    # Sessions opened before the expiry date end with it
    if state is AccountState.EXPIRED:
        return "Account has expired"
    return None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> AppUser:
    """Resolve the logged-in app user. Raises 401 if missing, invalid or revoked, 403 if disabled or expired."""
    token = token_from_request(request, credentials)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = await _user_for_token(db, token)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
            headers={"WWW-Authenticate": "Bearer"},
        )
    refusal = _refusal(user)
    if refusal:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=refusal)
    return user


async def get_optional_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> AppUser | None:
    """Logged-in app user, or None when the request carries no usable session."""
    user = await _user_for_token(db, token_from_request(request, credentials))
    if user is None or _refusal(user):
        return None
    return user


async def require_admin(user: AppUser = Depends(get_current_user)) -> AppUser:
    """Dependency: require an administrator."""
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin required")
    return user
