# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Auth and connection endpoint tests."""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from jfmanager_server.auth import hash_password
from jfmanager_server.models import AppUser
from jfmanager_server.rate_limit import LIMITS

pytestmark = pytest.mark.anyio

JELLYFIN_URL = "http://jellyfin.test"
ADMIN_NAME = "admin"
ADMIN_PASSWORD = "AdminPass1"


async def test_login_invalid_credentials(client: AsyncClient):
    """Login with wrong password returns 401."""
    r = await client.post(
        "/api/login",
        json={"username": "nonexistent", "password": "wrong"},
    )
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid username or password"


async def test_me_requires_auth(client: AsyncClient):
    r = await client.get("/api/me")
    assert r.status_code == 401
    r = await client.get("/api/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


async def test_connect_and_me(admin_client: AsyncClient, fake_jellyfin):
    r = await admin_client.get("/api/me")
    assert r.status_code == 200
    data = r.json()
    assert data["username"] == ADMIN_NAME
    assert data["isAdmin"] is True
    assert data["jellyfinUserId"] == fake_jellyfin.admin["Id"]
    assert data["status"]["state"] == "permanent"

    r = await admin_client.get("/api/connection-status")
    assert r.json() == {
        "connected": True,
        "configured": True,
        "authenticated": True,
        "isAdmin": True,
        "serverUrl": JELLYFIN_URL,
        "serverName": "Test Jellyfin",
    }


async def test_login_after_connect(admin_client: AsyncClient):
    """Connecting creates a local admin account that can log in directly."""
    r = await admin_client.post(
        "/api/login", json={"username": ADMIN_NAME, "password": ADMIN_PASSWORD}
    )
    assert r.status_code == 200
    assert r.json()["token_type"] == "bearer"


async def test_logout_revokes_token(admin_client: AsyncClient):
    token = admin_client.headers["Authorization"]
    r = await admin_client.post("/api/logout")
    assert r.status_code == 200
    assert r.json()["message"] == "Logged out"

    r = await admin_client.get("/api/me", headers={"Authorization": token})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid or expired session"


async def test_connect_requires_jellyfin_admin(client: AsyncClient, fake_jellyfin):
    fake_jellyfin.add_user("viewer", "ViewerPass1")
    r = await client.post(
        "/api/connect",
        json={"url": JELLYFIN_URL, "username": "viewer", "password": "ViewerPass1"},
    )
    assert r.status_code == 403
    assert (await client.get("/api/connection-status")).json()["configured"] is False


async def test_connect_wrong_password(client: AsyncClient):
    r = await client.post(
        "/api/connect",
        json={"url": JELLYFIN_URL, "username": ADMIN_NAME, "password": "nope"},
    )
    assert r.status_code == 401
    assert "401" in r.json()["message"]


async def test_non_admin_is_refused_admin_routes(admin_client: AsyncClient):
    r = await admin_client.post("/api/users", json={"Name": "nina", "Password": "NinaPass1"})
    assert r.status_code == 201
    r = await admin_client.post("/api/login", json={"username": "nina", "password": "NinaPass1"})
    assert r.status_code == 200
    headers = {"Authorization": f"Bearer {r.json()['access_token']}"}

    assert (await admin_client.get("/api/me", headers=headers)).json()["username"] == "nina"
    for path in ("/api/users", "/api/invites", "/api/user-roles", "/api/activity"):
        r = await admin_client.get(path, headers=headers)
        assert r.status_code == 403, path
        assert r.json()["message"] == "Admin required"


async def test_expired_account_cannot_log_in(admin_client: AsyncClient, fake_jellyfin, db):
    upstream = fake_jellyfin.add_user("olive", "OlivePass1")
    db.add(
        AppUser(
            username="olive",
            password_hash=hash_password("OlivePass1"),
            jellyfin_user_id=upstream["Id"],
            expires_at=datetime.now(timezone.utc) - timedelta(days=1),
        )
    )
    await db.commit()

    body = {"username": "olive", "password": "OlivePass1"}
    r = await admin_client.post("/api/login", json=body)
    assert r.status_code == 403
    assert r.json()["message"] == "Account has expired"
    assert upstream["Policy"]["IsDisabled"] is True

    r = await admin_client.post("/api/login", json=body)
    assert r.status_code == 403
    assert r.json()["message"] == "Account is disabled"
    assert fake_jellyfin.disable_calls == 1


async def test_expiry_ends_open_sessions(admin_client: AsyncClient, fake_jellyfin, db):
    """An account past its expiry date loses access even before it is disabled."""
    fake_jellyfin.fail_policy = 500
    admin = (await db.execute(select(AppUser).where(AppUser.username == ADMIN_NAME))).scalar_one()
    admin.expires_at = datetime.now(timezone.utc) - timedelta(hours=1)
    await db.commit()

    r = await admin_client.get("/api/invites")
    assert r.status_code == 403
    assert r.json()["message"] == "Account has expired"
    r = await admin_client.post("/api/invites", json={})
    assert r.status_code == 403
    assert (await admin_client.get("/api/connection-status")).json()["authenticated"] is False
    assert fake_jellyfin.admin["Policy"]["IsDisabled"] is False


async def test_login_rate_limited(client: AsyncClient):
    body = {"username": "nobody", "password": "wrong"}
    for _ in range(LIMITS["/api/login"]):
        r = await client.post("/api/login", json=body)
        assert r.status_code == 401
    r = await client.post("/api/login", json=body)
    assert r.status_code == 429
    assert "Too many requests" in r.json()["message"]


async def test_disconnect(admin_client: AsyncClient):
    r = await admin_client.post("/api/disconnect")
    assert r.status_code == 200
    r = await admin_client.get("/api/connection-status")
    assert r.json()["configured"] is False
    assert r.json()["authenticated"] is False
