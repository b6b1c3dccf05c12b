# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pytest fixtures. Tests run against a temporary SQLite database and an in-memory Jellyfin."""

import json
import os
import re
import tempfile
import uuid

_db_dir = tempfile.mkdtemp(prefix="jfmanager-test-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"
os.environ["EXPIRY_SWEEP_INTERVAL_MINUTES"] = "0"
os.environ["JWT_SECRET"] = "test-secret"

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from jfmanager_server.database import async_session_maker, drop_db, init_db  # noqa: E402
from jfmanager_server.main import app  # noqa: E402
from jfmanager_server.rate_limit import reset_rate_limits  # noqa: E402
from jfmanager_server.services.jellyfin import JellyfinClient  # noqa: E402

JELLYFIN_URL = "http://jellyfin.test"
ADMIN_NAME = "admin"
ADMIN_PASSWORD = "AdminPass1"


class FakeJellyfin:
    """In-memory stand-in for the parts of the Jellyfin REST API the server uses."""

    def __init__(self) -> None:
        self.users: dict[str, dict] = {}
        self.passwords: dict[str, str] = {}
        self.favorites: dict[str, list[dict]] = {}
        self.played: dict[str, list[dict]] = {}
        self.activity: list[dict] = []
        self.folders = [
            {"Id": "lib-movies", "Name": "Movies", "CollectionType": "movies", "Path": "/media/movies"},
            {"Id": "lib-shows", "Name": "Shows", "CollectionType": "tvshows", "Path": "/media/shows"},
        ]
        self.disable_calls = 0
        # Status code to answer POST /Users/New or POST /Users/{id}/Policy with
        self.fail_create: int | None = None
        self.fail_policy: int | None = None
        self.admin = self.add_user(ADMIN_NAME, ADMIN_PASSWORD, admin=True)

    def add_user(self, name: str, password: str = "", admin: bool = False) -> dict:
        user_id = uuid.uuid4().hex
        self.users[user_id] = {
            "Id": user_id,
            "Name": name,
            "Policy": {
                "IsAdministrator": admin,
                "IsDisabled": False,
                "EnableMediaPlayback": True,
                "EnableContentDeletion": admin,
                "EnableAllFolders": True,
                "EnabledFolders": [],
            },
            "Configuration": {
                "OrderedViews": ["lib-shows", "lib-movies"] if admin else [],
                "LatestItemsExcludes": ["lib-movies"] if admin else [],
                "MyMediaExcludes": [],
                "SubtitleMode": "Default",
            },
        }
        self.passwords[user_id] = password
        return self.users[user_id]

    def by_name(self, name: str) -> dict | None:
        return next((u for u in self.users.values() if u["Name"] == name), None)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method
        body = json.loads(request.content) if request.content else None

        if path == "/System/Info/Public":
            return httpx.Response(200, json={"ServerName": "Test Jellyfin", "Version": "10.9.0", "Id": "srv"})
        if path == "/Users/AuthenticateByName":
            user = self.by_name(body["Username"])
            if user is None or self.passwords[user["Id"]] != body["Pw"]:
                return httpx.Response(401, text="Invalid username or password")
            return httpx.Response(200, json={"AccessToken": f"token-{user['Id']}", "User": user})
        if path == "/Users" and method == "GET":
            return httpx.Response(200, json=list(self.users.values()))
        if path == "/Users/New":
            if self.fail_create:
                return httpx.Response(self.fail_create, text="User creation failed")
            if self.by_name(body["Name"]):
                return httpx.Response(400, text=f"A user with the name '{body['Name']}' already exists.")
            return httpx.Response(200, json=self.add_user(body["Name"], body.get("Password", "")))
        if path == "/Library/MediaFolders":
            return httpx.Response(200, json={"Items": self.folders, "TotalRecordCount": len(self.folders)})
        if path == "/System/ActivityLog/Entries":
            user_id = request.url.params.get("userId")
            items = [e for e in self.activity if e.get("UserId") == user_id]
            limit = int(request.url.params.get("limit", len(items)))
            return httpx.Response(200, json={"Items": items[:limit], "TotalRecordCount": len(items)})

        match = re.fullmatch(r"/Items/([^/]+)/Images/Primary", path)
        if match:
            return httpx.Response(200, content=b"\x89PNG fake", headers={"content-type": "image/png"})

        match = re.fullmatch(r"/Users/([^/]+)(/[A-Za-z]+)?", path)
        if match:
            user_id, rest = match.group(1), match.group(2) or ""
            user = self.users.get(user_id)
            if user is None:
                return httpx.Response(404, text="User not found")
            if rest == "" and method == "GET":
                return httpx.Response(200, json=user)
            if rest == "" and method == "POST":
                user["Name"] = body["Name"]
                return httpx.Response(204)
            if rest == "" and method == "DELETE":
                del self.users[user_id]
                return httpx.Response(204)
            if rest == "/Password":
                self.passwords[user_id] = body["NewPw"]
                return httpx.Response(204)
            if rest == "/Policy":
                if self.fail_policy:
                    return httpx.Response(self.fail_policy, text="Policy update failed")
                if body.get("IsDisabled") and not user["Policy"].get("IsDisabled"):
                    self.disable_calls += 1
                user["Policy"] = body
                return httpx.Response(204)
            if rest == "/Configuration":
                user["Configuration"] = body
                return httpx.Response(204)
            if rest == "/Items":
                filters = request.url.params.get("Filters")
                items = self.favorites.get(user_id, []) if filters == "IsFavorite" else self.played.get(user_id, [])
                return httpx.Response(200, json={"Items": items, "TotalRecordCount": len(items)})
        return httpx.Response(404, text=f"No fake route for {method} {path}")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_jellyfin(monkeypatch) -> FakeJellyfin:
    fake = FakeJellyfin()
    monkeypatch.setattr(JellyfinClient, "default_transport", httpx.MockTransport(fake.handler))
    return fake


@pytest.fixture
async def database():
    """Fresh schema for every test."""
    await drop_db()
    await init_db()
    reset_rate_limits()
    yield


@pytest.fixture
async def db(database):
    async with async_session_maker() as session:
        yield session


@pytest.fixture
async def jellyfin(fake_jellyfin):
    async with JellyfinClient(JELLYFIN_URL, "token") as client:
        yield client


@pytest.fixture
async def client(database, fake_jellyfin):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def admin_client(client: AsyncClient) -> AsyncClient:
    """Client connected to the fake Jellyfin and logged in as its administrator."""
    r = await client.post(
        "/api/connect",
        json={"url": JELLYFIN_URL, "username": ADMIN_NAME, "password": ADMIN_PASSWORD},
    )
    assert r.status_code == 200, r.text
    client.headers["Authorization"] = f"Bearer {r.json()['access_token']}"
    return client
