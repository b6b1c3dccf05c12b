# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Jellyfin client tests against mock transports."""

import httpx
import pytest

from jfmanager_server.errors import JellyfinError
from jfmanager_server.services.jellyfin import JellyfinClient, JellyfinRole, normalize_url

pytestmark = pytest.mark.anyio


def client_answering(status_code: int, **kwargs) -> JellyfinClient:
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code, **kwargs))
    return JellyfinClient("http://jellyfin.test", "token", transport=transport)


def test_role_from_policy():
    assert JellyfinRole.from_policy(None) is JellyfinRole.USER
    assert JellyfinRole.from_policy({"IsAdministrator": True}) is JellyfinRole.ADMINISTRATOR
    assert (
        JellyfinRole.from_policy({"EnableMediaPlayback": True, "EnableContentDeletion": True})
        is JellyfinRole.CONTENT_MANAGER
    )
    assert JellyfinRole.from_policy({"EnableContentDeletion": True}) is JellyfinRole.USER


@pytest.mark.parametrize("role", list(JellyfinRole))
def test_policy_flags_map_back_to_role(role):
    assert JellyfinRole.from_policy(role.policy_flags()) is role


def test_normalize_url():
    assert normalize_url("  https://media.example.com///  ") == "https://media.example.com"
    assert normalize_url("http://10.0.0.5:8096") == "http://10.0.0.5:8096"


async def test_client_error_is_definitive():
    async with client_answering(404, text="User not found") as client:
        with pytest.raises(JellyfinError) as exc:
            await client.get_user("missing")
    assert exc.value.status_code == 404
    assert exc.value.definitive is True
    assert "User not found" in exc.value.message


async def test_server_error_maps_to_bad_gateway():
    async with client_answering(500, text="boom") as client:
        with pytest.raises(JellyfinError) as exc:
            await client.list_users()
    assert exc.value.status_code == 502
    assert exc.value.definitive is False


async def test_transport_error_is_not_definitive():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with JellyfinClient("http://jellyfin.test", transport=httpx.MockTransport(refuse)) as client:
        with pytest.raises(JellyfinError) as exc:
            await client.public_info()
    assert exc.value.status_code == 502
    assert exc.value.definitive is False
    assert "Could not reach Jellyfin server" in exc.value.message


async def test_invalid_json_body():
    async with client_answering(200, text="<html>not jellyfin</html>") as client:
        with pytest.raises(JellyfinError):
            await client.public_info()


async def test_authenticate_without_token():
    async with client_answering(200, json={"User": {}}) as client:
        with pytest.raises(JellyfinError) as exc:
            await client.authenticate("admin", "pw")
    assert exc.value.status_code == 401


async def test_requests_carry_authorization():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    async with JellyfinClient("http://jellyfin.test/", "abc", transport=httpx.MockTransport(handler)) as client:
        assert await client.list_users() == []
    request = seen[0]
    assert str(request.url) == "http://jellyfin.test/Users"
    assert request.headers["X-Emby-Token"] == "abc"
    assert 'Token="abc"' in request.headers["X-Emby-Authorization"]


async def test_role_change_merges_policy(fake_jellyfin, jellyfin):
    user = fake_jellyfin.add_user("ivy", "IvyPass1")
    user["Policy"]["EnableRemoteAccess"] = False
    await jellyfin.apply_role(user["Id"], JellyfinRole.CONTENT_MANAGER)
    policy = fake_jellyfin.users[user["Id"]]["Policy"]
    assert JellyfinRole.from_policy(policy) is JellyfinRole.CONTENT_MANAGER
    assert policy["EnableRemoteAccess"] is False


async def test_apply_profile(fake_jellyfin, jellyfin):
    user = fake_jellyfin.add_user("jay", "JayPass1")
    layout = {"OrderedViews": ["lib-shows"], "MyMediaExcludes": ["lib-movies"]}
    await jellyfin.apply_profile(user["Id"], ["lib-shows"], layout)
    stored = fake_jellyfin.users[user["Id"]]
    assert stored["Policy"]["EnableAllFolders"] is False
    assert stored["Policy"]["EnabledFolders"] == ["lib-shows"]
    assert stored["Configuration"]["OrderedViews"] == ["lib-shows"]
    # Fields outside the layout are kept
    assert stored["Configuration"]["SubtitleMode"] == "Default"
