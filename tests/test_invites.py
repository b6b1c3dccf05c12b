# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite management and redemption tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from jfmanager_server.api.schemas import InviteSignup
from jfmanager_server.errors import InviteExhausted, InviteExpired, InviteNotFound, SlotReleaseFailed
from jfmanager_server.models import ActivityLog, AppUser, Invite, UserProfile
from jfmanager_server.services.invites import redeem_invite, release_slot

pytestmark = pytest.mark.anyio

SIGNUP = {"password": "Secret123", "email": None}


async def create_invite(client: AsyncClient, **body) -> dict:
    r = await client.post("/api/invites", json=body)
    assert r.status_code == 201, r.text
    return r.json()


async def used_count(db, code: str) -> int:
    return await db.scalar(
        select(Invite.used_count).where(Invite.code == code).execution_options(populate_existing=True)
    )


async def test_create_invite_defaults(admin_client: AsyncClient):
    """Omitted expiresAt uses the default duration; label and code are generated."""
    before = datetime.now(timezone.utc)
    invite = await create_invite(admin_client, maxUses=2)
    assert len(invite["code"]) == 32
    assert len(invite["label"].split()) == 2
    assert invite["usedCount"] == 0
    assert invite["usesRemaining"] == 2
    assert invite["userExpiryEnabled"] is False
    expires = datetime.fromisoformat(invite["expiresAt"])
    assert timedelta(hours=23, minutes=59) < expires - before < timedelta(hours=24, minutes=1)


async def test_create_invite_explicit_null_never_expires(admin_client: AsyncClient):
    invite = await create_invite(admin_client, expiresAt=None)
    assert invite["expiresAt"] is None


async def test_user_expiry_decomposition(admin_client: AsyncClient):
    invite = await create_invite(
        admin_client,
        userExpiryEnabled=True,
        userExpiryMonths=1,
        userExpiryDays=35,
        userExpiryHours=2,
    )
    # 1 month + 35 days normalizes to 2 months + 5 days
    assert invite["userExpiryEnabled"] is True
    assert (invite["userExpiryMonths"], invite["userExpiryDays"], invite["userExpiryHours"]) == (2, 5, 2)


async def test_public_preview(admin_client: AsyncClient):
    invite = await create_invite(admin_client, maxUses=1, label="Movie Night")
    r = await admin_client.get(f"/api/invites/by-code/{invite['code']}")
    assert r.status_code == 200
    data = r.json()
    assert data["label"] == "Movie Night"
    assert data["valid"] is True
    assert data["usesRemaining"] == 1

    r = await admin_client.get("/api/invites/by-code/unknown")
    assert r.status_code == 404
    assert r.json()["message"] == "Invite not found"


async def test_redeem_creates_account(admin_client: AsyncClient, fake_jellyfin, db):
    invite = await create_invite(admin_client, maxUses=1, userExpiryEnabled=True, userExpiryDays=7)
    r = await admin_client.post(
        f"/api/invites/use/{invite['code']}",
        json={"username": "alice", "password": "Secret123", "email": "alice@jellyfin-users.org"},
    )
    assert r.status_code == 201, r.text
    data = r.json()
    assert data["success"] is True
    assert data["username"] == "alice"
    assert data["expiresAt"] is not None

    upstream = fake_jellyfin.by_name("alice")
    assert upstream is not None
    assert upstream["Id"] == data["userId"]
    assert upstream["Policy"]["IsAdministrator"] is False

    assert await used_count(db, invite["code"]) == 1
    user = (await db.execute(select(AppUser).where(AppUser.username == "alice"))).scalar_one()
    assert user.jellyfin_user_id == upstream["Id"]
    assert user.email == "alice@jellyfin-users.org"
    types = (await db.execute(select(ActivityLog.type))).scalars().all()
    assert "invite_used" in types
    assert "account_created" in types


async def test_redeem_applies_profile(admin_client: AsyncClient, fake_jellyfin):
    r = await admin_client.post(
        "/api/user-profiles",
        json={
            "name": "Movies only",
            "sourceUserId": fake_jellyfin.admin["Id"],
            "libraryAccess": ["lib-movies"],
        },
    )
    assert r.status_code == 201, r.text
    invite = await create_invite(admin_client, profileId=r.json()["id"])
    assert invite["profileName"] == "Movies only"

    r = await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "bob", **SIGNUP})
    assert r.status_code == 201, r.text
    policy = fake_jellyfin.by_name("bob")["Policy"]
    assert policy["EnableAllFolders"] is False
    assert policy["EnabledFolders"] == ["lib-movies"]
    assert fake_jellyfin.by_name("bob")["Configuration"]["OrderedViews"] == ["lib-shows", "lib-movies"]


async def test_concurrent_redemptions_never_exceed_max_uses(admin_client: AsyncClient, fake_jellyfin, db):
    invite = await create_invite(admin_client, maxUses=3)
    responses = await asyncio.gather(
        *(
            admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": f"user{i}", **SIGNUP})
            for i in range(4)
        )
    )
    codes = sorted(r.status_code for r in responses)
    assert codes == [201, 201, 201, 410]
    rejected = next(r for r in responses if r.status_code == 410)
    assert rejected.json()["message"] == InviteExhausted.default_message
    assert await used_count(db, invite["code"]) == 3
    assert len([u for u in fake_jellyfin.users.values() if u["Name"].startswith("user")]) == 3


async def test_expired_invite_rejected_even_with_uses_left(admin_client: AsyncClient, db):
    invite = await create_invite(admin_client, maxUses=5)
    row = (await db.execute(select(Invite).where(Invite.code == invite["code"]))).scalar_one()
    row.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    await db.commit()

    r = await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "late", **SIGNUP})
    assert r.status_code == 410
    assert r.json()["message"] == InviteExpired.default_message
    assert await used_count(db, invite["code"]) == 0


async def test_scenario_seven_day_user_expiry(database, jellyfin, fake_jellyfin, db):
    """ABC123 redeemed at T expires at T + 7 days; a second attempt at T + 1 minute is exhausted."""
    db.add(Invite(code="ABC123", max_uses=1, used_count=0, user_expiry=timedelta(days=7)))
    await db.commit()
    t = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    user = await redeem_invite(db, jellyfin, "ABC123", InviteSignup(username="carol", password="Secret123"), now=t)
    assert user.expires_at == t + timedelta(days=7)
    assert fake_jellyfin.by_name("carol") is not None

    with pytest.raises(InviteExhausted):
        await redeem_invite(
            db,
            jellyfin,
            "ABC123",
            InviteSignup(username="dave", password="Secret123"),
            now=t + timedelta(minutes=1),
        )
    assert fake_jellyfin.by_name("dave") is None
    assert await used_count(db, "ABC123") == 1


async def test_expired_check_uses_redemption_time(database, jellyfin, db):
    t = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    db.add(Invite(code="TIMED", max_uses=3, used_count=0, expires_at=t))
    await db.commit()
    with pytest.raises(InviteExpired):
        await redeem_invite(db, jellyfin, "TIMED", InviteSignup(username="erin", password="Secret123"), now=t)


async def test_rejected_upstream_creation_releases_slot(admin_client: AsyncClient, fake_jellyfin, db):
    invite = await create_invite(admin_client, maxUses=1)
    fake_jellyfin.fail_create = 400
    r = await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "frank", **SIGNUP})
    assert r.status_code == 400
    assert "User creation failed" in r.json()["message"]
    assert await used_count(db, invite["code"]) == 0

    fake_jellyfin.fail_create = None
    r = await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "frank", **SIGNUP})
    assert r.status_code == 201


async def test_upstream_server_error_keeps_slot(admin_client: AsyncClient, fake_jellyfin, db):
    """A 5xx may have created the user, so the use is not handed back."""
    invite = await create_invite(admin_client, maxUses=2)
    fake_jellyfin.fail_create = 500
    r = await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "gina", **SIGNUP})
    assert r.status_code == 502
    assert await used_count(db, invite["code"]) == 1


async def test_bookkeeping_failure_is_incomplete(admin_client: AsyncClient, fake_jellyfin, db):
    invite = await create_invite(admin_client, maxUses=2)
    fake_jellyfin.fail_policy = 500
    r = await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "hank", **SIGNUP})
    assert r.status_code == 503
    assert "created" in r.json()["message"]
    assert fake_jellyfin.by_name("hank") is not None
    assert await used_count(db, invite["code"]) == 1
    local = await db.scalar(select(func.count(AppUser.id)).where(AppUser.username == "hank"))
    assert local == 0


async def test_retry_after_incomplete_setup_finishes_account(admin_client: AsyncClient, fake_jellyfin, db):
    """The retry links the Jellyfin user made by the first attempt, under the same use."""
    invite = await create_invite(admin_client, maxUses=1)
    url = f"/api/invites/use/{invite['code']}"
    body = {"username": "hank", **SIGNUP}
    fake_jellyfin.fail_policy = 500
    r = await admin_client.post(url, json=body)
    assert r.status_code == 503

    fake_jellyfin.fail_policy = None
    r = await admin_client.post(url, json=body)
    assert r.status_code == 201, r.text

    upstream = fake_jellyfin.by_name("hank")
    user = await db.scalar(select(AppUser).where(AppUser.username == "hank"))
    assert user is not None
    assert user.jellyfin_user_id == upstream["Id"]
    assert [u["Name"] for u in fake_jellyfin.users.values()].count("hank") == 1
    assert await used_count(db, invite["code"]) == 1
    types = (
        await db.execute(select(ActivityLog.type).where(ActivityLog.invite_code == invite["code"]))
    ).scalars().all()
    assert "invite_incomplete" in types
    assert types.count("invite_used") == 1

    # A finished account is not resumed again, so the spent invite is refused
    r = await admin_client.post(url, json=body)
    assert r.status_code == 410


async def test_incomplete_setup_resumes_only_with_its_password(admin_client: AsyncClient, fake_jellyfin, db):
    invite = await create_invite(admin_client, maxUses=2)
    url = f"/api/invites/use/{invite['code']}"
    fake_jellyfin.fail_policy = 500
    r = await admin_client.post(url, json={"username": "hank", **SIGNUP})
    assert r.status_code == 503
    fake_jellyfin.fail_policy = None

    r = await admin_client.post(url, json={"username": "hank", "password": "Another123"})
    assert r.status_code == 409
    assert r.json()["message"] == "Username already taken"
    assert await db.scalar(select(AppUser.id).where(AppUser.username == "hank")) is None

    r = await admin_client.post(url, json={"username": "hank", **SIGNUP})
    assert r.status_code == 201
    assert await used_count(db, invite["code"]) == 1


async def test_failed_slot_release_is_reported(database, db, monkeypatch):
    async def locked_commit():
        raise OperationalError("UPDATE invites", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "commit", locked_commit)
    with pytest.raises(SlotReleaseFailed) as exc:
        await release_slot(db, "LOCKED")
    assert exc.value.status_code == 500
    assert "contact the administrator" in exc.value.message


async def test_duplicate_username_rejected_before_reserving(admin_client: AsyncClient, db):
    invite = await create_invite(admin_client, maxUses=2)
    r = await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "admin", **SIGNUP})
    assert r.status_code == 409
    assert await used_count(db, invite["code"]) == 0


async def test_signup_validation(admin_client: AsyncClient):
    invite = await create_invite(admin_client)
    url = f"/api/invites/use/{invite['code']}"
    for body in (
        {"username": "ab", "password": "Secret123"},
        {"username": "bad name!", "password": "Secret123"},
        {"username": "ivan", "password": "short1A"},
        {"username": "ivan", "password": "alllowercase1"},
        {"username": "ivan", "password": "Secret123", "email": "not-an-email"},
    ):
        r = await admin_client.post(url, json=body)
        assert r.status_code == 400, body
        assert r.json()["message"] == "Invalid input data"


async def test_update_invite(admin_client: AsyncClient, db):
    invite = await create_invite(admin_client, maxUses=3)
    await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "jane", **SIGNUP})
    await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "kyle", **SIGNUP})

    r = await admin_client.patch(f"/api/invites/{invite['id']}", json={"maxUses": 1})
    assert r.status_code == 400

    r = await admin_client.patch(
        f"/api/invites/{invite['id']}",
        json={"maxUses": 2, "label": "Renamed", "userExpiryEnabled": True, "userExpiryHours": 12},
    )
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["label"] == "Renamed"
    assert data["isExhausted"] is True
    assert data["userExpiryHours"] == 12


async def test_enabled_user_expiry_needs_duration(admin_client: AsyncClient):
    r = await admin_client.post("/api/invites", json={"userExpiryEnabled": True})
    assert r.status_code == 400
    assert r.json()["message"] == "Invalid input data"
    assert "User expiry duration must be positive" in r.json()["errors"][0]["message"]

    invite = await create_invite(admin_client)
    r = await admin_client.patch(
        f"/api/invites/{invite['id']}", json={"userExpiryEnabled": True, "userExpiryMinutes": 0}
    )
    assert r.status_code == 400
    assert "User expiry duration must be positive" in r.json()["errors"][0]["message"]


async def test_soft_delete(admin_client: AsyncClient, db, jellyfin):
    invite = await create_invite(admin_client, maxUses=1)
    r = await admin_client.delete(f"/api/invites/{invite['id']}")
    assert r.status_code == 200

    r = await admin_client.get("/api/invites")
    assert all(i["id"] != invite["id"] for i in r.json())
    r = await admin_client.get(f"/api/invites/by-code/{invite['code']}")
    assert r.status_code == 404
    r = await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "lena", **SIGNUP})
    assert r.status_code == 404

    row = (await db.execute(select(Invite).where(Invite.code == invite["code"]))).scalar_one()
    assert row.deleted_at is not None
    with pytest.raises(InviteNotFound):
        await redeem_invite(db, jellyfin, invite["code"], InviteSignup(username="lena", password="Secret123"))


async def test_invites_require_admin(client: AsyncClient):
    r = await client.get("/api/invites")
    assert r.status_code == 401


async def test_redeem_uses_default_profile(admin_client: AsyncClient, fake_jellyfin, db):
    db.add(UserProfile(name="Default", source_user_id="x", source_name="x", is_default=True, library_access='["lib-shows"]'))
    await db.commit()
    invite = await create_invite(admin_client)
    r = await admin_client.post(f"/api/invites/use/{invite['code']}", json={"username": "mona", **SIGNUP})
    assert r.status_code == 201, r.text
    assert fake_jellyfin.by_name("mona")["Policy"]["EnabledFolders"] == ["lib-shows"]
