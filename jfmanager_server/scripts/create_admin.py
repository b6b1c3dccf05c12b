#!/usr/bin/env python3
# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Create a local admin account. Run: python -m jfmanager_server.scripts.create_admin"""

import asyncio
import getpass
import sys

from sqlalchemy import select

from jfmanager_server.auth import hash_password
from jfmanager_server.database import async_session_maker, init_db
from jfmanager_server.models import AppUser


async def create_admin(username: str, password: str, email: str | None = None) -> AppUser:
    async with async_session_maker() as session:
        result = await session.execute(select(AppUser).where(AppUser.username == username))
        if result.scalar_one_or_none():
            raise ValueError(f"User {username} already exists")
        user = AppUser(
            username=username,
            email=email or None,
            password_hash=hash_password(password),
            is_admin=True,
        )
        session.add(user)
        await session.commit()
        return user


async def main():
    await init_db()
    username = input("Admin username: ").strip()
    email = input("Admin email (optional): ").strip()
    password = getpass.getpass("Password: ")
    if not username or not password:
        print("Username and password are required")
        sys.exit(1)
    try:
        await create_admin(username, password, email)
    except ValueError as e:
        print(e)
        sys.exit(1)
    print("Admin user created.")


if __name__ == "__main__":
    asyncio.run(main())
