# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""In-memory rate limiting for login, connect and invite redemption."""

import time
from collections import defaultdict

from fastapi import HTTPException, Request

# (client_key, endpoint) -> list of request timestamps in window
_buckets: defaultdict[tuple[str, str], list[float]] = defaultdict(list)
# Window seconds; max requests per window per endpoint
WINDOW = 60
LIMITS: dict[str, int] = {
    "/api/login": 10,
    "/api/connect": 10,
    "/api/invites/use": 5,
}


def _client_key(request: Request) -> str:
    """Prefer X-Forwarded-For when behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host or "unknown"
    return "unknown"


def _limit_key(path: str) -> str | None:
    """Map a request path to its LIMITS entry; invite codes share one bucket."""
    path = path.rstrip("/")
    if path in LIMITS:
        return path
    if path.startswith("/api/invites/use/"):
        return "/api/invites/use"
    return None


def _clean_old(bucket: list[float], now: float) -> None:
    cutoff = now - WINDOW
    while bucket and bucket[0] < cutoff:
        bucket.pop(0)


def check_rate_limit(request: Request, key: str) -> None:
    """Raise 429 if the client has exceeded the limit for this endpoint."""
    limit = LIMITS.get(key)
    if limit is None:
        return
    now = time.monotonic()
    bucket = _buckets[(_client_key(request), key)]
    _clean_old(bucket, now)
    if len(bucket) >= limit:
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please try again later.",
        )
    bucket.append(now)


def reset_rate_limits() -> None:
    _buckets.clear()


async def rate_limit_dep(request: Request) -> None:
    """FastAPI dependency: add Depends(rate_limit_dep) to limited routes."""
    key = _limit_key(request.url.path)
    if key:
        check_rate_limit(request, key)
