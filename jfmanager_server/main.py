# Copyright (C) 2024 JF Manager Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""JF Manager Server - Main FastAPI application."""

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from jfmanager_server.config import settings
from jfmanager_server.database import async_session_maker, init_db
from jfmanager_server.errors import AppError
from jfmanager_server.routers import (
    activity,
    app_users,
    auth,
    connection,
    invites,
    system,
    user_profiles,
    user_roles,
    users,
)
from jfmanager_server.services.expiry import run_expiry_sweep

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def _get_cors_origins() -> list[str]:
    raw = (settings.cors_origins or "*").strip()
    if raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


async def expiry_sweep_loop(interval_minutes: float) -> None:
    """Disable expired accounts now and then every interval_minutes."""
    while True:
        try:
            await run_expiry_sweep(async_session_maker)
        except Exception:
            logger.exception("Expiry sweep failed; retrying in %s minutes", interval_minutes)
        await asyncio.sleep(interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await init_db()
    app.state.sweep_task = None
    if settings.expiry_sweep_interval_minutes > 0:
        app.state.sweep_task = asyncio.create_task(
            expiry_sweep_loop(settings.expiry_sweep_interval_minutes)
        )
        logger.info("Expiry sweep every %s minutes", settings.expiry_sweep_interval_minutes)
    else:
        logger.info("Expiry sweep disabled; expired accounts are disabled on access")
    yield
    if app.state.sweep_task is not None:
        app.state.sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await app.state.sweep_task


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="JF Manager Server",
    description="Account, invite and profile management for Jellyfin",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status, and duration for each request (no body or auth headers)."""
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, duration_ms)
    return response


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"message": "Invalid input data", "errors": errors},
    )


app.include_router(connection.router, prefix="/api")
app.include_router(auth.router, prefix="/api")
app.include_router(users.router, prefix="/api")
app.include_router(app_users.router, prefix="/api")
app.include_router(invites.router, prefix="/api")
app.include_router(user_profiles.router, prefix="/api")
app.include_router(user_roles.router, prefix="/api")
app.include_router(activity.router, prefix="/api")
app.include_router(system.router, prefix="/api")


@app.get("/")
async def root():
    """Health check / API info."""
    return {"name": "JF Manager Server", "version": VERSION, "api": "/api", "docs": "/api/docs"}


@app.get("/api/health")
async def health():
    """Health check for load balancers."""
    return {"status": "ok"}


def run() -> None:
    import uvicorn

    uvicorn.run("jfmanager_server.main:app", host=settings.host, port=settings.port)
