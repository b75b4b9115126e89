# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""ABI Server - Main FastAPI application."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from abi_server.config import settings
from abi_server.database import init_db, run_in_transaction
from abi_server.errors import CoreError, InvalidCredentials, InviteInvalid, RateLimited
from abi_server.rate_limit import credential_floor, is_credential_path
from abi_server.routers import auth, community, credits, invite, requests
from abi_server.services import approvals
from abi_server.services.reputation import ensure_badge_catalog

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _get_cors_origins() -> list[str]:
    raw = (settings.cors_origins or "*").strip()
    if raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


async def approval_sweep_loop(interval: float) -> None:
    """Expire and escalate pending requests every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await approvals.run_sweep()
        except CoreError as e:
            logger.warning("Approval sweep failed: %s", e.detail)
        except Exception:
            logger.exception("Approval sweep crashed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await init_db()
    inserted = await run_in_transaction(ensure_badge_catalog)
    if inserted:
        logger.info("Seeded %d badges", inserted)

    app.state.sweep_task = None
    if settings.approval_sweep_interval_seconds > 0:
        app.state.sweep_task = asyncio.create_task(approval_sweep_loop(settings.approval_sweep_interval_seconds))
    yield
    if app.state.sweep_task is not None:
        app.state.sweep_task.cancel()
        try:
            await app.state.sweep_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="ABI Server",
    description="Invite-gated identity, company credits and approval workflows",
    version="0.1.0",
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


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
    """Render service errors as {"detail", "code"} with the error's status."""
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies on credential endpoints get the endpoint's generic failure instead of field errors."""
    path = request.url.path.rstrip("/")
    if not is_credential_path(path):
        return await request_validation_exception_handler(request, exc)
    fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
    logger.info("Malformed %s body: %s", path, ", ".join(fields))
    if path == "/api/v1/auth/login":
        return await core_error_handler(request, InvalidCredentials())
    if path == "/api/v1/invites/validate":
        return JSONResponse(content={"valid": False, "type": None, "reason": InviteInvalid.message})
    return await core_error_handler(request, InviteInvalid())


@app.middleware("http")
async def equalize_credential_timing(request: Request, call_next):
    """Credential endpoints answer no earlier than the timing floor, rate-limited and malformed calls included."""
    if not is_credential_path(request.url.path):
        return await call_next(request)
    async with credential_floor():
        return await call_next(request)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status, and duration for each request (no body, cookies or headers)."""
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, duration_ms)
    return response


# API v1
app.include_router(auth.router, prefix="/api/v1")
app.include_router(invite.router, prefix="/api/v1")
app.include_router(credits.router, prefix="/api/v1")
app.include_router(requests.router, prefix="/api/v1")
app.include_router(community.router, prefix="/api/v1")


@app.get("/")
async def root():
    """API info."""
    return {
        "name": "ABI Server",
        "version": "0.1.0",
        "api": "/api/v1",
        "docs": "/api/docs",
    }


@app.get("/api/v1/health")
async def health():
    """Health check for load balancers."""
    return {"status": "ok"}
