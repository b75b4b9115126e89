# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""In-memory rate limiting and timing equalization for credential endpoints."""

import asyncio
import math
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Request

from abi_server.config import settings
from abi_server.errors import RateLimited

# (client_key, route) -> [window_start, count]. Process-wide; never torn down.
_buckets: dict[tuple[str, str], list[float]] = {}
# route -> (max requests, window seconds)
LIMITS: dict[str, tuple[int, int]] = {
    "/api/v1/auth/login": (5, 60),
    "/api/v1/auth/register": (3, 60),
    "/api/v1/invites/validate": (5, 60),
}


def is_credential_path(path: str) -> bool:
    return path.rstrip("/") in LIMITS


def _client_key(request: Request) -> str:
    """Prefer X-Forwarded-For when behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host or "unknown"
    return "unknown"


def check_rate_limit(client: str, route: str, now: float | None = None) -> None:
    """
    Count one request for (client, route) in the current fixed window.
    Raises RateLimited(retry_after) once the route's threshold is reached.
    Routes without a configured limit are never limited.
    """
    limit = LIMITS.get(route)
    if limit is None:
        return
    max_requests, window = limit
    now = time.monotonic() if now is None else now
    key = (client, route)
    bucket = _buckets.get(key)
    if bucket is None or now >= bucket[0] + window:
        _buckets[key] = [now, 1]
        return
    if bucket[1] >= max_requests:
        retry_after = max(1, math.ceil(bucket[0] + window - now))
        raise RateLimited(retry_after)
    bucket[1] += 1


def reset_rate_limits() -> None:
    """Forget every window (tests, admin tooling)."""
    _buckets.clear()


async def rate_limit_auth_dep(request: Request) -> None:
    """FastAPI dependency: rate limit credential endpoints. Add Depends(rate_limit_auth_dep) to routes."""
    if is_credential_path(request.url.path):
        check_rate_limit(_client_key(request), request.url.path.rstrip("/"))


@asynccontextmanager
async def credential_floor(floor_ms: int | None = None) -> AsyncIterator[None]:
    """Make the wrapped block take at least ``floor_ms`` whatever its outcome.

    Success, wrong password, unknown email and malformed invite all return no
    earlier than the floor, including when the block raises.
    """
    floor = (settings.credential_floor_ms if floor_ms is None else floor_ms) / 1000
    started = time.monotonic()
    try:
        yield
    finally:
        remaining = floor - (time.monotonic() - started)
        if remaining > 0:
            await asyncio.sleep(remaining)
