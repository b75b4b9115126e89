# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""FastAPI dependencies: per-request identity context, authentication and CSRF."""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.auth import CSRF_COOKIE, CSRF_HEADER, SESSION_COOKIE, requires_csrf, validate_csrf
from abi_server.database import get_db
from abi_server.errors import CsrfInvalid, Unauthenticated, Unauthorized
from abi_server.services.identity import RequestContext, resolve_request_context
from abi_server.services.organization import role_rank


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> RequestContext:
    """Resolve the caller once per request. Anonymous when the session cookie is missing or stale."""
    return await resolve_request_context(db, request.cookies.get(SESSION_COOKIE))


async def require_user(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    if not ctx.is_authenticated:
        raise Unauthenticated()
    return ctx


async def require_csrf(request: Request) -> None:
    """Double-submit check for state-changing methods: header must equal the CSRF cookie."""
    if not requires_csrf(request.method):
        return
    if not validate_csrf(request.headers.get(CSRF_HEADER), request.cookies.get(CSRF_COOKIE)):
        raise CsrfInvalid()


def require_role(minimum: str):
    """Dependency factory: the caller's company role must rank at least ``minimum``."""

    async def dependency(ctx: RequestContext = Depends(require_user)) -> RequestContext:
        if ctx.membership is None or ctx.membership.rank < role_rank(minimum):
            raise Unauthorized(f"Requires {minimum} role")
        return ctx

    return dependency
