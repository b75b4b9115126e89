# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication API routes."""

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.api.schemas import (
    AuthResponse,
    LoginRequest,
    PermissionsResponse,
    ProfileResponse,
    RegisterRequest,
    SessionResponse,
    UserResponse,
)
from abi_server.auth import SESSION_COOKIE, VISITOR_COOKIE, clear_session_cookies, set_session_cookies
from abi_server.database import get_db
from abi_server.dependencies import get_request_context
from abi_server.rate_limit import rate_limit_auth_dep
from abi_server.services import identity
from abi_server.services.identity import AuthResult, RequestContext

router = APIRouter(prefix="/auth", tags=["auth"])


def _auth_response(result: AuthResult, response: Response) -> AuthResponse:
    set_session_cookies(response, result.session_token, result.csrf_token, result.visitor)
    return AuthResponse(
        user=UserResponse.model_validate(result.user),
        profile=ProfileResponse.model_validate(result.profile) if result.profile else None,
        permissions=PermissionsResponse(**result.permissions.as_dict()),
        expires_at=result.session_expires_at,
    )


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_auth_dep)],
)
async def register(
    data: RegisterRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> AuthResponse:
    """Create an account with an invite code and start a session."""
    result = await identity.register(
        db,
        data.email,
        data.password,
        data.invite_code,
        visitor_cookie=request.cookies.get(VISITOR_COOKIE),
    )
    await db.commit()
    return _auth_response(result, response)


@router.post("/login", response_model=AuthResponse, dependencies=[Depends(rate_limit_auth_dep)])
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> AuthResponse:
    """Authenticate and start a session. Every failure is the same 401."""
    result = await identity.login(
        db,
        data.email,
        data.password,
        visitor_cookie=request.cookies.get(VISITOR_COOKIE),
    )
    await db.commit()
    return _auth_response(result, response)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Destroy the current session. Succeeds with or without one."""
    await identity.logout(db, request.cookies.get(SESSION_COOKIE))
    await db.commit()
    clear_session_cookies(response)
    return {"message": "Logged out"}


@router.get("/session", response_model=SessionResponse)
async def get_session(ctx: RequestContext = Depends(get_request_context)) -> SessionResponse:
    """The caller's identity and capabilities; anonymous when not signed in."""
    return SessionResponse(
        authenticated=ctx.is_authenticated,
        user=UserResponse.model_validate(ctx.user) if ctx.user else None,
        profile=ProfileResponse.model_validate(ctx.profile) if ctx.profile else None,
        role=ctx.role,
        company_id=ctx.company_id,
        permissions=PermissionsResponse(**ctx.permissions.as_dict()),
    )
