# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite API: create invites (spends a slot) and check a code before registering."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.api.schemas import InviteCreate, InviteResponse, InviteValidateRequest, InviteValidateResponse
from abi_server.database import get_db
from abi_server.dependencies import require_csrf, require_user
from abi_server.rate_limit import rate_limit_auth_dep
from abi_server.services import invites
from abi_server.services.identity import RequestContext
from abi_server.services.permissions import ELEVATED_ROLES

router = APIRouter(prefix="/invites", tags=["invites"])


@router.post(
    "",
    response_model=InviteResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_csrf)],
)
async def create_invite(
    data: InviteCreate,
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> InviteResponse:
    """Create an invite. Admins and owners do not spend invite slots."""
    invite = await invites.create_invite(
        db,
        ctx.user.id,
        data.type,
        email=data.email,
        max_uses=data.max_uses,
        expires_in_seconds=data.expires_in_seconds,
        metadata=data.metadata,
        elevated=ctx.role in ELEVATED_ROLES,
    )
    await db.commit()
    return InviteResponse.model_validate(invite)


@router.post(
    "/validate",
    response_model=InviteValidateResponse,
    dependencies=[Depends(rate_limit_auth_dep)],
)
async def validate_invite(
    data: InviteValidateRequest,
    db: AsyncSession = Depends(get_db),
) -> InviteValidateResponse:
    """Check a code without consuming it. Always 200; ``valid`` carries the outcome."""
    result = await invites.validate_invite(db, data.code, data.email)
    return InviteValidateResponse(**result)
