# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Approval request API routes."""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.api.schemas import (
    ApprovalEventResponse,
    ApprovalRequestCreate,
    ApprovalRequestDetail,
    ApprovalRequestResponse,
    HoldResponse,
    TransitionPayload,
)
from abi_server.database import get_db
from abi_server.dependencies import require_csrf, require_user
from abi_server.errors import Unauthorized
from abi_server.services import approvals
from abi_server.services.identity import RequestContext

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post(
    "",
    response_model=ApprovalRequestResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_csrf)],
)
async def create_request(
    data: ApprovalRequestCreate,
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> ApprovalRequestResponse:
    """Create a draft request for the caller's company."""
    if ctx.company_id is None:
        raise Unauthorized("Not a member of any company")
    request = await approvals.create_request(
        db,
        ctx.user.id,
        ctx.company_id,
        data.request_type,
        data.title,
        data.estimated_credits,
        team_id=data.team_id,
        description=data.description,
        context=data.context,
    )
    await db.commit()
    return ApprovalRequestResponse.model_validate(request)


@router.get("/{request_id}", response_model=ApprovalRequestDetail)
async def get_request(
    request_id: uuid.UUID,
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> ApprovalRequestDetail:
    """Request with its hold and audit events, newest first."""
    request, events, hold = await approvals.get_request(db, request_id, ctx.user.id)
    detail = ApprovalRequestDetail.model_validate(request)
    detail.hold = HoldResponse.model_validate(hold) if hold else None
    detail.events = [ApprovalEventResponse.model_validate(e) for e in events]
    return detail


@router.post(
    "/{request_id}/{action}",
    response_model=ApprovalRequestDetail,
    dependencies=[Depends(require_csrf)],
)
async def transition_request(
    request_id: uuid.UUID,
    action: str,
    payload: TransitionPayload | None = None,
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> ApprovalRequestDetail:
    """submit, approve, deny, cancel, fulfill or escalate."""
    body = payload.model_dump(exclude_none=True) if payload else {}
    result = await approvals.transition(db, request_id, action, ctx.user.id, body)
    await db.commit()
    detail = ApprovalRequestDetail.model_validate(result.request)
    detail.hold = HoldResponse.model_validate(result.hold) if result.hold else None
    return detail
