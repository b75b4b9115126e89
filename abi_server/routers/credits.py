# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Credit API: balance, history, holds and direct spending for the caller's company."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.api.schemas import (
    BalanceResponse,
    HoldConvert,
    HoldCreate,
    HoldResponse,
    LedgerEntryResponse,
    SpendRequest,
    TransactionListResponse,
)
from abi_server.database import get_db
from abi_server.dependencies import require_csrf, require_role, require_user
from abi_server.errors import NotFound, Unauthorized
from abi_server.models import CreditAccount, CreditHold
from abi_server.services import approvals, ledger
from abi_server.services.identity import RequestContext

router = APIRouter(prefix="/credits", tags=["credits"])


async def _company_account(db: AsyncSession, ctx: RequestContext) -> CreditAccount:
    if ctx.company_id is None:
        raise Unauthorized("Not a member of any company")
    return await ledger.get_account_for_company(db, ctx.company_id)


async def _company_hold(db: AsyncSession, ctx: RequestContext, hold_id: uuid.UUID) -> CreditHold:
    """Holds of other companies are reported as missing."""
    account = await _company_account(db, ctx)
    hold = await db.get(CreditHold, hold_id)
    if hold is None or hold.account_id != account.id:
        raise NotFound("Hold not found")
    return hold


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    """Derived balance of the caller's company account."""
    account = await _company_account(db, ctx)
    snapshot = await ledger.balance(db, account.id)
    return BalanceResponse(
        account_id=snapshot.account_id,
        total_credits=snapshot.total_credits,
        bonus_credits=snapshot.bonus_credits,
        allocated=snapshot.allocated,
        debited=snapshot.debited,
        held=snapshot.held,
        available=snapshot.available,
    )


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    type: str | None = Query(None, description="Filter by transaction type"),
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> TransactionListResponse:
    """Ledger entries, newest first."""
    account = await _company_account(db, ctx)
    entries, total = await ledger.list_entries(db, account.id, limit=limit, offset=offset, transaction_type=type)
    return TransactionListResponse(
        items=[LedgerEntryResponse.model_validate(e) for e in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/holds", response_model=list[HoldResponse])
async def list_holds(
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> list[HoldResponse]:
    """Active holds on the caller's company account."""
    account = await _company_account(db, ctx)
    return [HoldResponse.model_validate(h) for h in await ledger.list_active_holds(db, account.id)]


@router.post("/holds", response_model=HoldResponse, dependencies=[Depends(require_csrf)])
async def place_hold(
    data: HoldCreate,
    ctx: RequestContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> HoldResponse:
    account = await _company_account(db, ctx)
    hold = await ledger.place_hold(db, account.id, data.request_id, data.amount, data.idempotency_key, ctx.user.id)
    await db.commit()
    return HoldResponse.model_validate(hold)


@router.post("/holds/{hold_id}/release", response_model=HoldResponse, dependencies=[Depends(require_csrf)])
async def release_hold(
    hold_id: uuid.UUID,
    ctx: RequestContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> HoldResponse:
    """Release the hold of a terminal request. Releasing a terminal hold returns it unchanged."""
    await _company_hold(db, ctx, hold_id)
    result = await approvals.release_request_hold(db, hold_id, ctx.user.id)
    await db.commit()
    return HoldResponse.model_validate(result.hold)


@router.post("/holds/{hold_id}/convert", response_model=LedgerEntryResponse, dependencies=[Depends(require_csrf)])
async def convert_hold(
    hold_id: uuid.UUID,
    data: HoldConvert,
    ctx: RequestContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> LedgerEntryResponse:
    """Convert the hold of an approved request, fulfilling it."""
    await _company_hold(db, ctx, hold_id)
    result = await approvals.convert_request_hold(
        db,
        hold_id,
        ctx.user.id,
        data.actual_amount,
        reference_type=data.reference_type,
        reference_id=data.reference_id,
    )
    await db.commit()
    return LedgerEntryResponse.model_validate(result.entry)


@router.post("/spend", response_model=LedgerEntryResponse, dependencies=[Depends(require_csrf)])
async def spend(
    data: SpendRequest,
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> LedgerEntryResponse:
    """Debit the company account directly. Replaying an idempotency key returns the original entry."""
    account = await _company_account(db, ctx)
    entry = await ledger.direct_debit(
        db,
        account.id,
        data.amount,
        data.idempotency_key,
        reference_type=data.reference_type,
        reference_id=data.reference_id,
        description=data.description,
        actor_id=ctx.user.id,
    )
    await db.commit()
    return LedgerEntryResponse.model_validate(entry)
