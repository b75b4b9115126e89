# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Credit ledger: derived balance, holds, debits and credits.

available = total_credits + bonus_credits + credits - debits - active holds

The subscription baseline lives on the account header only. Every mutation
takes the account row lock first (after the hold lock where a hold is
involved), so balance-changing operations on one account commit in a total
order and available never drops below zero at a commit boundary.
"""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.database import get_for_update, insert_or_conflict
from abi_server.errors import (
    AmountExceedsHold,
    ConstraintViolation,
    HoldAlreadyConverted,
    HoldNotActive,
    InsufficientFunds,
    InvalidInput,
    InvariantViolation,
    NotFound,
)
from abi_server.models import ApprovalRequest, CreditAccount, CreditHold, LedgerEntry
from abi_server.models.timestamp import utcnow

logger = logging.getLogger(__name__)

MAX_AMOUNT = 2**63 - 1
DEBIT_TYPES = ("spend", "adjustment")
CREDIT_TYPES = ("allocation", "refund", "adjustment")
BASELINE_REFERENCE = "subscription"


@dataclass(frozen=True)
class BalanceSnapshot:
    account_id: uuid.UUID
    total_credits: int
    bonus_credits: int
    credited: int
    debited: int
    held: int

    @property
    def allocated(self) -> int:
        return self.total_credits + self.bonus_credits + self.credited

    @property
    def available(self) -> int:
        return self.allocated - self.debited - self.held


@dataclass(frozen=True)
class ReleaseResult:
    hold: CreditHold
    already_terminal: bool


def _check_amount(amount: int, name: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInput(f"{name} must be an integer")
    if amount <= 0:
        raise InvalidInput(f"{name} must be positive")
    if amount > MAX_AMOUNT:
        raise InvalidInput(f"{name} is too large")
    return amount


def _check_key(idempotency_key: str | None) -> str:
    if not idempotency_key or len(idempotency_key) > 255:
        raise InvalidInput("idempotency_key must be 1-255 characters")
    return idempotency_key


async def get_account(db: AsyncSession, account_id: uuid.UUID) -> CreditAccount:
    account = await db.get(CreditAccount, account_id)
    if account is None:
        raise NotFound("Credit account not found")
    return account


async def get_account_for_company(db: AsyncSession, company_id: uuid.UUID) -> CreditAccount:
    result = await db.execute(select(CreditAccount).where(CreditAccount.company_id == company_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFound("Credit account not found")
    return account


async def _lock_account(db: AsyncSession, account_id: uuid.UUID) -> CreditAccount:
    account = await get_for_update(db, CreditAccount, account_id)
    if account is None:
        raise NotFound("Credit account not found")
    return account


async def _snapshot(db: AsyncSession, account: CreditAccount) -> BalanceSnapshot:
    credited = func.coalesce(
        func.sum(case((LedgerEntry.entry_type == "credit", LedgerEntry.amount), else_=0)), 0
    )
    debited = func.coalesce(
        func.sum(case((LedgerEntry.entry_type == "debit", LedgerEntry.amount), else_=0)), 0
    )
    sums = (
        await db.execute(select(credited, debited).where(LedgerEntry.account_id == account.id))
    ).one()
    held = (
        await db.execute(
            select(func.coalesce(func.sum(CreditHold.amount), 0)).where(
                CreditHold.account_id == account.id, CreditHold.status == "active"
            )
        )
    ).scalar_one()
    return BalanceSnapshot(
        account_id=account.id,
        total_credits=account.total_credits,
        bonus_credits=account.bonus_credits,
        credited=int(sums[0]),
        debited=int(sums[1]),
        held=int(held),
    )


async def _assert_solvent(db: AsyncSession, account: CreditAccount, operation: str) -> BalanceSnapshot:
    snapshot = await _snapshot(db, account)
    if snapshot.available < 0:
        logger.critical(
            "Negative available balance on account %s after %s: %d",
            account.id,
            operation,
            snapshot.available,
        )
        raise InvariantViolation()
    return snapshot


async def balance(db: AsyncSession, account_id: uuid.UUID) -> BalanceSnapshot:
    """Computed read of the derived balance. No lock; one consistent read within the session."""
    account = await get_account(db, account_id)
    return await _snapshot(db, account)


async def get_entry_by_key(db: AsyncSession, account_id: uuid.UUID, key: str) -> LedgerEntry | None:
    result = await db.execute(
        select(LedgerEntry).where(
            LedgerEntry.account_id == account_id, LedgerEntry.idempotency_key == key
        )
    )
    return result.scalar_one_or_none()


async def _hold_by_key(db: AsyncSession, account_id: uuid.UUID, key: str) -> CreditHold | None:
    result = await db.execute(
        select(CreditHold).where(CreditHold.account_id == account_id, CreditHold.idempotency_key == key)
    )
    return result.scalar_one_or_none()


async def get_hold_for_request(db: AsyncSession, request_id: uuid.UUID) -> CreditHold | None:
    result = await db.execute(select(CreditHold).where(CreditHold.request_id == request_id))
    return result.scalar_one_or_none()


async def _append_entry(
    db: AsyncSession,
    account_id: uuid.UUID,
    direction: str,
    amount: int,
    transaction_type: str,
    reference_type: str | None,
    reference_id,
    description: str | None,
    idempotency_key: str,
    actor_id: uuid.UUID | None,
) -> tuple[LedgerEntry, bool]:
    """Insert an entry. Returns (entry, created); on a key conflict the existing entry comes back."""
    entry = LedgerEntry(
        account_id=account_id,
        entry_type=direction,
        amount=amount,
        transaction_type=transaction_type,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        description=description,
        idempotency_key=idempotency_key,
        performed_by_id=actor_id,
    )
    if await insert_or_conflict(db, entry):
        return entry, True
    existing = await get_entry_by_key(db, account_id, idempotency_key)
    if existing is None:
        raise ConstraintViolation("ledger_entries", idempotency_key)
    return existing, False


async def place_hold(
    db: AsyncSession,
    account_id: uuid.UUID,
    request_id: uuid.UUID,
    amount: int,
    idempotency_key: str,
    actor_id: uuid.UUID | None = None,
) -> CreditHold:
    """
    Reserve ``amount`` for ``request_id``. Returns the hold.

    A retry with the same idempotency key returns the original hold without
    reserving twice. A second hold for the same request under a different
    key is a ConstraintViolation.
    """
    _check_amount(amount)
    _check_key(idempotency_key)
    account = await _lock_account(db, account_id)

    existing = await _hold_by_key(db, account.id, idempotency_key)
    if existing is not None:
        if existing.request_id != request_id:
            raise ConstraintViolation("credit_holds.idempotency_key", idempotency_key)
        return existing

    request = await db.get(ApprovalRequest, request_id)
    if request is None:
        raise NotFound("Request not found")
    if request.company_id != account.company_id:
        raise InvalidInput("Request belongs to a different company")
    if await get_hold_for_request(db, request_id) is not None:
        raise ConstraintViolation("credit_holds.request_id", str(request_id))

    snapshot = await _snapshot(db, account)
    if amount > snapshot.available:
        logger.info(
            "Hold refused on account %s: amount=%d available=%d", account.id, amount, snapshot.available
        )
        raise InsufficientFunds(snapshot.available, amount)

    hold = CreditHold(
        account_id=account.id,
        request_id=request_id,
        amount=amount,
        status="active",
        idempotency_key=idempotency_key,
        created_by_id=actor_id,
    )
    if not await insert_or_conflict(db, hold):
        existing = await _hold_by_key(db, account.id, idempotency_key)
        if existing is None:
            raise ConstraintViolation("credit_holds.request_id", str(request_id))
        return existing
    await _assert_solvent(db, account, "place_hold")
    logger.info("Hold %s placed on account %s: amount=%d", hold.id, account.id, amount)
    return hold


async def _lock_hold(db: AsyncSession, hold_id: uuid.UUID) -> CreditHold:
    hold = await get_for_update(db, CreditHold, hold_id)
    if hold is None:
        raise NotFound("Hold not found")
    return hold


async def release_hold(
    db: AsyncSession, hold_id: uuid.UUID, actor_id: uuid.UUID | None = None
) -> ReleaseResult:
    """Release an active hold. Already released or converted holds are a no-op."""
    hold = await _lock_hold(db, hold_id)
    if hold.status != "active":
        return ReleaseResult(hold=hold, already_terminal=True)
    await _lock_account(db, hold.account_id)
    hold.status = "released"
    hold.released_at = utcnow()
    await db.flush()
    logger.info("Hold %s released on account %s: amount=%d", hold.id, hold.account_id, hold.amount)
    return ReleaseResult(hold=hold, already_terminal=False)


async def convert_hold(
    db: AsyncSession,
    hold_id: uuid.UUID,
    actual_amount: int,
    reference_type: str | None,
    reference_id,
    idempotency_key: str,
    actor_id: uuid.UUID | None = None,
    description: str | None = None,
) -> LedgerEntry:
    """
    Turn an active hold into a debit of ``actual_amount`` (0 < actual <= hold.amount).

    The unused part of the reservation returns to available because the hold
    stops counting once converted. A retry with the same key returns the
    original debit.
    """
    _check_amount(actual_amount, "actual_amount")
    _check_key(idempotency_key)
    hold = await _lock_hold(db, hold_id)
    account = await _lock_account(db, hold.account_id)

    existing = await get_entry_by_key(db, account.id, idempotency_key)
    if existing is not None:
        return existing
    if hold.status == "converted":
        raise HoldAlreadyConverted()
    if hold.status != "active":
        raise HoldNotActive()
    if actual_amount > hold.amount:
        raise AmountExceedsHold()

    entry, _ = await _append_entry(
        db,
        account.id,
        "debit",
        actual_amount,
        "hold_conversion",
        reference_type or "request",
        reference_id if reference_id is not None else hold.request_id,
        description,
        idempotency_key,
        actor_id,
    )
    hold.status = "converted"
    hold.converted_at = utcnow()
    await db.flush()
    await _assert_solvent(db, account, "convert_hold")
    logger.info(
        "Hold %s converted on account %s: debit=%d of %d", hold.id, account.id, actual_amount, hold.amount
    )
    return entry


async def direct_debit(
    db: AsyncSession,
    account_id: uuid.UUID,
    amount: int,
    idempotency_key: str,
    transaction_type: str = "spend",
    reference_type: str | None = None,
    reference_id=None,
    description: str | None = None,
    actor_id: uuid.UUID | None = None,
) -> LedgerEntry:
    """Debit without a hold. Requires available >= amount. Key conflicts return the existing entry."""
    _check_amount(amount)
    _check_key(idempotency_key)
    if transaction_type not in DEBIT_TYPES:
        raise InvalidInput(f"transaction_type must be one of {', '.join(DEBIT_TYPES)}")
    account = await _lock_account(db, account_id)

    existing = await get_entry_by_key(db, account.id, idempotency_key)
    if existing is not None:
        return existing
    snapshot = await _snapshot(db, account)
    if amount > snapshot.available:
        logger.info(
            "Debit refused on account %s: amount=%d available=%d", account.id, amount, snapshot.available
        )
        raise InsufficientFunds(snapshot.available, amount)

    entry, created = await _append_entry(
        db,
        account.id,
        "debit",
        amount,
        transaction_type,
        reference_type,
        reference_id,
        description,
        idempotency_key,
        actor_id,
    )
    if created:
        await _assert_solvent(db, account, "direct_debit")
        logger.info("Debit on account %s: amount=%d type=%s", account.id, amount, transaction_type)
    return entry


async def credit(
    db: AsyncSession,
    account_id: uuid.UUID,
    amount: int,
    idempotency_key: str,
    transaction_type: str = "adjustment",
    reference_type: str | None = None,
    reference_id=None,
    description: str | None = None,
    actor_id: uuid.UUID | None = None,
) -> LedgerEntry:
    """Add credits. Never fails for balance reasons. The subscription baseline may not be written here."""
    _check_amount(amount)
    _check_key(idempotency_key)
    if transaction_type not in CREDIT_TYPES:
        raise InvalidInput(f"transaction_type must be one of {', '.join(CREDIT_TYPES)}")
    if transaction_type == "allocation" and reference_type == BASELINE_REFERENCE:
        raise InvalidInput("Subscription baseline lives on the account, not in the ledger")
    account = await _lock_account(db, account_id)

    entry, created = await _append_entry(
        db,
        account.id,
        "credit",
        amount,
        transaction_type,
        reference_type,
        reference_id,
        description,
        idempotency_key,
        actor_id,
    )
    if created:
        logger.info("Credit on account %s: amount=%d type=%s", account.id, amount, transaction_type)
    return entry


async def list_entries(
    db: AsyncSession,
    account_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
    transaction_type: str | None = None,
) -> tuple[list[LedgerEntry], int]:
    """Newest first, with the total count for paging."""
    conditions = [LedgerEntry.account_id == account_id]
    if transaction_type:
        conditions.append(LedgerEntry.transaction_type == transaction_type)
    total = (await db.execute(select(func.count()).select_from(LedgerEntry).where(*conditions))).scalar_one()
    result = await db.execute(
        select(LedgerEntry)
        .where(*conditions)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total)


async def list_active_holds(db: AsyncSession, account_id: uuid.UUID) -> list[CreditHold]:
    result = await db.execute(
        select(CreditHold)
        .where(CreditHold.account_id == account_id, CreditHold.status == "active")
        .order_by(CreditHold.created_at.desc())
    )
    return list(result.scalars().all())
