# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Approval state machine.

draft -> pending -> approved -> fulfilled, with pending -> denied / cancelled /
expired and draft -> cancelled. Every transition takes the request row lock
first, then the hold, then the account (through the ledger), and writes its
audit event in the same transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.config import settings
from abi_server.database import get_for_update, run_in_transaction
from abi_server.errors import (
    CoreError,
    InvalidInput,
    InvalidTransition,
    InvariantViolation,
    NotFound,
    Unauthorized,
)
from abi_server.models import ApprovalEvent, ApprovalRequest, ApprovalRule, CreditHold, LedgerEntry, Team
from abi_server.models.approval import REQUEST_TYPES, TERMINAL_STATUSES
from abi_server.models.timestamp import as_utc, utcnow
from abi_server.services import ledger
from abi_server.services.organization import ROLE_RANK, find_role_holder, get_membership

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "draft": ("pending", "cancelled"),
    "pending": ("approved", "denied", "cancelled", "expired"),
    "approved": ("fulfilled",),
    "denied": (),
    "cancelled": (),
    "expired": (),
    "fulfilled": (),
}
ACTIONS = ("submit", "approve", "deny", "cancel", "fulfill", "escalate")
# [min, max) brackets used when a company has no active rules
DEFAULT_RULES = (
    (0, 500, "auto", None),
    (500, 2000, "approver", 48),
    (2000, None, "admin", 24),
)
ESCALATED_EXPIRY_HOURS = 24


@dataclass(frozen=True)
class RoutingRule:
    level: str
    escalation_hours: int | None


@dataclass
class TransitionResult:
    request: ApprovalRequest
    hold: CreditHold | None = None
    entry: LedgerEntry | None = None
    replayed: bool = False

    @property
    def status(self) -> str:
        return self.request.status


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in TRANSITIONS.get(from_status, ())


def submit_key(request_id: uuid.UUID) -> str:
    return f"request:submit:{request_id}"


def fulfill_key(request_id: uuid.UUID) -> str:
    return f"request:fulfill:{request_id}"


async def resolve_rule(db: AsyncSession, company_id: uuid.UUID, credits: int) -> RoutingRule:
    """Highest-priority active company rule whose [min, max] brackets ``credits``, else the defaults."""
    result = await db.execute(
        select(ApprovalRule)
        .where(
            ApprovalRule.company_id == company_id,
            ApprovalRule.is_active.is_(True),
            ApprovalRule.min_credits <= credits,
            or_(ApprovalRule.max_credits.is_(None), ApprovalRule.max_credits >= credits),
        )
        .order_by(ApprovalRule.priority.desc(), ApprovalRule.min_credits.desc())
        .limit(1)
    )
    rule = result.scalar_one_or_none()
    if rule is not None:
        return RoutingRule(level=rule.approver_role, escalation_hours=rule.escalation_hours)
    for low, high, level, hours in DEFAULT_RULES:
        if credits >= low and (high is None or credits < high):
            return RoutingRule(level=level, escalation_hours=hours)
    return RoutingRule(level="admin", escalation_hours=24)


async def find_approver(db: AsyncSession, request: ApprovalRequest, level: str) -> uuid.UUID | None:
    """Pick the approver for ``level``. Never the requester.

    approver: a team approver, else a team admin/owner, else any company admin/owner.
    admin: a team admin/owner, else any company admin/owner.
    """
    if level == "auto":
        return None
    candidates: list[tuple[tuple[str, ...], uuid.UUID | None]] = []
    if level == "approver":
        candidates.append((("approver",), request.team_id))
    if request.team_id is not None:
        candidates.append((("admin", "owner"), request.team_id))
    candidates.append((("admin", "owner"), None))
    for roles, team_id in candidates:
        user_id = await find_role_holder(
            db, request.company_id, roles, team_id=team_id, exclude_user_id=request.requester_id
        )
        if user_id is not None:
            return user_id
    return None


def record_event(
    db: AsyncSession,
    request: ApprovalRequest,
    event_type: str,
    actor_id: uuid.UUID | None,
    from_status: str | None,
    to_status: str | None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> ApprovalEvent:
    event = ApprovalEvent(
        request_id=request.id,
        event_type=event_type,
        performed_by_id=actor_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        metadata_=metadata,
    )
    db.add(event)
    return event


async def _lock_request(db: AsyncSession, request_id: uuid.UUID) -> ApprovalRequest:
    request = await get_for_update(db, ApprovalRequest, request_id)
    if request is None:
        raise NotFound("Request not found")
    return request


async def _actor_rank(db: AsyncSession, actor_id: uuid.UUID, company_id: uuid.UUID) -> int:
    membership = await get_membership(db, actor_id, company_id)
    return membership.rank if membership else -1


async def _require_hold(db: AsyncSession, request: ApprovalRequest) -> CreditHold:
    hold = await ledger.get_hold_for_request(db, request.id)
    if hold is None:
        logger.critical("Request %s is %s without a credit hold", request.id, request.status)
        raise InvariantViolation()
    return hold


def _refuse(request: ApprovalRequest, action: str) -> InvalidTransition:
    return InvalidTransition(f"Cannot {action} a request that is {request.status}")


async def create_request(
    db: AsyncSession,
    requester_id: uuid.UUID,
    company_id: uuid.UUID,
    request_type: str,
    title: str,
    estimated_credits: int,
    team_id: uuid.UUID | None = None,
    description: str | None = None,
    context: dict[str, Any] | None = None,
) -> ApprovalRequest:
    """Create a draft. The requester must belong to the company."""
    if request_type not in REQUEST_TYPES:
        raise InvalidInput("Invalid request type")
    if not title or not title.strip():
        raise InvalidInput("title is required")
    if isinstance(estimated_credits, bool) or not isinstance(estimated_credits, int) or estimated_credits <= 0:
        raise InvalidInput("estimated_credits must be a positive integer")

    membership = await get_membership(db, requester_id, company_id)
    if membership is None:
        raise Unauthorized("Not a member of this company")
    if team_id is None:
        team_id = membership.team_id
    else:
        team = await db.get(Team, team_id)
        if team is None or team.company_id != company_id:
            raise InvalidInput("Team does not belong to this company")

    request = ApprovalRequest(
        company_id=company_id,
        team_id=team_id,
        requester_id=requester_id,
        request_type=request_type,
        status="draft",
        title=title.strip(),
        description=description,
        context=context,
        estimated_credits=estimated_credits,
    )
    db.add(request)
    await db.flush()
    record_event(db, request, "created", requester_id, None, "draft")
    await db.flush()
    logger.info("Request %s created by %s (credits=%d)", request.id, requester_id, estimated_credits)
    return request


async def get_request(
    db: AsyncSession, request_id: uuid.UUID, viewer_id: uuid.UUID
) -> tuple[ApprovalRequest, list[ApprovalEvent], CreditHold | None]:
    """Request detail with its events, newest first."""
    request = await db.get(ApprovalRequest, request_id)
    if request is None:
        raise NotFound("Request not found")
    if viewer_id not in (request.requester_id, request.current_approver_id, request.decided_by_id):
        if await _actor_rank(db, viewer_id, request.company_id) < ROLE_RANK["approver"]:
            raise Unauthorized()
    result = await db.execute(
        select(ApprovalEvent)
        .where(ApprovalEvent.request_id == request.id)
        .order_by(ApprovalEvent.created_at.desc(), ApprovalEvent.id)
    )
    hold = await ledger.get_hold_for_request(db, request.id)
    return request, list(result.scalars().all()), hold


async def submit(db: AsyncSession, request_id: uuid.UUID, actor_id: uuid.UUID) -> TransitionResult:
    """
    draft -> pending (or straight to approved for auto-level requests).

    The hold is placed with key request:submit:<id>. A retry after success
    returns the same hold and writes nothing. Insufficient funds fail the
    whole transition and the request stays a draft.
    """
    request = await _lock_request(db, request_id)
    if actor_id != request.requester_id:
        raise Unauthorized("Only the requester can submit")
    key = submit_key(request.id)
    if request.status != "draft":
        hold = await ledger.get_hold_for_request(db, request.id)
        if hold is not None and hold.idempotency_key == key:
            return TransitionResult(request=request, hold=hold, replayed=True)
        raise _refuse(request, "submit")

    account = await ledger.get_account_for_company(db, request.company_id)
    rule = await resolve_rule(db, request.company_id, request.estimated_credits)
    hold = await ledger.place_hold(db, account.id, request.id, request.estimated_credits, key, actor_id)

    now = utcnow()
    request.status = "pending"
    request.submitted_at = now
    request.approval_level = rule.level
    request.current_approver_id = await find_approver(db, request, rule.level)
    request.expires_at = now + timedelta(hours=rule.escalation_hours) if rule.escalation_hours else None
    record_event(
        db,
        request,
        "submitted",
        actor_id,
        "draft",
        "pending",
        metadata={
            "approvalLevel": rule.level,
            "estimatedCredits": request.estimated_credits,
            "approverId": str(request.current_approver_id) if request.current_approver_id else None,
        },
    )
    if rule.level == "auto":
        request.status = "approved"
        request.decided_at = now
        request.expires_at = None
        record_event(
            db, request, "auto_approved", None, "pending", "approved", reason="Auto-approved (under threshold)"
        )
    await db.flush()
    logger.info("Request %s submitted: level=%s status=%s", request.id, rule.level, request.status)
    return TransitionResult(request=request, hold=hold)


async def _check_decider(db: AsyncSession, request: ApprovalRequest, actor_id: uuid.UUID) -> None:
    """The current approver, or anyone ranked above the request's approval level. Never the requester."""
    if actor_id == request.requester_id:
        raise Unauthorized("Requesters cannot decide their own requests")
    if actor_id == request.current_approver_id:
        return
    required = ROLE_RANK.get(request.approval_level or "admin", ROLE_RANK["admin"])
    rank = await _actor_rank(db, actor_id, request.company_id)
    if rank > required or (request.current_approver_id is None and rank >= required):
        return
    raise Unauthorized("Not an approver for this request")


def _check_not_lapsed(request: ApprovalRequest, now: datetime) -> None:
    expires_at = as_utc(request.expires_at)
    if expires_at is not None and expires_at <= now:
        raise InvalidTransition("Request has expired")


async def approve(
    db: AsyncSession, request_id: uuid.UUID, actor_id: uuid.UUID, reason: str | None = None
) -> TransitionResult:
    """pending -> approved. The hold stays active until fulfillment."""
    request = await _lock_request(db, request_id)
    if request.status != "pending":
        raise _refuse(request, "approve")
    await _check_decider(db, request, actor_id)
    now = utcnow()
    _check_not_lapsed(request, now)
    hold = await _require_hold(db, request)

    request.status = "approved"
    request.decided_by_id = actor_id
    request.decided_at = now
    request.decision_reason = reason
    request.expires_at = None
    record_event(db, request, "approved", actor_id, "pending", "approved", reason=reason)
    await db.flush()
    logger.info("Request %s approved by %s", request.id, actor_id)
    return TransitionResult(request=request, hold=hold)


async def deny(
    db: AsyncSession, request_id: uuid.UUID, actor_id: uuid.UUID, reason: str | None = None
) -> TransitionResult:
    """pending -> denied, releasing the hold in the same transaction."""
    request = await _lock_request(db, request_id)
    if request.status != "pending":
        raise _refuse(request, "deny")
    await _check_decider(db, request, actor_id)
    hold = await _require_hold(db, request)
    await ledger.release_hold(db, hold.id, actor_id)

    now = utcnow()
    request.status = "denied"
    request.decided_by_id = actor_id
    request.decided_at = now
    request.decision_reason = reason
    request.expires_at = None
    record_event(db, request, "denied", actor_id, "pending", "denied", reason=reason)
    await db.flush()
    logger.info("Request %s denied by %s", request.id, actor_id)
    return TransitionResult(request=request, hold=hold)


async def cancel(
    db: AsyncSession, request_id: uuid.UUID, actor_id: uuid.UUID, reason: str | None = None
) -> TransitionResult:
    """(draft | pending) -> cancelled, by the requester or a company admin/owner."""
    request = await _lock_request(db, request_id)
    if not can_transition(request.status, "cancelled"):
        raise _refuse(request, "cancel")
    if actor_id != request.requester_id:
        if await _actor_rank(db, actor_id, request.company_id) < ROLE_RANK["admin"]:
            raise Unauthorized("Only the requester or an admin can cancel")
    hold = await ledger.get_hold_for_request(db, request.id)
    if request.status == "pending" and hold is None:
        logger.critical("Request %s is pending without a credit hold", request.id)
        raise InvariantViolation()
    if hold is not None:
        await ledger.release_hold(db, hold.id, actor_id)

    from_status = request.status
    request.status = "cancelled"
    request.expires_at = None
    record_event(db, request, "cancelled", actor_id, from_status, "cancelled", reason=reason)
    await db.flush()
    logger.info("Request %s cancelled by %s", request.id, actor_id)
    return TransitionResult(request=request, hold=hold)


async def fulfill(
    db: AsyncSession,
    request_id: uuid.UUID,
    actor_id: uuid.UUID,
    actual_credits: int,
    reference_type: str | None = None,
    reference_id: str | None = None,
) -> TransitionResult:
    """
    approved -> fulfilled, converting the hold into a debit of ``actual_credits``.

    Allowed for whoever approved it, or a company approver/admin/owner. A
    retry after success returns the original debit and writes nothing.
    """
    request = await _lock_request(db, request_id)
    key = fulfill_key(request.id)
    if request.status == "fulfilled":
        hold = await _require_hold(db, request)
        entry = await ledger.get_entry_by_key(db, hold.account_id, key)
        if entry is not None and entry.amount == actual_credits:
            return TransitionResult(request=request, hold=hold, entry=entry, replayed=True)
        raise _refuse(request, "fulfill")
    if request.status != "approved":
        raise _refuse(request, "fulfill")
    if actor_id != request.decided_by_id:
        if await _actor_rank(db, actor_id, request.company_id) < ROLE_RANK["approver"]:
            raise Unauthorized("Not allowed to fulfill this request")

    hold = await _require_hold(db, request)
    entry = await ledger.convert_hold(
        db,
        hold.id,
        actual_credits,
        reference_type or "request",
        reference_id or str(request.id),
        key,
        actor_id,
        description=f"Fulfilled: {request.title}",
    )
    request.status = "fulfilled"
    request.actual_credits = actual_credits
    request.fulfilled_at = utcnow()
    record_event(
        db,
        request,
        "fulfilled",
        actor_id,
        "approved",
        "fulfilled",
        metadata={"actualCredits": actual_credits, "estimatedCredits": request.estimated_credits},
    )
    await db.flush()
    logger.info("Request %s fulfilled: %d of %d credits", request.id, actual_credits, request.estimated_credits)
    return TransitionResult(request=request, hold=hold, entry=entry)


async def _request_of_hold(db: AsyncSession, hold_id: uuid.UUID) -> ApprovalRequest:
    hold = await db.get(CreditHold, hold_id)
    if hold is None:
        raise NotFound("Hold not found")
    return await _lock_request(db, hold.request_id)


async def release_request_hold(
    db: AsyncSession, hold_id: uuid.UUID, actor_id: uuid.UUID | None = None
) -> ledger.ReleaseResult:
    """Release a hold directly. Only allowed once its request is terminal."""
    request = await _request_of_hold(db, hold_id)
    if request.status not in TERMINAL_STATUSES:
        raise InvalidTransition(f"Cannot release the hold of a request that is {request.status}")
    return await ledger.release_hold(db, hold_id, actor_id)


async def convert_request_hold(
    db: AsyncSession,
    hold_id: uuid.UUID,
    actor_id: uuid.UUID,
    actual_amount: int,
    reference_type: str | None = None,
    reference_id: str | None = None,
) -> TransitionResult:
    """Convert a hold by fulfilling its approved request."""
    request = await _request_of_hold(db, hold_id)
    if request.status not in ("approved", "fulfilled"):
        raise InvalidTransition(f"Cannot convert the hold of a request that is {request.status}")
    return await fulfill(db, request.id, actor_id, actual_amount, reference_type, reference_id)


async def escalate(
    db: AsyncSession,
    request_id: uuid.UUID,
    actor_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """
    Move a pending approver-level request to admin level: reassign the
    approver, bump escalation_count, give it a fresh 24h deadline.

    ``actor_id`` None is the background sweep.
    """
    request = await _lock_request(db, request_id)
    if request.status != "pending":
        raise _refuse(request, "escalate")
    if request.approval_level != "approver":
        raise InvalidTransition("Request is already at the highest approval level")
    if actor_id is not None and actor_id != request.current_approver_id:
        if await _actor_rank(db, actor_id, request.company_id) < ROLE_RANK["admin"]:
            raise Unauthorized("Not allowed to escalate this request")

    now = now or utcnow()
    previous = request.current_approver_id
    request.approval_level = "admin"
    request.current_approver_id = await find_approver(db, request, "admin")
    request.escalation_count += 1
    request.expires_at = now + timedelta(hours=ESCALATED_EXPIRY_HOURS)
    record_event(
        db,
        request,
        "escalated",
        actor_id,
        "pending",
        "pending",
        reason="Escalated due to approaching deadline" if actor_id is None else None,
        metadata={
            "escalatedFrom": "approver",
            "escalatedTo": "admin",
            "previousApprover": str(previous) if previous else None,
            "newApprover": str(request.current_approver_id) if request.current_approver_id else None,
        },
    )
    await db.flush()
    logger.info("Request %s escalated (count=%d)", request.id, request.escalation_count)
    return TransitionResult(request=request)


async def expire(db: AsyncSession, request_id: uuid.UUID, now: datetime | None = None) -> TransitionResult:
    """pending -> expired once expires_at has passed, releasing the hold. System action."""
    request = await _lock_request(db, request_id)
    now = now or utcnow()
    expires_at = as_utc(request.expires_at)
    if request.status != "pending" or expires_at is None or expires_at > now:
        raise _refuse(request, "expire")
    hold = await _require_hold(db, request)
    await ledger.release_hold(db, hold.id)
    request.status = "expired"
    record_event(
        db, request, "expired", None, "pending", "expired", reason="Request expired waiting for approval"
    )
    await db.flush()
    logger.info("Request %s expired", request.id)
    return TransitionResult(request=request, hold=hold)


async def transition(
    db: AsyncSession,
    request_id: uuid.UUID,
    action: str,
    actor_id: uuid.UUID,
    payload: dict[str, Any] | None = None,
) -> TransitionResult:
    """Dispatch one named action. Unknown actions are InvalidInput."""
    payload = payload or {}
    if action == "submit":
        return await submit(db, request_id, actor_id)
    if action == "approve":
        return await approve(db, request_id, actor_id, payload.get("reason"))
    if action == "deny":
        return await deny(db, request_id, actor_id, payload.get("reason"))
    if action == "cancel":
        return await cancel(db, request_id, actor_id, payload.get("reason"))
    if action == "fulfill":
        actual = payload.get("actual_credits")
        if actual is None:
            raise InvalidInput("actual_credits is required")
        return await fulfill(
            db,
            request_id,
            actor_id,
            actual,
            payload.get("reference_type"),
            payload.get("reference_id"),
        )
    if action == "escalate":
        return await escalate(db, request_id, actor_id)
    raise InvalidInput(f"Unknown action: {action}")


# Background sweep


async def _due_for_escalation(db: AsyncSession, now: datetime) -> list[uuid.UUID]:
    window = now + timedelta(hours=settings.escalation_window_hours)
    result = await db.execute(
        select(ApprovalRequest.id).where(
            ApprovalRequest.status == "pending",
            ApprovalRequest.approval_level == "approver",
            ApprovalRequest.expires_at <= window,
            ApprovalRequest.expires_at > now,
        )
    )
    return list(result.scalars().all())


async def _due_for_expiry(db: AsyncSession, now: datetime) -> list[uuid.UUID]:
    result = await db.execute(
        select(ApprovalRequest.id).where(
            ApprovalRequest.status == "pending",
            ApprovalRequest.expires_at <= now,
        )
    )
    return list(result.scalars().all())


async def process_escalations(now: datetime | None = None) -> list[uuid.UUID]:
    """Escalate approver-level requests nearing their deadline. One transaction per request."""
    now = now or utcnow()
    escalated = []
    for request_id in await run_in_transaction(lambda db: _due_for_escalation(db, now)):
        try:
            await run_in_transaction(lambda db, rid=request_id: escalate(db, rid, None, now))
        except CoreError as e:
            logger.warning("Escalation of request %s skipped: %s", request_id, e.detail)
            continue
        escalated.append(request_id)
    return escalated


async def process_expirations(now: datetime | None = None) -> list[uuid.UUID]:
    """Expire pending requests past their deadline. One transaction per request."""
    now = now or utcnow()
    expired = []
    for request_id in await run_in_transaction(lambda db: _due_for_expiry(db, now)):
        try:
            await run_in_transaction(lambda db, rid=request_id: expire(db, rid, now))
        except CoreError as e:
            logger.warning("Expiry of request %s skipped: %s", request_id, e.detail)
            continue
        expired.append(request_id)
    return expired


async def run_sweep(now: datetime | None = None) -> dict[str, int]:
    """Expire first, then escalate what is still pending."""
    expired = await process_expirations(now)
    escalated = await process_escalations(now)
    if expired or escalated:
        logger.info("Approval sweep: expired=%d escalated=%d", len(expired), len(escalated))
    return {"expired": len(expired), "escalated": len(escalated)}
