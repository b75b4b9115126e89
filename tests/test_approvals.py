# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Approval workflow: routing, transitions, holds, and the expiry/escalation sweep."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from abi_server.errors import AmountExceedsHold, InsufficientFunds, InvalidInput, InvalidTransition, Unauthorized
from abi_server.models import ApprovalEvent, ApprovalRule, CreditHold
from abi_server.models.timestamp import as_utc, utcnow
from abi_server.services import approvals, ledger

pytestmark = pytest.mark.anyio


async def _create(db, org, requester, credits, title="Quarterly deep dive"):
    request = await approvals.create_request(
        db, requester.id, org.company.id, "analyst_qa", title, credits
    )
    await db.commit()
    return request


async def _event_types(db, request):
    result = await db.execute(select(ApprovalEvent.event_type).where(ApprovalEvent.request_id == request.id))
    return sorted(result.scalars().all())


async def test_create_request_validates_input(db, make):
    org = await make.org()
    requester = await make.member(org)
    outsider = await make.user()
    with pytest.raises(InvalidInput):
        await approvals.create_request(db, requester.id, org.company.id, "coffee", "Title", 10)
    with pytest.raises(InvalidInput):
        await approvals.create_request(db, requester.id, org.company.id, "analyst_qa", "  ", 10)
    with pytest.raises(InvalidInput):
        await approvals.create_request(db, requester.id, org.company.id, "analyst_qa", "Title", 0)
    with pytest.raises(Unauthorized):
        await approvals.create_request(db, outsider.id, org.company.id, "analyst_qa", "Title", 10)


async def test_small_request_is_auto_approved(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    request = await _create(db, org, requester, 100)
    assert request.status == "draft"
    assert request.team_id == org.team.id

    result = await approvals.submit(db, request.id, requester.id)
    await db.commit()
    assert result.status == "approved"
    assert request.approval_level == "auto"
    assert request.current_approver_id is None
    assert request.expires_at is None
    assert result.hold.status == "active"
    assert result.hold.idempotency_key == approvals.submit_key(request.id)
    assert (await ledger.balance(db, org.account.id)).available == 900
    assert await _event_types(db, request) == ["auto_approved", "created", "submitted"]


async def test_mid_request_routes_to_team_approver(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    approver = await make.member(org, role="approver")
    await make.member(org, role="admin")
    request = await _create(db, org, requester, 600)

    before = utcnow()
    result = await approvals.submit(db, request.id, requester.id)
    assert result.status == "pending"
    assert request.approval_level == "approver"
    assert request.current_approver_id == approver.id
    expires_at = as_utc(request.expires_at)
    assert before + timedelta(hours=47) < expires_at <= utcnow() + timedelta(hours=48)


async def test_large_request_routes_to_admin(db, make):
    org = await make.org(credits=5000)
    requester = await make.member(org)
    await make.member(org, role="approver")
    admin = await make.member(org, role="admin")
    request = await _create(db, org, requester, 2500)

    await approvals.submit(db, request.id, requester.id)
    assert request.approval_level == "admin"
    assert request.current_approver_id == admin.id


async def test_approver_is_never_the_requester(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org, role="approver")
    other = await make.member(org, role="owner")
    request = await _create(db, org, requester, 600)
    await approvals.submit(db, request.id, requester.id)
    assert request.current_approver_id == other.id


async def test_insufficient_funds_keeps_draft(db, make):
    org = await make.org(credits=100)
    requester = await make.member(org)
    request = await _create(db, org, requester, 600)

    with pytest.raises(InsufficientFunds):
        await approvals.submit(db, request.id, requester.id)
    await db.rollback()

    await db.refresh(request)
    assert request.status == "draft"
    holds = (await db.execute(select(CreditHold).where(CreditHold.request_id == request.id))).scalars().all()
    assert holds == []


async def test_only_requester_submits(db, make):
    org = await make.org()
    requester = await make.member(org)
    admin = await make.member(org, role="admin")
    request = await _create(db, org, requester, 100)
    with pytest.raises(Unauthorized):
        await approvals.submit(db, request.id, admin.id)


async def test_submit_replay_is_a_no_op(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    await make.member(org, role="approver")
    request = await _create(db, org, requester, 600)
    first = await approvals.submit(db, request.id, requester.id)
    await db.commit()

    again = await approvals.submit(db, request.id, requester.id)
    assert again.replayed
    assert again.hold.id == first.hold.id
    assert (await ledger.balance(db, org.account.id)).held == 600
    assert await _event_types(db, request) == ["created", "submitted"]


async def test_requester_cannot_approve_own_request(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org, role="admin")
    await make.member(org, role="approver")
    request = await _create(db, org, requester, 600)
    await approvals.submit(db, request.id, requester.id)
    with pytest.raises(Unauthorized):
        await approvals.approve(db, request.id, requester.id)


async def test_plain_member_cannot_decide(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    await make.member(org, role="approver")
    bystander = await make.member(org)
    request = await _create(db, org, requester, 600)
    await approvals.submit(db, request.id, requester.id)
    with pytest.raises(Unauthorized):
        await approvals.approve(db, request.id, bystander.id)
    with pytest.raises(Unauthorized):
        await approvals.deny(db, request.id, bystander.id)


async def test_approve_then_fulfill_partially(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    approver = await make.member(org, role="approver")
    request = await _create(db, org, requester, 600)
    await approvals.submit(db, request.id, requester.id)

    result = await approvals.approve(db, request.id, approver.id, "Looks good")
    assert result.status == "approved"
    assert request.decided_by_id == approver.id
    assert request.decision_reason == "Looks good"
    assert result.hold.status == "active"
    assert (await ledger.balance(db, org.account.id)).held == 600

    done = await approvals.fulfill(db, request.id, approver.id, 450)
    await db.commit()
    assert done.status == "fulfilled"
    assert request.actual_credits == 450
    assert done.entry.amount == 450
    assert done.hold.status == "converted"
    snapshot = await ledger.balance(db, org.account.id)
    assert snapshot.held == 0
    assert snapshot.available == 550

    replay = await approvals.fulfill(db, request.id, approver.id, 450)
    assert replay.replayed
    assert replay.entry.id == done.entry.id
    with pytest.raises(InvalidTransition):
        await approvals.fulfill(db, request.id, approver.id, 300)


async def test_fulfill_more_than_estimated_is_refused(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    request = await _create(db, org, requester, 100)
    await approvals.submit(db, request.id, requester.id)
    admin = await make.member(org, role="admin")
    with pytest.raises(AmountExceedsHold):
        await approvals.fulfill(db, request.id, admin.id, 101)


async def test_member_cannot_fulfill(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    request = await _create(db, org, requester, 100)
    await approvals.submit(db, request.id, requester.id)
    with pytest.raises(Unauthorized):
        await approvals.fulfill(db, request.id, requester.id, 100)


async def test_deny_releases_hold(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    approver = await make.member(org, role="approver")
    request = await _create(db, org, requester, 600)
    await approvals.submit(db, request.id, requester.id)

    result = await approvals.deny(db, request.id, approver.id, "Out of scope")
    await db.commit()
    assert result.status == "denied"
    assert result.hold.status == "released"
    assert (await ledger.balance(db, org.account.id)).available == 1000
    with pytest.raises(InvalidTransition):
        await approvals.approve(db, request.id, approver.id)


async def test_cancel_draft_and_pending(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    await make.member(org, role="approver")
    draft = await _create(db, org, requester, 100, title="Draft")
    result = await approvals.cancel(db, draft.id, requester.id)
    assert result.status == "cancelled"
    assert result.hold is None

    pending = await _create(db, org, requester, 600, title="Pending")
    await approvals.submit(db, pending.id, requester.id)
    result = await approvals.cancel(db, pending.id, requester.id, "No longer needed")
    assert result.status == "cancelled"
    assert result.hold.status == "released"
    assert (await ledger.balance(db, org.account.id)).available == 1000


async def test_cancel_approved_is_invalid(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    request = await _create(db, org, requester, 100)
    await approvals.submit(db, request.id, requester.id)
    with pytest.raises(InvalidTransition):
        await approvals.cancel(db, request.id, requester.id)


async def test_only_requester_or_admin_cancels(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    approver = await make.member(org, role="approver")
    admin = await make.member(org, role="admin")
    request = await _create(db, org, requester, 100)
    with pytest.raises(Unauthorized):
        await approvals.cancel(db, request.id, approver.id)
    result = await approvals.cancel(db, request.id, admin.id)
    assert result.status == "cancelled"


async def test_lapsed_request_cannot_be_approved(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    approver = await make.member(org, role="approver")
    request = await _create(db, org, requester, 600)
    await approvals.submit(db, request.id, requester.id)
    request.expires_at = utcnow() - timedelta(minutes=1)
    await db.commit()
    with pytest.raises(InvalidTransition):
        await approvals.approve(db, request.id, approver.id)


async def test_rule_priority(db, make):
    org = await make.org(credits=10000)
    db.add_all(
        [
            ApprovalRule(company_id=org.company.id, min_credits=0, max_credits=None, approver_role="admin", priority=0),
            ApprovalRule(
                company_id=org.company.id,
                min_credits=0,
                max_credits=1000,
                approver_role="auto",
                priority=10,
            ),
            ApprovalRule(
                company_id=org.company.id,
                min_credits=0,
                max_credits=5000,
                approver_role="approver",
                escalation_hours=12,
                priority=5,
                is_active=False,
            ),
        ]
    )
    await db.commit()

    assert (await approvals.resolve_rule(db, org.company.id, 800)).level == "auto"
    assert (await approvals.resolve_rule(db, org.company.id, 3000)).level == "admin"


async def test_default_rules(db, make):
    org = await make.org()
    assert await approvals.resolve_rule(db, org.company.id, 499) == approvals.RoutingRule("auto", None)
    assert await approvals.resolve_rule(db, org.company.id, 500) == approvals.RoutingRule("approver", 48)
    assert await approvals.resolve_rule(db, org.company.id, 2000) == approvals.RoutingRule("admin", 24)


def test_transition_table():
    assert approvals.can_transition("draft", "pending")
    assert approvals.can_transition("pending", "expired")
    assert not approvals.can_transition("approved", "cancelled")
    assert not approvals.can_transition("fulfilled", "approved")
    assert not approvals.can_transition("unknown", "pending")


async def test_transition_dispatch(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    admin = await make.member(org, role="admin")
    request = await _create(db, org, requester, 100)
    with pytest.raises(InvalidInput):
        await approvals.transition(db, request.id, "teleport", requester.id)
    await approvals.transition(db, request.id, "submit", requester.id)
    with pytest.raises(InvalidInput):
        await approvals.transition(db, request.id, "fulfill", admin.id, {})
    result = await approvals.transition(db, request.id, "fulfill", admin.id, {"actual_credits": 80})
    assert result.status == "fulfilled"


async def test_get_request_visibility(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    approver = await make.member(org, role="approver")
    bystander = await make.member(org)
    request = await _create(db, org, requester, 100)
    await approvals.submit(db, request.id, requester.id)
    await db.commit()

    found, events, hold = await approvals.get_request(db, request.id, requester.id)
    assert found.id == request.id
    assert {e.event_type for e in events} == {"created", "submitted", "auto_approved"}
    assert hold is not None
    await approvals.get_request(db, request.id, approver.id)
    with pytest.raises(Unauthorized):
        await approvals.get_request(db, request.id, bystander.id)


async def test_manual_escalation(db, make):
    org = await make.org(credits=1000)
    requester = await make.member(org)
    approver = await make.member(org, role="approver")
    admin = await make.member(org, role="admin")
    request = await _create(db, org, requester, 600)
    await approvals.submit(db, request.id, requester.id)

    result = await approvals.escalate(db, request.id, approver.id)
    assert request.approval_level == "admin"
    assert request.current_approver_id == admin.id
    assert request.escalation_count == 1
    assert result.status == "pending"
    with pytest.raises(InvalidTransition):
        await approvals.escalate(db, request.id, admin.id)


async def test_sweep_expires_and_escalates(db, make):
    org = await make.org(credits=5000)
    requester = await make.member(org)
    await make.member(org, role="approver")
    admin = await make.member(org, role="admin")
    stale = await _create(db, org, requester, 600, title="Stale")
    nearly = await _create(db, org, requester, 700, title="Nearly due")
    fresh = await _create(db, org, requester, 800, title="Fresh")
    for request in (stale, nearly, fresh):
        await approvals.submit(db, request.id, requester.id)
    now = utcnow()
    stale.expires_at = now - timedelta(minutes=1)
    nearly.expires_at = now + timedelta(hours=2)
    await db.commit()

    assert await approvals.run_sweep(now) == {"expired": 1, "escalated": 1}
    await db.commit()

    for request in (stale, nearly, fresh):
        await db.refresh(request)
    assert stale.status == "expired"
    assert nearly.status == "pending"
    assert nearly.approval_level == "admin"
    assert nearly.current_approver_id == admin.id
    assert nearly.escalation_count == 1
    assert as_utc(nearly.expires_at) == now + timedelta(hours=approvals.ESCALATED_EXPIRY_HOURS)
    assert fresh.approval_level == "approver"
    assert fresh.escalation_count == 0

    snapshot = await ledger.balance(db, org.account.id)
    assert snapshot.held == 700 + 800

    # A second pass has nothing left to do
    assert await approvals.run_sweep(now) == {"expired": 0, "escalated": 0}
