# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Registration, login, logout, session validation and visitor claims."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from abi_server.auth import sign_visitor_id, verify_visitor_id
from abi_server.database import violates_constraint
from abi_server.errors import EmailTaken, InvalidCredentials, InvalidInput, InviteInvalid, InviteRaceLost, Unauthenticated
from abi_server.models import Invite, InviteUse, Profile, Session, User, VisitorClaim
from abi_server.models.timestamp import utcnow
from abi_server.models.user import EMAIL_INDEX
from abi_server.services import identity, invites

PASSWORD = "Tr0ub4dor&3"

pytestmark = pytest.mark.anyio


async def _count(db, model, *where):
    return (await db.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


async def test_register_creates_user_profile_session(db, make):
    invite = await make.invite(max_uses=2)
    result = await identity.register(db, "  New.User@Example.com ", PASSWORD, invite.code.lower())
    await db.commit()

    assert result.user.email == "new.user@example.com"
    assert result.user.invite_id == invite.id
    assert result.profile is not None and result.profile.reputation == 0
    assert result.session_expires_at > utcnow()
    assert len(result.csrf_token) == 64
    assert verify_visitor_id(result.visitor)
    # Registered but not verified: no community writes yet
    assert not result.permissions.can_ask

    assert await _count(db, Session, Session.token == result.session_token) == 1
    assert await _count(db, InviteUse, InviteUse.invite_id == invite.id) == 1
    use_count = (await db.execute(select(Invite.use_count).where(Invite.id == invite.id))).scalar_one()
    assert use_count == 1


async def test_register_rejects_malformed_code_generically(db):
    with pytest.raises(InviteInvalid) as exc:
        await identity.register(db, "a@example.com", PASSWORD, "nope")
    assert exc.value.detail == "Invalid invite code"


async def test_register_unknown_code(db):
    with pytest.raises(InviteInvalid):
        await identity.register(db, "a@example.com", PASSWORD, "AAAA0000")


async def test_register_input_errors_are_specific(db, make):
    invite = await make.invite()
    with pytest.raises(InvalidInput) as exc:
        await identity.register(db, "not-an-email", PASSWORD, invite.code)
    assert exc.value.detail == "Invalid email format"
    with pytest.raises(InvalidInput) as exc:
        await identity.register(db, "a@example.com", "password123!", invite.code)
    assert "too common" in exc.value.detail


@pytest.mark.parametrize(
    "kwargs,email,message",
    [
        ({"expires_in": timedelta(seconds=-1)}, "a@example.com", "This invite has expired"),
        ({"max_uses": 1, "use_count": 1}, "a@example.com", "This invite has already been used"),
        ({"type": "direct", "email": "b@example.com", "max_uses": 1}, "a@example.com", "This invite is for a different email address"),
    ],
)
async def test_register_unusable_invite(db, make, kwargs, email, message):
    invite = await make.invite(**kwargs)
    with pytest.raises(InviteInvalid) as exc:
        await identity.register(db, email, PASSWORD, invite.code)
    assert exc.value.detail == message
    assert await _count(db, User) == 0


async def test_register_email_is_case_insensitive(db, make):
    await make.user(email="taken@example.com")
    invite = await make.invite()
    with pytest.raises(EmailTaken):
        await identity.register(db, "TAKEN@Example.com", PASSWORD, invite.code)
    use_count = (await db.execute(select(Invite.use_count).where(Invite.id == invite.id))).scalar_one()
    assert use_count == 0


async def test_store_rejects_emails_differing_only_in_case(db):
    db.add(User(email="a@example.com"))
    await db.flush()
    db.add(User(email="A@example.com"))
    with pytest.raises(IntegrityError) as exc:
        await db.flush()
    assert violates_constraint(exc.value, EMAIL_INDEX)


async def test_register_reports_concurrent_email_as_taken(db, make, monkeypatch):
    await make.user(email="racer@example.com")
    invite = await make.invite()

    async def not_found(db, email):
        return None

    # The other registration commits between the pre-check and the insert
    monkeypatch.setattr(identity, "get_user_by_email", not_found)
    with pytest.raises(EmailTaken):
        await identity.register(db, "Racer@example.com", PASSWORD, invite.code)
    use_count = (await db.execute(select(Invite.use_count).where(Invite.id == invite.id))).scalar_one()
    assert use_count == 0


async def test_register_surfaces_other_integrity_errors(db, make, monkeypatch):
    invite = await make.invite()

    async def consume_twice(db, invite_id, user_id):
        db.add(InviteUse(invite_id=invite_id, user_id=user_id))
        db.add(InviteUse(invite_id=invite_id, user_id=user_id))
        await db.flush()
        return True

    monkeypatch.setattr(invites, "atomic_consume", consume_twice)
    with pytest.raises(IntegrityError) as exc:
        await identity.register(db, "fresh@example.com", PASSWORD, invite.code)
    assert not violates_constraint(exc.value, EMAIL_INDEX)


async def test_register_rolls_back_when_invite_race_is_lost(db, make, monkeypatch):
    invite = await make.invite(max_uses=1, use_count=1)
    # Simulate a competitor consuming the last use after the pre-check passed
    monkeypatch.setattr(invites, "can_use", lambda invite, for_email=None, now=None: None)

    with pytest.raises(InviteRaceLost):
        await identity.register(db, "late@example.com", PASSWORD, invite.code)
    await db.commit()

    assert await _count(db, User, User.email == "late@example.com") == 0
    assert await _count(db, Profile) == 0
    assert await _count(db, Session) == 0
    assert await _count(db, InviteUse, InviteUse.invite_id == invite.id) == 0


async def test_register_reuses_and_claims_visitor(db, make):
    invite = await make.invite()
    cookie = sign_visitor_id("visitor-123")
    result = await identity.register(db, "v@example.com", PASSWORD, invite.code, visitor_cookie=cookie)
    assert verify_visitor_id(result.visitor) == "visitor-123"
    claim = await db.get(VisitorClaim, "visitor-123")
    assert claim is not None and claim.user_id == result.user.id


async def test_visitor_is_claimed_once(db, make):
    first = await make.user()
    second = await make.user()
    assert await identity.claim_visitor(db, "visitor-1", first.id)
    assert not await identity.claim_visitor(db, "visitor-1", second.id)
    claim = await db.get(VisitorClaim, "visitor-1")
    assert claim.user_id == first.id


async def test_forged_visitor_cookie_gets_fresh_id(db, make):
    invite = await make.invite()
    result = await identity.register(db, "f@example.com", PASSWORD, invite.code, visitor_cookie="forged.cookie")
    assert verify_visitor_id(result.visitor) not in (None, "forged")


async def test_login_success(db, make):
    user = await make.user(email="login@example.com", reputation=120)
    result = await identity.login(db, "LOGIN@example.com", PASSWORD)
    assert result.user.id == user.id
    assert result.permissions.can_comment
    assert not result.permissions.can_downvote


@pytest.mark.parametrize(
    "email,password",
    [
        ("login@example.com", "Wr0ng-password"),
        ("nobody@example.com", PASSWORD),
        ("not-an-email", PASSWORD),
        ("login@example.com", ""),
        (None, None),
    ],
)
async def test_login_failures_are_indistinguishable(db, make, email, password):
    await make.user(email="login@example.com")
    with pytest.raises(InvalidCredentials) as exc:
        await identity.login(db, email, password)
    assert exc.value.detail == "Invalid credentials"


async def test_login_without_password_hash(db, make):
    await make.user(email="sso@example.com", password=None)
    with pytest.raises(InvalidCredentials):
        await identity.login(db, "sso@example.com", PASSWORD)


async def test_validate_session_and_logout(db, make):
    user = await make.user()
    token = await make.session_token(user)
    session, found = await identity.validate_session(db, token)
    assert found.id == user.id

    await identity.logout(db, token)
    await db.commit()
    with pytest.raises(Unauthenticated):
        await identity.validate_session(db, token)
    # Logging out twice is fine
    await identity.logout(db, token)


async def test_expired_session_is_invalid(db, make):
    user = await make.user()
    token = await make.session_token(user, expires_in=timedelta(seconds=-1))
    with pytest.raises(Unauthenticated):
        await identity.validate_session(db, token)


async def test_session_expiry_is_exclusive(db, make):
    user = await make.user()
    token = await make.session_token(user, expires_in=timedelta(hours=1))
    session, _ = await identity.validate_session(db, token)
    with pytest.raises(Unauthenticated):
        await identity.validate_session(db, token, now=utcnow() + timedelta(hours=2))


@pytest.mark.parametrize("token", [None, "", "unknown-token"])
async def test_invalid_tokens(db, token):
    with pytest.raises(Unauthenticated):
        await identity.validate_session(db, token)


async def test_request_context(db, make):
    anonymous = await identity.resolve_request_context(db, None)
    assert not anonymous.is_authenticated
    assert anonymous.role is None

    org = await make.org()
    user = await make.member(org, role="admin")
    token = await make.session_token(user)
    ctx = await identity.resolve_request_context(db, token)
    assert ctx.is_authenticated
    assert ctx.role == "admin"
    assert ctx.company_id == org.company.id
    assert ctx.permissions.can_moderate
