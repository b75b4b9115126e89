# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Credential and session service: registration, login, logout, session validation.

Credential paths surface generic errors only. The specific reason goes to the
log, never the token or the password.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.auth import (
    constant_time_equals,
    generate_csrf_token,
    generate_visitor_id,
    hash_password,
    random_token,
    sign_visitor_id,
    verify_password,
    verify_visitor_id,
)
from abi_server.config import settings
from abi_server.database import insert_or_conflict, violates_constraint
from abi_server.errors import (
    EmailTaken,
    InvalidCredentials,
    InvalidInput,
    InviteInvalid,
    InviteRaceLost,
    Unauthenticated,
)
from abi_server.models import Profile, Session, User, VisitorClaim
from abi_server.models.user import EMAIL_INDEX
from abi_server.models.timestamp import as_utc, utcnow
from abi_server.services import invites
from abi_server.services.organization import Membership, get_membership
from abi_server.services.permissions import Permissions, auth_status_for, resolve_permissions
from abi_server.validation import validate_email, validate_password

logger = logging.getLogger(__name__)


@dataclass
class AuthResult:
    """What a successful register/login hands back to the HTTP layer."""

    user: User
    profile: Profile | None
    session_token: str
    session_expires_at: datetime
    csrf_token: str
    visitor: str
    permissions: Permissions


@dataclass
class RequestContext:
    """Per-request identity: resolved once, threaded to handlers."""

    user: User | None = None
    profile: Profile | None = None
    session: Session | None = None
    membership: Membership | None = None
    permissions: Permissions = field(default_factory=Permissions)

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def role(self) -> str | None:
        return self.membership.role if self.membership else None

    @property
    def company_id(self) -> uuid.UUID | None:
        return self.membership.company_id if self.membership else None


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(func.lower(User.email) == email.lower()))
    return result.scalar_one_or_none()


async def get_profile(db: AsyncSession, user_id: uuid.UUID) -> Profile | None:
    result = await db.execute(select(Profile).where(Profile.user_id == user_id))
    return result.scalar_one_or_none()


async def _create_session(db: AsyncSession, user_id: uuid.UUID) -> Session:
    session = Session(
        user_id=user_id,
        token=random_token(32),
        expires_at=utcnow() + timedelta(seconds=settings.session_ttl_seconds),
    )
    db.add(session)
    await db.flush()
    return session


def _visitor_id_from_cookie(signed: str | None) -> str:
    """Reuse a verified visitor id, else mint a fresh one."""
    return verify_visitor_id(signed) or generate_visitor_id()


async def claim_visitor(db: AsyncSession, visitor_id: str, user_id: uuid.UUID) -> bool:
    """Bind a visitor id to a user. Written at most once; later claims return False."""
    claimed = await insert_or_conflict(db, VisitorClaim(visitor_id=visitor_id, user_id=user_id))
    if claimed:
        logger.info("Visitor claimed by user %s", user_id)
    return claimed


async def _permissions_for(
    db: AsyncSession, user: User, profile: Profile | None
) -> tuple[Membership | None, Permissions]:
    membership = await get_membership(db, user.id)
    permissions = resolve_permissions(
        auth_status_for(user),
        reputation=profile.reputation if profile else 0,
        invite_slots=profile.invite_slots if profile else 0,
        role=membership.role if membership else None,
        admin_invite_slots=settings.admin_invite_slots,
    )
    return membership, permissions


async def register(
    db: AsyncSession,
    email: str | None,
    password: str | None,
    invite_code: str | None,
    visitor_cookie: str | None = None,
) -> AuthResult:
    """
    Create a user, profile and session, consuming one invite use.

    Input problems (email syntax, weak password) are returned as-is; invite
    problems are generic plus the invite-specific reason. The user, profile,
    session and invite consumption live in one SAVEPOINT: if consumption loses
    the race, all of it is rolled back and InviteRaceLost is raised.
    """
    code = invites.normalize_code(invite_code)
    if not invites.is_valid_code_format(code):
        logger.info("Registration rejected: malformed invite code")
        raise InviteInvalid()

    canonical_email = validate_email(email)
    validate_password(password)

    invite = await invites.get_invite_by_code(db, code)
    if invite is None:
        logger.info("Registration rejected: unknown invite code")
        raise InviteInvalid()
    problem = invites.can_use(invite, canonical_email)
    if problem is not None:
        logger.info("Registration rejected: invite %s unusable (%s)", invite.id, problem)
        raise InviteInvalid(invites.REASON_MESSAGES[problem])

    if await get_user_by_email(db, canonical_email) is not None:
        logger.info("Registration rejected: email already registered")
        raise EmailTaken()

    password_hash = hash_password(password)
    try:
        async with db.begin_nested():
            user = User(
                email=canonical_email,
                password_hash=password_hash,
                invited_by_id=invite.invited_by_id,
                invite_id=invite.id,
            )
            db.add(user)
            await db.flush()
            profile = Profile(user_id=user.id)
            db.add(profile)
            session = await _create_session(db, user.id)
            if not await invites.atomic_consume(db, invite.id, user.id):
                raise InviteRaceLost()
    except InviteRaceLost:
        logger.warning("Registration lost invite race on invite %s", invite.id)
        raise
    except IntegrityError as exc:
        if not violates_constraint(exc, EMAIL_INDEX):
            raise
        # Lost the lower(email) unique index to a concurrent registration
        logger.info("Registration rejected: email taken concurrently")
        raise EmailTaken() from None

    visitor_id = _visitor_id_from_cookie(visitor_cookie)
    await claim_visitor(db, visitor_id, user.id)

    membership, permissions = await _permissions_for(db, user, profile)
    logger.info("User %s registered via invite %s", user.id, invite.id)
    return AuthResult(
        user=user,
        profile=profile,
        session_token=session.token,
        session_expires_at=session.expires_at,
        csrf_token=generate_csrf_token(),
        visitor=sign_visitor_id(visitor_id),
        permissions=permissions,
    )


async def login(
    db: AsyncSession,
    email: str | None,
    password: str | None,
    visitor_cookie: str | None = None,
) -> AuthResult:
    """Every failure path raises the same InvalidCredentials."""
    try:
        canonical_email = validate_email(email)
    except InvalidInput:
        verify_password(password or "", None)
        logger.info("Login failed: malformed email")
        raise InvalidCredentials() from None
    if not password:
        verify_password("", None)
        logger.info("Login failed: missing password")
        raise InvalidCredentials()

    user = await get_user_by_email(db, canonical_email)
    if user is None:
        verify_password(password, None)
        logger.info("Login failed: unknown email")
        raise InvalidCredentials()
    if not user.password_hash:
        verify_password(password, None)
        logger.info("Login failed: user %s has no password", user.id)
        raise InvalidCredentials()
    if not verify_password(password, user.password_hash):
        logger.info("Login failed: wrong password for user %s", user.id)
        raise InvalidCredentials()

    profile = await get_profile(db, user.id)
    session = await _create_session(db, user.id)
    visitor_id = _visitor_id_from_cookie(visitor_cookie)
    await claim_visitor(db, visitor_id, user.id)
    membership, permissions = await _permissions_for(db, user, profile)
    logger.info("User %s logged in", user.id)
    return AuthResult(
        user=user,
        profile=profile,
        session_token=session.token,
        session_expires_at=session.expires_at,
        csrf_token=generate_csrf_token(),
        visitor=sign_visitor_id(visitor_id),
        permissions=permissions,
    )


async def logout(db: AsyncSession, session_token: str | None) -> None:
    """Delete the session if it exists. Always succeeds."""
    if not session_token:
        return
    await db.execute(delete(Session).where(Session.token == session_token))


async def validate_session(
    db: AsyncSession, session_token: str | None, now: datetime | None = None
) -> tuple[Session, User]:
    """A session is valid iff it exists and expires_at > now. Raises Unauthenticated."""
    if not session_token:
        raise Unauthenticated()
    result = await db.execute(select(Session).where(Session.token == session_token))
    session = result.scalar_one_or_none()
    if session is None or not constant_time_equals(session.token, session_token):
        raise Unauthenticated()
    now = now or utcnow()
    if as_utc(session.expires_at) <= now:
        raise Unauthenticated()
    user = await db.get(User, session.user_id)
    if user is None:
        raise Unauthenticated()
    return session, user


async def resolve_request_context(
    db: AsyncSession, session_token: str | None, now: datetime | None = None
) -> RequestContext:
    """Resolve (user, profile, membership, permissions) once per request. Anonymous on any failure."""
    try:
        session, user = await validate_session(db, session_token, now)
    except Unauthenticated:
        return RequestContext(permissions=resolve_permissions("anonymous"))
    profile = await get_profile(db, user.id)
    membership, permissions = await _permissions_for(db, user, profile)
    return RequestContext(
        user=user,
        profile=profile,
        session=session,
        membership=membership,
        permissions=permissions,
    )
