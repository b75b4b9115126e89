# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite lifecycle: code format, usability checks, creation and atomic consumption."""

import logging
import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from abi_server.config import settings
from abi_server.database import get_for_update, insert_or_conflict
from abi_server.errors import ConstraintViolation, InvalidInput, Unauthorized
from abi_server.models import Invite, InviteUse, Profile
from abi_server.models.invitation import INVITE_TYPES
from abi_server.models.timestamp import as_utc, utcnow
from abi_server.validation import validate_email

logger = logging.getLogger(__name__)

CODE_LENGTH = 8
CODE_ALPHABET = string.ascii_uppercase + string.digits
# Largest multiple of the alphabet size below 256; bytes at or above it are redrawn
_REJECT_FROM = 256 - (256 % len(CODE_ALPHABET))

EXPIRED = "expired"
USED_UP = "used_up"
EMAIL_REQUIRED = "email_required"
EMAIL_MISMATCH = "email_mismatch"
NOT_FOUND = "not_found"
BAD_FORMAT = "bad_format"

REASON_MESSAGES = {
    EXPIRED: "This invite has expired",
    USED_UP: "This invite has already been used",
    EMAIL_REQUIRED: "Email is required for this invite",
    EMAIL_MISMATCH: "This invite is for a different email address",
    NOT_FOUND: "Invalid invite code",
    BAD_FORMAT: "Invalid invite code format",
}


def normalize_code(raw: str | None) -> str:
    return (raw or "").strip().upper()


def is_valid_code_format(code: str) -> bool:
    """Exactly 8 characters from [A-Z0-9]."""
    return len(code) == CODE_LENGTH and all(c in CODE_ALPHABET for c in code)


def generate_code() -> str:
    """Uniform 8-symbol code from a CSPRNG, by rejection sampling over the alphabet."""
    chars: list[str] = []
    while len(chars) < CODE_LENGTH:
        for byte in secrets.token_bytes(CODE_LENGTH):
            if byte < _REJECT_FROM and len(chars) < CODE_LENGTH:
                chars.append(CODE_ALPHABET[byte % len(CODE_ALPHABET)])
    return "".join(chars)


def can_use(invite: Invite, for_email: str | None = None, now: datetime | None = None) -> str | None:
    """Return why ``invite`` cannot be used (a reason code), or None if it can.

    Expiry is checked first, then remaining uses, then the email restriction
    of direct invites. Link and company invites ignore email.
    """
    now = now or utcnow()
    expires_at = as_utc(invite.expires_at)
    if expires_at is not None and now >= expires_at:
        return EXPIRED
    if invite.use_count >= invite.max_uses:
        return USED_UP
    if invite.type == "direct" and invite.email:
        if not for_email:
            return EMAIL_REQUIRED
        if invite.email.lower() != for_email.strip().lower():
            return EMAIL_MISMATCH
    return None


async def get_invite_by_code(db: AsyncSession, code: str) -> Invite | None:
    result = await db.execute(select(Invite).where(Invite.code == code))
    return result.scalar_one_or_none()


async def create_invite(
    db: AsyncSession,
    inviter_id: uuid.UUID | None,
    invite_type: str,
    email: str | None = None,
    max_uses: int | None = None,
    expires_in_seconds: int | None = None,
    metadata: dict[str, Any] | None = None,
    elevated: bool = False,
) -> Invite:
    """
    Create an invite owned by ``inviter_id``.

    Direct invites require an email and default to one use; link and company
    invites default to five. Unless ``elevated`` (admin/owner overlay, or a
    system caller), one of the inviter's invite slots is spent in the same
    transaction, and having none left raises Unauthorized.
    """
    if invite_type not in INVITE_TYPES:
        raise InvalidInput("Invalid invite type")
    restricted_email = None
    if invite_type == "direct":
        if not email:
            raise InvalidInput("Email is required for direct invites")
        restricted_email = validate_email(email)
    elif invite_type == "company" and email:
        restricted_email = validate_email(email)
    if max_uses is None:
        max_uses = 1 if invite_type == "direct" else 5
    if max_uses < 1:
        raise InvalidInput("max_uses must be at least 1")
    ttl = settings.invite_link_ttl_seconds if expires_in_seconds is None else expires_in_seconds
    if ttl <= 0:
        raise InvalidInput("expires_in_seconds must be positive")

    if not elevated:
        if inviter_id is None:
            raise Unauthorized("No invite slots available")
        result = await db.execute(
            update(Profile)
            .where(Profile.user_id == inviter_id, Profile.invite_slots > 0)
            .values(invite_slots=Profile.invite_slots - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Unauthorized("No invite slots available")

    expires_at = utcnow() + timedelta(seconds=ttl)
    for _ in range(settings.invite_code_attempts):
        invite = Invite(
            code=generate_code(),
            type=invite_type,
            email=restricted_email,
            invited_by_id=inviter_id,
            max_uses=max_uses,
            use_count=0,
            expires_at=expires_at,
            metadata_=metadata,
        )
        if await insert_or_conflict(db, invite):
            logger.info("Invite %s created (type=%s, max_uses=%d)", invite.id, invite_type, max_uses)
            return invite
        logger.warning("Invite code collision, retrying")
    raise ConstraintViolation("invites.code")


async def atomic_consume(db: AsyncSession, invite_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    """
    Consume one use of the invite for ``user_id``. True on success, False when the race was lost.

    The invite row is locked, re-checked against the locked snapshot, then
    incremented with a guarded UPDATE and bound to the user with an InviteUse
    row, all inside the caller's transaction. Competitors serialize on the
    row lock; whoever arrives at use_count == max_uses loses.
    """
    invite = await get_for_update(db, Invite, invite_id)
    if invite is None:
        return False
    now = utcnow()
    expires_at = as_utc(invite.expires_at)
    if (expires_at is not None and now >= expires_at) or invite.use_count >= invite.max_uses:
        logger.info("Invite %s consumption lost (use_count=%d/%d)", invite_id, invite.use_count, invite.max_uses)
        return False

    result = await db.execute(
        update(Invite)
        .where(Invite.id == invite_id, Invite.use_count < Invite.max_uses)
        .values(use_count=Invite.use_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("Invite %s consumption lost at increment", invite_id)
        return False
    set_committed_value(invite, "use_count", invite.use_count + 1)

    # A duplicate (invite, user) pair is a defect, not a race: let the IntegrityError surface
    db.add(InviteUse(invite_id=invite_id, user_id=user_id))
    await db.flush()
    return True


async def validate_invite(db: AsyncSession, raw_code: str | None, email: str | None = None) -> dict:
    """Check an invite code without consuming it. Returns only {valid, type, reason}."""
    code = normalize_code(raw_code)
    if not is_valid_code_format(code):
        return {"valid": False, "type": None, "reason": REASON_MESSAGES[BAD_FORMAT]}
    invite = await get_invite_by_code(db, code)
    if invite is None:
        return {"valid": False, "type": None, "reason": REASON_MESSAGES[NOT_FOUND]}
    problem = can_use(invite, email)
    if problem is not None:
        return {"valid": False, "type": invite.type, "reason": REASON_MESSAGES[problem]}
    return {"valid": True, "type": invite.type, "reason": None}
