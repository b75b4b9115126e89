# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Capability resolution from auth status, reputation, invite slots and org role. Pure."""

from dataclasses import asdict, dataclass

REPUTATION_THRESHOLDS = {
    "upvote": 50,
    "comment": 100,
    "downvote": 250,
    "moderate": 1000,
}
AUTH_STATUSES = ("anonymous", "authenticated", "verified")
ELEVATED_ROLES = ("admin", "owner")


@dataclass(frozen=True)
class Permissions:
    can_access_chat: bool = True
    can_read_community: bool = True
    can_ask: bool = False
    can_answer: bool = False
    can_comment: bool = False
    can_upvote: bool = False
    can_downvote: bool = False
    can_invite: bool = False
    can_moderate: bool = False
    invite_slots: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def auth_status_for(user) -> str:
    """anonymous / authenticated / verified for a User row or None."""
    if user is None:
        return "anonymous"
    if user.email_verified_at is not None:
        return "verified"
    return "authenticated"


def resolve_permissions(
    status: str,
    reputation: int = 0,
    invite_slots: int = 0,
    role: str | None = None,
    admin_invite_slots: int | None = None,
) -> Permissions:
    """
    Compose the capability record. Monotone in status and reputation.

    Anonymous and unverified users read community content and use chat.
    Verified users ask and answer, and unlock voting, commenting and
    moderation by reputation. An admin/owner role overlays moderation and
    inviting, with at least ``admin_invite_slots`` slots.
    """
    if status not in AUTH_STATUSES:
        raise ValueError(f"Unknown auth status: {status}")

    if status == "verified":
        perms = Permissions(
            can_ask=True,
            can_answer=True,
            can_comment=reputation >= REPUTATION_THRESHOLDS["comment"],
            can_upvote=reputation >= REPUTATION_THRESHOLDS["upvote"],
            can_downvote=reputation >= REPUTATION_THRESHOLDS["downvote"],
            can_invite=invite_slots > 0,
            can_moderate=reputation >= REPUTATION_THRESHOLDS["moderate"],
            invite_slots=invite_slots,
        )
    else:
        perms = Permissions()

    if status != "anonymous" and role in ELEVATED_ROLES:
        slots = max(perms.invite_slots, invite_slots, admin_invite_slots or 0)
        perms = Permissions(
            **{
                **perms.as_dict(),
                "can_moderate": True,
                "can_invite": True,
                "invite_slots": slots,
            }
        )
    return perms
