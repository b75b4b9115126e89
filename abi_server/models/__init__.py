# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database models."""

from abi_server.models.base import Base
from abi_server.models.user import User, Profile, Session, VisitorClaim
from abi_server.models.invitation import Invite, InviteUse
from abi_server.models.organization import Company, Team, TeamMembership
from abi_server.models.credit import CreditAccount, LedgerEntry, CreditHold
from abi_server.models.approval import ApprovalRequest, ApprovalRule, ApprovalEvent
from abi_server.models.community import Question, Answer, Vote, Badge, UserBadge, ReputationLog

__all__ = [
    "Base",
    "User",
    "Profile",
    "Session",
    "VisitorClaim",
    "Invite",
    "InviteUse",
    "Company",
    "Team",
    "TeamMembership",
    "CreditAccount",
    "LedgerEntry",
    "CreditHold",
    "ApprovalRequest",
    "ApprovalRule",
    "ApprovalEvent",
    "Question",
    "Answer",
    "Vote",
    "Badge",
    "UserBadge",
    "ReputationLog",
]
