# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Organization lookups: a user's company role and who holds a role."""

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.models import Team, TeamMembership

ROLE_RANK = {"member": 0, "approver": 1, "admin": 2, "owner": 3}


@dataclass(frozen=True)
class Membership:
    company_id: uuid.UUID
    team_id: uuid.UUID
    role: str

    @property
    def rank(self) -> int:
        return ROLE_RANK.get(self.role, 0)


def role_rank(role: str | None) -> int:
    return ROLE_RANK.get(role, -1) if role else -1


async def get_membership(
    db: AsyncSession,
    user_id: uuid.UUID,
    company_id: uuid.UUID | None = None,
) -> Membership | None:
    """The user's highest-ranked membership, optionally restricted to one company."""
    query = (
        select(Team.company_id, TeamMembership.team_id, TeamMembership.role)
        .join(Team, Team.id == TeamMembership.team_id)
        .where(TeamMembership.user_id == user_id)
    )
    if company_id is not None:
        query = query.where(Team.company_id == company_id)
    rows = (await db.execute(query)).all()
    if not rows:
        return None
    best = max(rows, key=lambda r: (ROLE_RANK.get(r.role, 0), str(r.team_id)))
    return Membership(company_id=best.company_id, team_id=best.team_id, role=best.role)


async def find_role_holder(
    db: AsyncSession,
    company_id: uuid.UUID,
    roles: tuple[str, ...],
    team_id: uuid.UUID | None = None,
    exclude_user_id: uuid.UUID | None = None,
) -> uuid.UUID | None:
    """First user (by membership age) with one of ``roles`` in the company, or in one team."""
    query = (
        select(TeamMembership.user_id)
        .join(Team, Team.id == TeamMembership.team_id)
        .where(Team.company_id == company_id, TeamMembership.role.in_(roles))
        .order_by(TeamMembership.created_at, TeamMembership.id)
    )
    if team_id is not None:
        query = query.where(TeamMembership.team_id == team_id)
    if exclude_user_id is not None:
        query = query.where(TeamMembership.user_id != exclude_user_id)
    return (await db.execute(query.limit(1))).scalar_one_or_none()
