#!/usr/bin/env python3
# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Create a company with one team, a credit account and an owner.

Run: python -m abi_server.scripts.create_company
The owner must already have registered.
"""

import asyncio
import sys
from datetime import date, timedelta

from abi_server.database import init_db, run_in_transaction
from abi_server.models import Company, CreditAccount, Team, TeamMembership
from abi_server.services.identity import get_user_by_email


async def _create(db, name: str, owner_email: str, credits: int, tier: str):
    owner = await get_user_by_email(db, owner_email)
    if owner is None:
        return None
    company = Company(name=name)
    db.add(company)
    await db.flush()
    team = Team(company_id=company.id, name="General")
    db.add(team)
    await db.flush()
    db.add(TeamMembership(team_id=team.id, user_id=owner.id, role="owner"))
    today = date.today()
    db.add(
        CreditAccount(
            company_id=company.id,
            subscription_tier=tier,
            subscription_start=today,
            subscription_end=today + timedelta(days=365),
            total_credits=credits,
            bonus_credits=0,
        )
    )
    await db.flush()
    return company


async def main():
    await init_db()
    name = input("Company name: ").strip()
    owner_email = input("Owner email: ").strip()
    credits = input("Subscription credits [0]: ").strip() or "0"
    tier = input("Subscription tier [standard]: ").strip() or "standard"
    if not name or not owner_email or not credits.isdigit():
        print("Company name, owner email and a non-negative credit amount are required")
        sys.exit(1)

    company = await run_in_transaction(lambda db: _create(db, name, owner_email, int(credits), tier))
    if company is None:
        print("No user with that email")
        sys.exit(1)
    print(f"Company {company.name} created ({company.id}).")


if __name__ == "__main__":
    asyncio.run(main())
