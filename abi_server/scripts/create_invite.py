#!/usr/bin/env python3
# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Create a bootstrap invite with no inviter. Run: python -m abi_server.scripts.create_invite"""

import asyncio
import sys

from abi_server.database import init_db, run_in_transaction
from abi_server.errors import CoreError
from abi_server.services.invites import create_invite


async def main():
    await init_db()
    invite_type = input("Invite type [link]: ").strip() or "link"
    email = input("Restrict to email (blank for none): ").strip() or None
    max_uses = input("Max uses (blank for default): ").strip()

    try:
        invite = await run_in_transaction(
            lambda db: create_invite(
                db,
                None,
                invite_type,
                email=email,
                max_uses=int(max_uses) if max_uses else None,
                elevated=True,
            )
        )
    except (CoreError, ValueError) as e:
        print(f"Could not create invite: {e}")
        sys.exit(1)
    print(f"Invite code: {invite.code} (uses: {invite.max_uses}, expires: {invite.expires_at:%Y-%m-%d %H:%M} UTC)")


if __name__ == "__main__":
    asyncio.run(main())
