# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Remove allocation entries that repeat the subscription baseline.

The baseline lives on credit_accounts.total_credits. Ledger rows of type
allocation referencing the subscription counted it a second time in the
derived balance.

Revision ID: 0002_baseline_entries
Revises: 0001_email_lower
Create Date: 2026-10-12

"""
from typing import Sequence, Union

from alembic import op

revision: str = "0002_baseline_entries"
down_revision: Union[str, None] = "0001_email_lower"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute(
        "DELETE FROM ledger_entries "
        "WHERE transaction_type = 'allocation' AND reference_type = 'subscription'"
    )


def downgrade() -> None:
    # Deleted rows duplicated account header data; nothing to restore
    pass
