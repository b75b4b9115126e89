# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Credit ledger models: account header, append-only entries, holds."""

import uuid
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from abi_server.models.base import Base
from abi_server.models.timestamp import TimestampMixin

ENTRY_DIRECTIONS = ("debit", "credit")
TRANSACTION_TYPES = ("allocation", "spend", "refund", "adjustment", "hold_conversion")
HOLD_STATUSES = ("active", "converted", "released")


class CreditAccount(Base, TimestampMixin):
    """Company-scoped ledger header.

    The subscription baseline (total_credits + bonus_credits) lives here and is
    never also written as a ledger entry.
    """

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("total_credits >= 0", name="ck_credit_accounts_total"),
        CheckConstraint("bonus_credits >= 0", name="ck_credit_accounts_bonus"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("companies.id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    subscription_tier: Mapped[str] = mapped_column(String(50), nullable=False)
    subscription_start: Mapped[date] = mapped_column(Date, nullable=False)
    subscription_end: Mapped[date] = mapped_column(Date, nullable=False)
    total_credits: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    bonus_credits: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)


class LedgerEntry(Base, TimestampMixin):
    """Immutable ledger line. Amount is positive; direction carries the sign."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_ledger_entries_account_key"),
        CheckConstraint("amount > 0", name="ck_ledger_entries_amount"),
        CheckConstraint("entry_type IN ('debit', 'credit')", name="ck_ledger_entries_direction"),
        Index("ix_ledger_entries_reference", "reference_type", "reference_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("credit_accounts.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    entry_type: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    performed_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )


class CreditHold(Base, TimestampMixin):
    """Reservation against available balance, 1:1 with an approval request.

    Status moves active -> converted or active -> released, never back.
    """

    __tablename__ = "credit_holds"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_credit_holds_account_key"),
        CheckConstraint("amount > 0", name="ck_credit_holds_amount"),
        CheckConstraint("status IN ('active', 'converted', 'released')", name="ck_credit_holds_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("credit_accounts.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("approval_requests.id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
