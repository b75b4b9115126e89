# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Approval workflow models: requests, routing rules, audit events."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from abi_server.models.base import Base
from abi_server.models.timestamp import TimestampMixin

REQUEST_TYPES = (
    "report_upgrade",
    "analyst_qa",
    "analyst_call",
    "expert_consult",
    "expert_deepdive",
    "bespoke_project",
)
REQUEST_STATUSES = ("draft", "pending", "approved", "denied", "cancelled", "expired", "fulfilled")
TERMINAL_STATUSES = ("denied", "cancelled", "expired", "fulfilled")
APPROVAL_LEVELS = ("auto", "approver", "admin")


class ApprovalRequest(Base, TimestampMixin):
    """Work item whose pending life is backed by exactly one credit hold."""

    __tablename__ = "approval_requests"
    __table_args__ = (
        CheckConstraint("estimated_credits > 0", name="ck_approval_requests_estimated"),
        CheckConstraint(
            "actual_credits IS NULL OR actual_credits > 0", name="ck_approval_requests_actual"
        ),
        CheckConstraint(
            "status != 'fulfilled' OR actual_credits IS NOT NULL",
            name="ck_approval_requests_fulfilled_actual",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    team_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("teams.id", ondelete="RESTRICT"), nullable=True
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    request_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    estimated_credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    actual_credits: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    approval_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    current_approver_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    escalation_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    decision_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Only meaningful while status == 'pending'
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ApprovalRule(Base, TimestampMixin):
    """Company routing rule: [min_credits, max_credits] -> approver role.

    max_credits None means unbounded. Highest priority wins among matching rules.
    """

    __tablename__ = "approval_rules"
    __table_args__ = (
        CheckConstraint("min_credits >= 0", name="ck_approval_rules_min"),
        CheckConstraint(
            "max_credits IS NULL OR max_credits > min_credits", name="ck_approval_rules_range"
        ),
        CheckConstraint(
            "approver_role IN ('auto', 'approver', 'admin')", name="ck_approval_rules_role"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    min_credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    max_credits: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    approver_role: Mapped[str] = mapped_column(String(20), nullable=False)
    escalation_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ApprovalEvent(Base, TimestampMixin):
    """Append-only audit row, written in the same transaction as the transition."""

    __tablename__ = "approval_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("approval_requests.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    # None for system actions (sweep)
    performed_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
