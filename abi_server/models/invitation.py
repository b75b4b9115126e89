# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite model - grants to register, consumed atomically."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from abi_server.models.base import Base
from abi_server.models.timestamp import TimestampMixin, utcnow

INVITE_TYPES = ("direct", "link", "company")


class Invite(Base, TimestampMixin):
    """Invite code. use_count only ever grows and never passes max_uses."""

    __tablename__ = "invites"
    __table_args__ = (
        CheckConstraint("max_uses >= 1", name="ck_invites_max_uses"),
        CheckConstraint("use_count >= 0 AND use_count <= max_uses", name="ck_invites_use_count"),
        CheckConstraint("type IN ('direct', 'link', 'company')", name="ck_invites_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(8), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    # Only enforced for direct invites
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    invited_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    max_uses: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    use_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)


class InviteUse(Base):
    """Who consumed an invite. Written in the same transaction as the use_count increment."""

    __tablename__ = "invite_uses"
    __table_args__ = (UniqueConstraint("invite_id", "user_id", name="uq_invite_uses_invite_user"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invite_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invites.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
