# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pydantic schemas for API request/response."""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# Auth
class RegisterRequest(BaseModel):
    # Plain str: email syntax and password strength are checked by the service
    email: str
    password: str
    invite_code: str


class LoginRequest(BaseModel):
    email: str
    password: str


class PermissionsResponse(BaseModel):
    can_access_chat: bool
    can_read_community: bool
    can_ask: bool
    can_answer: bool
    can_comment: bool
    can_upvote: bool
    can_downvote: bool
    can_invite: bool
    can_moderate: bool
    invite_slots: int


class UserResponse(BaseModel):
    id: uuid.UUID
    email: str
    email_verified_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProfileResponse(BaseModel):
    username: str | None = None
    display_name: str | None = None
    reputation: int = 0
    invite_slots: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    onboarding_step: str | None = None

    model_config = ConfigDict(from_attributes=True)


class AuthResponse(BaseModel):
    user: UserResponse
    profile: ProfileResponse | None = None
    permissions: PermissionsResponse
    expires_at: datetime


class SessionResponse(BaseModel):
    authenticated: bool
    user: UserResponse | None = None
    profile: ProfileResponse | None = None
    role: str | None = None
    company_id: uuid.UUID | None = None
    permissions: PermissionsResponse


# Invites
class InviteCreate(BaseModel):
    type: Literal["direct", "link", "company"] = "link"
    email: str | None = None
    max_uses: int | None = None
    expires_in_seconds: int | None = None
    metadata: dict[str, Any] | None = None


class InviteResponse(BaseModel):
    id: uuid.UUID
    code: str
    type: str
    email: str | None = None
    max_uses: int
    use_count: int
    expires_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class InviteValidateRequest(BaseModel):
    code: str
    email: str | None = None


class InviteValidateResponse(BaseModel):
    valid: bool
    type: str | None = None
    reason: str | None = None


# Credits
class BalanceResponse(BaseModel):
    account_id: uuid.UUID
    total_credits: int
    bonus_credits: int
    allocated: int
    debited: int
    held: int
    available: int


class LedgerEntryResponse(BaseModel):
    id: uuid.UUID
    entry_type: str
    amount: int
    transaction_type: str
    reference_type: str | None = None
    reference_id: str | None = None
    description: str | None = None
    idempotency_key: str
    performed_by_id: uuid.UUID | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionListResponse(BaseModel):
    items: list[LedgerEntryResponse]
    total: int
    limit: int
    offset: int


class HoldCreate(BaseModel):
    request_id: uuid.UUID
    amount: int = Field(gt=0)
    idempotency_key: str


class HoldConvert(BaseModel):
    # Idempotent per request: a retry with the same amount returns the original debit
    actual_amount: int = Field(gt=0)
    reference_type: str | None = None
    reference_id: str | None = None


class HoldResponse(BaseModel):
    id: uuid.UUID
    account_id: uuid.UUID
    request_id: uuid.UUID
    amount: int
    status: str
    created_at: datetime
    released_at: datetime | None = None
    converted_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class SpendRequest(BaseModel):
    amount: int = Field(gt=0)
    idempotency_key: str
    reference_type: str | None = None
    reference_id: str | None = None
    description: str | None = None


# Approval requests
class ApprovalRequestCreate(BaseModel):
    request_type: str
    title: str
    estimated_credits: int = Field(gt=0)
    team_id: uuid.UUID | None = None
    description: str | None = None
    context: dict[str, Any] | None = None


class TransitionPayload(BaseModel):
    reason: str | None = None
    actual_credits: int | None = None
    reference_type: str | None = None
    reference_id: str | None = None


class ApprovalEventResponse(BaseModel):
    id: uuid.UUID
    event_type: str
    performed_by_id: uuid.UUID | None = None
    from_status: str | None = None
    to_status: str | None = None
    reason: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ApprovalRequestResponse(BaseModel):
    id: uuid.UUID
    company_id: uuid.UUID
    team_id: uuid.UUID | None = None
    requester_id: uuid.UUID
    request_type: str
    status: str
    title: str
    description: str | None = None
    estimated_credits: int
    actual_credits: int | None = None
    approval_level: str | None = None
    current_approver_id: uuid.UUID | None = None
    escalation_count: int = 0
    decision_reason: str | None = None
    decided_by_id: uuid.UUID | None = None
    created_at: datetime
    submitted_at: datetime | None = None
    decided_at: datetime | None = None
    fulfilled_at: datetime | None = None
    expires_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ApprovalRequestDetail(ApprovalRequestResponse):
    hold: HoldResponse | None = None
    events: list[ApprovalEventResponse] = []


# Community
class QuestionCreate(BaseModel):
    title: str
    body: str


class AnswerCreate(BaseModel):
    body: str


class VoteRequest(BaseModel):
    target_type: Literal["question", "answer"]
    target_id: uuid.UUID
    value: Literal[1, -1]


class VoteResponse(BaseModel):
    score: int
    user_vote: int | None = None
    awarded: list[str] = []


class PostResponse(BaseModel):
    id: uuid.UUID
    score: int
    awarded: list[str] = []
