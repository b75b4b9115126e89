# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Community API routes: questions, answers, votes and accepted answers."""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.api.schemas import AnswerCreate, PostResponse, QuestionCreate, VoteRequest, VoteResponse
from abi_server.database import get_db
from abi_server.dependencies import require_csrf, require_user
from abi_server.errors import Unauthorized
from abi_server.services import reputation
from abi_server.services.identity import RequestContext

router = APIRouter(prefix="/community", tags=["community"], dependencies=[Depends(require_csrf)])


@router.post("/questions", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
async def ask_question(
    data: QuestionCreate,
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> PostResponse:
    if not ctx.permissions.can_ask:
        raise Unauthorized("Verify your email to ask questions")
    question, awarded = await reputation.ask_question(db, ctx.user.id, data.title, data.body)
    await db.commit()
    return PostResponse(id=question.id, score=question.score, awarded=awarded)


@router.post("/questions/{question_id}/answers", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
async def post_answer(
    question_id: uuid.UUID,
    data: AnswerCreate,
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> PostResponse:
    if not ctx.permissions.can_answer:
        raise Unauthorized("Verify your email to answer questions")
    answer, awarded = await reputation.post_answer(db, question_id, ctx.user.id, data.body)
    await db.commit()
    return PostResponse(id=answer.id, score=answer.score, awarded=awarded)


@router.post("/questions/{question_id}/accept/{answer_id}")
async def accept_answer(
    question_id: uuid.UUID,
    answer_id: uuid.UUID,
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Only the question's author may accept."""
    answer = await reputation.accept_answer(db, question_id, answer_id, ctx.user.id)
    await db.commit()
    return {"accepted_answer_id": str(answer.id)}


@router.post("/votes", response_model=VoteResponse)
async def vote(
    data: VoteRequest,
    ctx: RequestContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> VoteResponse:
    """Upvote or downvote; repeating a vote withdraws it."""
    allowed = ctx.permissions.can_upvote if data.value == 1 else ctx.permissions.can_downvote
    if not allowed:
        raise Unauthorized("Not enough reputation to vote")
    result = await reputation.record_vote(db, ctx.user.id, data.target_type, data.target_id, data.value)
    await db.commit()
    return VoteResponse(score=result.score, user_vote=result.user_vote, awarded=result.awarded)
