# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Reputation deltas, badge evaluation and the community actions that feed them.

Every delta appends a ReputationLog row and moves ``profiles.reputation`` in the
caller's transaction; reputation is floored at 0. Badge awards go through the
(user, badge) unique constraint, so a badge is awarded at most once even when
two evaluations race.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from abi_server.database import get_for_update, insert_or_conflict
from abi_server.errors import ConstraintViolation, InvalidInput, NotFound, Unauthorized
from abi_server.models import Answer, Badge, Profile, Question, ReputationLog, UserBadge, Vote
from abi_server.models.community import VOTE_TARGETS

logger = logging.getLogger(__name__)

REPUTATION_POINTS = {
    "question_upvoted": 5,
    "question_downvoted": -2,
    "answer_upvoted": 10,
    "answer_downvoted": -2,
    "answer_accepted": 15,
    "accepted_answer": 2,
    "downvote_cast": -1,
}

BADGE_CATALOG: list[dict[str, Any]] = [
    # Bronze
    {"slug": "first-question", "name": "First Question", "description": "Asked your first question",
     "tier": "bronze", "icon": "HelpCircle", "criteria": {"type": "first_question"}},
    {"slug": "first-answer", "name": "First Answer", "description": "Posted your first answer",
     "tier": "bronze", "icon": "MessageSquare", "criteria": {"type": "first_answer"}},
    {"slug": "curious", "name": "Curious", "description": "Asked 5 questions",
     "tier": "bronze", "icon": "Search", "criteria": {"type": "question_count", "threshold": 5}},
    {"slug": "contributor", "name": "Contributor", "description": "Posted 5 answers",
     "tier": "bronze", "icon": "PenLine", "criteria": {"type": "answer_count", "threshold": 5}},
    {"slug": "supporter", "name": "Supporter", "description": "Cast 10 votes",
     "tier": "bronze", "icon": "ThumbsUp", "criteria": {"type": "votes_cast", "threshold": 10}},
    {"slug": "consistent", "name": "Consistent", "description": "Maintained a 7-day activity streak",
     "tier": "bronze", "icon": "Flame", "criteria": {"type": "streak_days", "threshold": 7}},
    # Silver
    {"slug": "good-question", "name": "Good Question", "description": "Received 25 upvotes on your questions",
     "tier": "silver", "icon": "ThumbsUp", "criteria": {"type": "upvotes_received", "threshold": 25}},
    {"slug": "helpful", "name": "Helpful", "description": "Posted 10 answers",
     "tier": "silver", "icon": "Heart", "criteria": {"type": "answer_count", "threshold": 10}},
    {"slug": "teacher", "name": "Teacher", "description": "Had 5 answers accepted",
     "tier": "silver", "icon": "GraduationCap", "criteria": {"type": "accepted_count", "threshold": 5}},
    {"slug": "rising-star", "name": "Rising Star", "description": "Reached 500 reputation",
     "tier": "silver", "icon": "TrendingUp", "criteria": {"type": "reputation", "threshold": 500}},
    {"slug": "civic-duty", "name": "Civic Duty", "description": "Cast 100 votes",
     "tier": "silver", "icon": "Vote", "criteria": {"type": "votes_cast", "threshold": 100}},
    {"slug": "dedicated", "name": "Dedicated", "description": "Maintained a 14-day activity streak",
     "tier": "silver", "icon": "Flame", "criteria": {"type": "streak_days", "threshold": 14}},
    {"slug": "nice-answer", "name": "Nice Answer", "description": "Posted an answer with 10+ score",
     "tier": "silver", "icon": "Star", "criteria": {"type": "answer_score", "threshold": 10}},
    {"slug": "nice-question", "name": "Nice Question", "description": "Asked a question with 10+ score",
     "tier": "silver", "icon": "Sparkles", "criteria": {"type": "question_score", "threshold": 10}},
    # Gold
    {"slug": "great-answer", "name": "Great Answer", "description": "Received 100 upvotes on your answers",
     "tier": "gold", "icon": "Award", "criteria": {"type": "upvotes_received", "threshold": 100}},
    {"slug": "guru", "name": "Guru", "description": "Had 50 answers accepted",
     "tier": "gold", "icon": "Crown", "criteria": {"type": "accepted_count", "threshold": 50}},
    {"slug": "legend", "name": "Legend", "description": "Reached 10,000 reputation",
     "tier": "gold", "icon": "Star", "criteria": {"type": "reputation", "threshold": 10000}},
    {"slug": "inquisitor", "name": "Inquisitor", "description": "Asked 50 questions",
     "tier": "gold", "icon": "HelpCircle", "criteria": {"type": "question_count", "threshold": 50}},
    {"slug": "electorate", "name": "Electorate", "description": "Cast 500 votes",
     "tier": "gold", "icon": "CheckCircle", "criteria": {"type": "votes_cast", "threshold": 500}},
    {"slug": "fanatic", "name": "Fanatic", "description": "Maintained a 30-day activity streak",
     "tier": "gold", "icon": "Flame", "criteria": {"type": "streak_days", "threshold": 30}},
    {"slug": "yearling", "name": "Yearling", "description": "Achieved a 100-day longest streak",
     "tier": "gold", "icon": "Calendar", "criteria": {"type": "longest_streak", "threshold": 100}},
    {"slug": "stellar-question", "name": "Stellar Question", "description": "Asked a question with 25+ score",
     "tier": "gold", "icon": "Sparkles", "criteria": {"type": "question_score", "threshold": 25}},
    {"slug": "stellar-answer", "name": "Stellar Answer", "description": "Posted an answer with 25+ score",
     "tier": "gold", "icon": "Zap", "criteria": {"type": "answer_score", "threshold": 25}},
]


@dataclass
class UserStats:
    question_count: int = 0
    answer_count: int = 0
    accepted_count: int = 0
    upvotes_received: int = 0
    votes_cast: int = 0
    max_question_score: int = 0
    max_answer_score: int = 0
    reputation: int = 0
    current_streak: int = 0
    longest_streak: int = 0


# Predicate name -> (stats -> value compared against the threshold)
PREDICATES = {
    "first_question": lambda s: s.question_count,
    "first_answer": lambda s: s.answer_count,
    "question_count": lambda s: s.question_count,
    "answer_count": lambda s: s.answer_count,
    "accepted_count": lambda s: s.accepted_count,
    "upvotes_received": lambda s: s.upvotes_received,
    "reputation": lambda s: s.reputation,
    "votes_cast": lambda s: s.votes_cast,
    "streak_days": lambda s: s.current_streak,
    "longest_streak": lambda s: s.longest_streak,
    "question_score": lambda s: s.max_question_score,
    "answer_score": lambda s: s.max_answer_score,
}


@dataclass
class VoteResult:
    score: int
    user_vote: int | None
    awarded: list[str] = field(default_factory=list)


def criteria_met(criteria: dict[str, Any], stats: UserStats) -> bool:
    """Unknown predicate types never match."""
    predicate = PREDICATES.get(criteria.get("type"))
    if predicate is None:
        return False
    threshold = criteria.get("threshold") or 1
    return predicate(stats) >= threshold


async def apply_reputation(
    db: AsyncSession,
    user_id: uuid.UUID,
    reason: str,
    source_type: str | None = None,
    source_id: uuid.UUID | None = None,
    reverse: bool = False,
) -> int:
    """Log and apply one reputation delta. Returns the change that was logged."""
    change = REPUTATION_POINTS[reason]
    if reverse:
        change = -change
        reason = f"{reason}_reversed"
    db.add(
        ReputationLog(
            user_id=user_id,
            change=change,
            reason=reason,
            source_type=source_type,
            source_id=source_id,
        )
    )
    new_value = Profile.reputation + change
    await db.execute(
        update(Profile)
        .where(Profile.user_id == user_id)
        .values(reputation=case((new_value < 0, 0), else_=new_value))
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return change


async def _count(db: AsyncSession, query) -> int:
    return (await db.execute(query)).scalar_one() or 0


async def get_user_stats(db: AsyncSession, user_id: uuid.UUID) -> UserStats:
    upvoted_questions = (
        select(func.count(Vote.id))
        .join(Question, Question.id == Vote.target_id)
        .where(Vote.target_type == "question", Vote.value == 1, Question.user_id == user_id)
    )
    upvoted_answers = (
        select(func.count(Vote.id))
        .join(Answer, Answer.id == Vote.target_id)
        .where(Vote.target_type == "answer", Vote.value == 1, Answer.user_id == user_id)
    )
    profile = (
        await db.execute(
            select(Profile.reputation, Profile.current_streak, Profile.longest_streak).where(
                Profile.user_id == user_id
            )
        )
    ).one_or_none()
    return UserStats(
        question_count=await _count(db, select(func.count(Question.id)).where(Question.user_id == user_id)),
        answer_count=await _count(db, select(func.count(Answer.id)).where(Answer.user_id == user_id)),
        accepted_count=await _count(
            db, select(func.count(Answer.id)).where(Answer.user_id == user_id, Answer.is_accepted.is_(True))
        ),
        upvotes_received=await _count(db, upvoted_questions) + await _count(db, upvoted_answers),
        votes_cast=await _count(db, select(func.count(Vote.id)).where(Vote.user_id == user_id)),
        max_question_score=await _count(db, select(func.max(Question.score)).where(Question.user_id == user_id)),
        max_answer_score=await _count(db, select(func.max(Answer.score)).where(Answer.user_id == user_id)),
        reputation=profile.reputation if profile else 0,
        current_streak=profile.current_streak if profile else 0,
        longest_streak=profile.longest_streak if profile else 0,
    )


async def evaluate_badges(db: AsyncSession, user_id: uuid.UUID) -> list[str]:
    """Award every catalog badge the user now qualifies for. Returns newly awarded slugs."""
    stats = await get_user_stats(db, user_id)
    owned = select(UserBadge.badge_id).where(UserBadge.user_id == user_id)
    candidates = (await db.execute(select(Badge).where(Badge.id.not_in(owned)))).scalars().all()
    awarded = []
    for badge in candidates:
        if not criteria_met(badge.criteria, stats):
            continue
        if await insert_or_conflict(db, UserBadge(user_id=user_id, badge_id=badge.id)):
            awarded.append(badge.slug)
    if awarded:
        logger.info("Awarded badges %s to user %s", ", ".join(awarded), user_id)
    return awarded


async def ensure_badge_catalog(db: AsyncSession) -> int:
    """Insert catalog badges missing by slug and refresh existing ones. Returns how many were inserted."""
    existing = {b.slug: b for b in (await db.execute(select(Badge))).scalars().all()}
    inserted = 0
    for definition in BADGE_CATALOG:
        badge = existing.get(definition["slug"])
        if badge is None:
            if await insert_or_conflict(db, Badge(**definition)):
                inserted += 1
            continue
        for key in ("name", "description", "tier", "icon", "criteria"):
            setattr(badge, key, definition[key])
    await db.flush()
    return inserted


async def ask_question(db: AsyncSession, user_id: uuid.UUID, title: str, body: str) -> tuple[Question, list[str]]:
    if not title or not title.strip():
        raise InvalidInput("Title is required")
    if not body or not body.strip():
        raise InvalidInput("Body is required")
    question = Question(user_id=user_id, title=title.strip(), body=body.strip(), score=0, answer_count=0)
    db.add(question)
    await db.flush()
    return question, await evaluate_badges(db, user_id)


async def post_answer(
    db: AsyncSession, question_id: uuid.UUID, user_id: uuid.UUID, body: str
) -> tuple[Answer, list[str]]:
    if not body or not body.strip():
        raise InvalidInput("Body is required")
    question = await get_for_update(db, Question, question_id)
    if question is None:
        raise NotFound("Question not found")
    answer = Answer(question_id=question_id, user_id=user_id, body=body.strip(), score=0, is_accepted=False)
    db.add(answer)
    question.answer_count += 1
    await db.flush()
    return answer, await evaluate_badges(db, user_id)


async def _target_owner(db: AsyncSession, target_type: str, target_id: uuid.UUID) -> uuid.UUID | None:
    model = Question if target_type == "question" else Answer
    return (await db.execute(select(model.user_id).where(model.id == target_id))).scalar_one_or_none()


async def _bump_score(db: AsyncSession, target_type: str, target_id: uuid.UUID, delta: int) -> int:
    model = Question if target_type == "question" else Answer
    if delta:
        await db.execute(
            update(model)
            .where(model.id == target_id)
            .values(score=model.score + delta)
            .execution_options(synchronize_session=False)
        )
    return (await db.execute(select(model.score).where(model.id == target_id))).scalar_one()


async def record_vote(
    db: AsyncSession,
    user_id: uuid.UUID,
    target_type: str,
    target_id: uuid.UUID,
    value: int,
) -> VoteResult:
    """
    Cast, switch or withdraw a vote.

    Repeating the same value withdraws the vote and reverses its reputation
    effects; the opposite value switches it. Upvotes pay the target's author,
    downvotes cost the author 2 and the voter 1. Voting on your own content
    is rejected.
    """
    if target_type not in VOTE_TARGETS:
        raise InvalidInput("Invalid vote target")
    if value not in (1, -1):
        raise InvalidInput("Vote value must be 1 or -1")
    owner_id = await _target_owner(db, target_type, target_id)
    if owner_id is None:
        raise NotFound("Vote target not found")
    if owner_id == user_id:
        raise InvalidInput("You cannot vote on your own content")

    up_reason = f"{target_type}_upvoted"
    down_reason = f"{target_type}_downvoted"
    existing = (
        await db.execute(
            select(Vote)
            .where(Vote.user_id == user_id, Vote.target_type == target_type, Vote.target_id == target_id)
            .with_for_update()
        )
    ).scalar_one_or_none()

    if existing is None:
        vote = Vote(user_id=user_id, target_type=target_type, target_id=target_id, value=value)
        if not await insert_or_conflict(db, vote):
            raise ConstraintViolation("votes.user_target", f"{target_type}:{target_id}")
        delta, user_vote = value, value
        if value == 1:
            await apply_reputation(db, owner_id, up_reason, target_type, target_id)
        else:
            await apply_reputation(db, owner_id, down_reason, target_type, target_id)
            await apply_reputation(db, user_id, "downvote_cast", "vote", vote.id)
    elif existing.value == value:
        await db.delete(existing)
        await db.flush()
        delta, user_vote = -value, None
        if value == 1:
            await apply_reputation(db, owner_id, up_reason, target_type, target_id, reverse=True)
        else:
            await apply_reputation(db, owner_id, down_reason, target_type, target_id, reverse=True)
            await apply_reputation(db, user_id, "downvote_cast", "vote", existing.id, reverse=True)
    else:
        delta, user_vote = value - existing.value, value
        existing.value = value
        await db.flush()
        if value == 1:
            await apply_reputation(db, owner_id, down_reason, target_type, target_id, reverse=True)
            await apply_reputation(db, owner_id, up_reason, target_type, target_id)
            await apply_reputation(db, user_id, "downvote_cast", "vote", existing.id, reverse=True)
        else:
            await apply_reputation(db, owner_id, up_reason, target_type, target_id, reverse=True)
            await apply_reputation(db, owner_id, down_reason, target_type, target_id)
            await apply_reputation(db, user_id, "downvote_cast", "vote", existing.id)

    score = await _bump_score(db, target_type, target_id, delta)
    awarded = await evaluate_badges(db, owner_id)
    awarded += await evaluate_badges(db, user_id)
    logger.info("Vote by %s on %s %s is now %s (score %d)", user_id, target_type, target_id, user_vote, score)
    return VoteResult(score=score, user_vote=user_vote, awarded=awarded)


async def accept_answer(
    db: AsyncSession, question_id: uuid.UUID, answer_id: uuid.UUID, user_id: uuid.UUID
) -> Answer:
    """
    Mark ``answer_id`` as the accepted answer of ``question_id``.

    Only the question's author may accept. Re-accepting the current answer is a
    no-op; switching reverses the previous acceptance's reputation first.
    """
    question = await get_for_update(db, Question, question_id)
    if question is None:
        raise NotFound("Question not found")
    if question.user_id != user_id:
        raise Unauthorized("Only the question author can accept an answer")
    answer = (
        await db.execute(select(Answer).where(Answer.id == answer_id, Answer.question_id == question_id))
    ).scalar_one_or_none()
    if answer is None:
        raise NotFound("Answer not found")
    if question.accepted_answer_id == answer_id:
        return answer

    if question.accepted_answer_id is not None:
        previous = await db.get(Answer, question.accepted_answer_id)
        if previous is not None:
            previous.is_accepted = False
            await apply_reputation(db, previous.user_id, "answer_accepted", "answer", previous.id, reverse=True)
            await apply_reputation(db, user_id, "accepted_answer", "question", question_id, reverse=True)

    answer.is_accepted = True
    question.accepted_answer_id = answer_id
    question.status = "answered"
    await db.flush()
    await apply_reputation(db, answer.user_id, "answer_accepted", "answer", answer_id)
    await apply_reputation(db, user_id, "accepted_answer", "question", question_id)
    await evaluate_badges(db, answer.user_id)
    logger.info("Answer %s accepted on question %s", answer_id, question_id)
    return answer
