# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Votes, accepted answers, reputation floor and badge awards."""

import uuid

import pytest
from sqlalchemy import func, select

from abi_server.errors import InvalidInput, NotFound, Unauthorized
from abi_server.models import Badge, Profile, ReputationLog, UserBadge
from abi_server.services import reputation
from abi_server.services.reputation import UserStats, criteria_met

pytestmark = pytest.mark.anyio


async def _reputation(db, user):
    return (await db.execute(select(Profile.reputation).where(Profile.user_id == user.id))).scalar_one()


@pytest.fixture
async def catalog(db):
    await reputation.ensure_badge_catalog(db)
    await db.commit()


async def test_catalog_is_idempotent(db):
    assert await reputation.ensure_badge_catalog(db) == len(reputation.BADGE_CATALOG)
    await db.commit()
    assert await reputation.ensure_badge_catalog(db) == 0
    count = (await db.execute(select(func.count()).select_from(Badge))).scalar_one()
    assert count == len(reputation.BADGE_CATALOG)


def test_criteria_predicates():
    stats = UserStats(question_count=1, answer_count=4, reputation=600, current_streak=7)
    assert criteria_met({"type": "first_question"}, stats)
    assert not criteria_met({"type": "first_answer", "threshold": 5}, stats)
    assert criteria_met({"type": "reputation", "threshold": 500}, stats)
    assert criteria_met({"type": "streak_days", "threshold": 7}, stats)
    assert not criteria_met({"type": "streak_days", "threshold": 14}, stats)
    assert not criteria_met({"type": "moon_phase", "threshold": 1}, stats)


async def test_first_question_badge_is_awarded_once(db, make, catalog):
    user = await make.user()
    _, awarded = await reputation.ask_question(db, user.id, "How do holds work?", "Details inside.")
    assert awarded == ["first-question"]
    _, awarded = await reputation.ask_question(db, user.id, "And releases?", "More details.")
    assert awarded == []
    owned = (await db.execute(select(func.count()).select_from(UserBadge).where(UserBadge.user_id == user.id))).scalar_one()
    assert owned == 1


async def test_post_answer_counts_and_validates(db, make, catalog):
    asker = await make.user()
    answerer = await make.user()
    question, _ = await reputation.ask_question(db, asker.id, "Title", "Body")
    answer, awarded = await reputation.post_answer(db, question.id, answerer.id, "An answer")
    assert answer.question_id == question.id
    assert question.answer_count == 1
    assert awarded == ["first-answer"]
    with pytest.raises(InvalidInput):
        await reputation.post_answer(db, question.id, answerer.id, "   ")
    with pytest.raises(NotFound):
        await reputation.post_answer(db, uuid.uuid4(), answerer.id, "Orphan")


async def test_upvote_and_withdraw(db, make, catalog):
    asker = await make.user()
    voter = await make.user()
    question, _ = await reputation.ask_question(db, asker.id, "Title", "Body")

    result = await reputation.record_vote(db, voter.id, "question", question.id, 1)
    assert result.score == 1
    assert result.user_vote == 1
    assert await _reputation(db, asker) == 5

    result = await reputation.record_vote(db, voter.id, "question", question.id, 1)
    assert result.score == 0
    assert result.user_vote is None
    assert await _reputation(db, asker) == 0

    reasons = (
        await db.execute(select(ReputationLog.reason).where(ReputationLog.user_id == asker.id))
    ).scalars().all()
    assert sorted(reasons) == ["question_upvoted", "question_upvoted_reversed"]


async def test_downvote_costs_author_and_voter(db, make, catalog):
    asker = await make.user()
    answerer = await make.user(reputation=10)
    voter = await make.user(reputation=10)
    question, _ = await reputation.ask_question(db, asker.id, "Title", "Body")
    answer, _ = await reputation.post_answer(db, question.id, answerer.id, "Answer")

    result = await reputation.record_vote(db, voter.id, "answer", answer.id, -1)
    assert result.score == -1
    assert await _reputation(db, answerer) == 8
    assert await _reputation(db, voter) == 9


async def test_switching_vote_reverses_previous_effects(db, make, catalog):
    asker = await make.user()
    answerer = await make.user(reputation=10)
    voter = await make.user(reputation=10)
    question, _ = await reputation.ask_question(db, asker.id, "Title", "Body")
    answer, _ = await reputation.post_answer(db, question.id, answerer.id, "Answer")

    await reputation.record_vote(db, voter.id, "answer", answer.id, -1)
    result = await reputation.record_vote(db, voter.id, "answer", answer.id, 1)
    assert result.score == 1
    assert result.user_vote == 1
    assert await _reputation(db, answerer) == 20
    assert await _reputation(db, voter) == 10

    result = await reputation.record_vote(db, voter.id, "answer", answer.id, -1)
    assert result.score == -1
    assert await _reputation(db, answerer) == 8
    assert await _reputation(db, voter) == 9


async def test_reputation_never_goes_negative(db, make, catalog):
    asker = await make.user(reputation=1)
    voter = await make.user()
    question, _ = await reputation.ask_question(db, asker.id, "Title", "Body")
    await reputation.record_vote(db, voter.id, "question", question.id, -1)
    assert await _reputation(db, asker) == 0
    assert await _reputation(db, voter) == 0


async def test_vote_rejections(db, make, catalog):
    asker = await make.user()
    voter = await make.user()
    question, _ = await reputation.ask_question(db, asker.id, "Title", "Body")
    with pytest.raises(InvalidInput):
        await reputation.record_vote(db, asker.id, "question", question.id, 1)
    with pytest.raises(InvalidInput):
        await reputation.record_vote(db, voter.id, "question", question.id, 2)
    with pytest.raises(InvalidInput):
        await reputation.record_vote(db, voter.id, "comment", question.id, 1)
    with pytest.raises(NotFound):
        await reputation.record_vote(db, voter.id, "answer", question.id, 1)


async def test_accept_answer(db, make, catalog):
    asker = await make.user()
    first = await make.user()
    second = await make.user()
    question, _ = await reputation.ask_question(db, asker.id, "Title", "Body")
    answer_a, _ = await reputation.post_answer(db, question.id, first.id, "A")
    answer_b, _ = await reputation.post_answer(db, question.id, second.id, "B")

    with pytest.raises(Unauthorized):
        await reputation.accept_answer(db, question.id, answer_a.id, first.id)

    accepted = await reputation.accept_answer(db, question.id, answer_a.id, asker.id)
    assert accepted.is_accepted
    assert question.accepted_answer_id == answer_a.id
    assert question.status == "answered"
    assert await _reputation(db, first) == 15
    assert await _reputation(db, asker) == 2

    # Accepting the same answer again changes nothing
    await reputation.accept_answer(db, question.id, answer_a.id, asker.id)
    assert await _reputation(db, first) == 15
    assert await _reputation(db, asker) == 2

    await reputation.accept_answer(db, question.id, answer_b.id, asker.id)
    assert not answer_a.is_accepted
    assert answer_b.is_accepted
    assert await _reputation(db, first) == 0
    assert await _reputation(db, second) == 15
    assert await _reputation(db, asker) == 2


async def test_accept_answer_from_another_question(db, make, catalog):
    asker = await make.user()
    answerer = await make.user()
    question, _ = await reputation.ask_question(db, asker.id, "One", "Body")
    other, _ = await reputation.ask_question(db, asker.id, "Two", "Body")
    answer, _ = await reputation.post_answer(db, other.id, answerer.id, "Answer")
    with pytest.raises(NotFound):
        await reputation.accept_answer(db, question.id, answer.id, asker.id)
