"""
Tests for stratified question selection.
"""

import random
from collections import Counter

import pytest

from competency_backend.assessments.base.models import QuestionType
from competency_backend.assessments.competency.competency_config import (
    QUESTIONS_BY_TYPE,
    TOTAL_COMPETENCY_QUESTIONS,
)
from competency_backend.assessments.competency.question_selection import (
    fisher_yates_shuffle,
    group_questions_by_type,
    select_questions,
)
from competency_backend.common.error_handling import InsufficientQuestionPoolError

from conftest import build_pool, make_question


class TestFisherYatesShuffle:
    def test_returns_permutation_without_mutating_input(self):
        items = list(range(20))
        shuffled = fisher_yates_shuffle(items, random.Random(1))

        assert sorted(shuffled) == items
        assert items == list(range(20))

    def test_seeded_shuffle_is_reproducible(self):
        items = list(range(10))
        assert fisher_yates_shuffle(items, random.Random(42)) == fisher_yates_shuffle(items, random.Random(42))

    def test_empty_and_single_item(self):
        assert fisher_yates_shuffle([]) == []
        assert fisher_yates_shuffle(["only"]) == ["only"]


class TestSelectQuestions:
    def test_selects_configured_total_without_duplicates(self):
        pool = build_pool(extra_per_type=3)
        by_id = {q.id: q for q in pool}

        for seed in range(25):
            selected = select_questions(pool, rng=random.Random(seed))
            ids = [s.question_id for s in selected]

            assert len(selected) == TOTAL_COMPETENCY_QUESTIONS
            assert len(set(ids)) == len(ids)

            counts = Counter(by_id[qid].question_type for qid in ids)
            assert dict(counts) == dict(QUESTIONS_BY_TYPE)

    def test_orders_are_sequential_from_one(self):
        selected = select_questions(build_pool(), rng=random.Random(3))
        assert [s.order for s in selected] == list(range(1, TOTAL_COMPETENCY_QUESTIONS + 1))

    def test_order_is_not_grouped_by_type(self):
        pool = build_pool(extra_per_type=0)
        by_id = {q.id: q for q in pool}
        grouped_order = [
            t for t in QUESTIONS_BY_TYPE for _ in range(QUESTIONS_BY_TYPE[t])
        ]

        orders = set()
        for seed in range(10):
            selected = select_questions(pool, rng=random.Random(seed))
            orders.add(tuple(by_id[s.question_id].question_type for s in selected))

        assert len(orders) > 1
        assert any(sequence != tuple(grouped_order) for sequence in orders)

    def test_exact_pool_uses_every_question(self):
        pool = build_pool(extra_per_type=0)
        selected = select_questions(pool, rng=random.Random(0))
        assert {s.question_id for s in selected} == {q.id for q in pool}

    def test_missing_type_fails(self):
        pool = [q for q in build_pool() if q.question_type != QuestionType.VIDEO]

        with pytest.raises(InsufficientQuestionPoolError) as exc_info:
            select_questions(pool)

        assert exc_info.value.question_type == "VIDEO"
        assert exc_info.value.available == 0
        assert "No VIDEO questions available" in exc_info.value.message

    def test_short_type_fails_with_counts(self):
        pool = [q for q in build_pool(extra_per_type=0) if q.id != "short_answer-0"]

        with pytest.raises(InsufficientQuestionPoolError) as exc_info:
            select_questions(pool)

        error = exc_info.value
        assert error.question_type == "SHORT_ANSWER"
        assert error.available == 4
        assert error.required == 5
        assert error.details["required"] == 5

    def test_duplicate_pool_entries_do_not_count_twice(self):
        pool = build_pool(extra_per_type=0)
        audio = [q for q in pool if q.question_type == QuestionType.AUDIO]
        # Two copies of one AUDIO question do not satisfy a quota of two
        pool = [q for q in pool if q.question_type != QuestionType.AUDIO] + [audio[0], audio[0]]

        with pytest.raises(InsufficientQuestionPoolError):
            select_questions(pool)

    def test_custom_quotas(self):
        pool = [make_question(f"mcq-{i}") for i in range(5)]
        selected = select_questions(pool, quotas={QuestionType.MCQ: 3}, rng=random.Random(9))
        assert len(selected) == 3


class TestGroupQuestionsByType:
    def test_every_type_has_a_key(self):
        grouped = group_questions_by_type([make_question("mcq-1")])
        assert set(grouped) == set(QuestionType)
        assert [q.id for q in grouped[QuestionType.MCQ]] == ["mcq-1"]
        assert grouped[QuestionType.VIDEO] == []
