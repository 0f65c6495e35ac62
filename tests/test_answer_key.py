"""
Tests for answer-key parsing, extraction and application
"""

import asyncio

import pytest

from database.models import ApiCostTracking, Question, QuestionType
from extraction.answer_key import (
    OPERATION_ANSWER_KEY, apply_answer_key, extract_answer_key, normalize_answer, parse_answer_key,
)

from conftest import FakeVision


@pytest.mark.unit
@pytest.mark.parametrize("raw, question_type, expected", [
    ("(b)", None, "B"),
    ("a, c", None, "AC"),
    ("CA", QuestionType.MULTIPLE_CORRECT, "AC"),
    ("2", QuestionType.SINGLE_CORRECT, "B"),
    ("2", None, "2"),
    ("12", QuestionType.INTEGER_TYPE, "12"),
    ("b", QuestionType.INTEGER_TYPE, None),
    ("E", None, None),
    ("", None, None),
    (None, None, None),
])
def test_normalize_answer(raw, question_type, expected):
    assert normalize_answer(raw, question_type) == expected


@pytest.mark.unit
def test_parse_answer_key_skips_unusable_entries():
    assert parse_answer_key({"Q1": "(a)", "2": "c", "3": "??", "": "B"}) == {1: "A", 2: "C"}


def test_extract_answer_key_records_cost(db, ledger, make_book):
    book = make_book()
    vision = FakeVision(['Here you go: {"1": "A", "2": "(c)", "3": "b d"}'])

    key = asyncio.run(extract_answer_key(vision, ledger, book.id, 3, b"png", initial_delay=0))

    assert key == {1: "A", 2: "C", 3: "BD"}
    row = db.query(ApiCostTracking).filter_by(book_id=book.id).one()
    assert row.operation_type == OPERATION_ANSWER_KEY
    assert row.page_number == 3


def _question(book_id, number, question_type=QuestionType.SINGLE_CORRECT, **fields):
    values = dict(
        book_id=book_id, page_number=1, question_number=number, question_type=question_type,
        question_text=f"Question {number}: choose the correct option",
        subject="Physics", topic="Optics",
        option_a="a", option_b="b", option_c="c", option_d="d",
        is_active=False,
    )
    values.update(fields)
    return Question(**values)


def test_apply_answer_key(db, make_book):
    book = make_book()
    db.add_all([
        _question(book.id, 1),
        _question(book.id, 2, QuestionType.INTEGER_TYPE, option_a=None, option_b=None, option_c=None, option_d=None),
        _question(book.id, 3, topic=None),
    ])
    db.commit()

    result = apply_answer_key(db, book.id, {"1": "(b)", "Q2": "7", "3": "E", "9": "A"})

    assert result == {"updated": 2, "invalid": [3], "not_found": [9]}
    questions = {q.question_number: q for q in db.query(Question).filter_by(book_id=book.id)}
    assert questions[1].correct_answer == "B"
    assert questions[1].is_active is True
    assert questions[2].correct_answer == "7"
    assert questions[2].is_active is True
    assert questions[3].correct_answer is None
    assert questions[3].is_active is False
