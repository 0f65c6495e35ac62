"""
Tests for the retry recommendation
"""

import pytest

from database.models import PageExtractionResult, PageStatus, PyqType
from extraction.exceptions import BookNotFoundError
from extraction.page_splitter import split_document
from extraction.retry_advisor import (
    ACTION_FULL_RERUN, ACTION_NONE, ACTION_RETRY_PAGES, ACTION_RETRY_SECTION, format_usd, recommend_retry,
)
from extraction.sections import plan_sections

from conftest import make_pdf


@pytest.fixture
def book_with_statuses(db, blob_store, make_book, settings):
    def _make(statuses, **fields):
        book = make_book(pages=len(statuses), **fields)
        split_document(db, blob_store, book.id, make_pdf(len(statuses)), dpi=72)
        plan_sections(db, book, len(statuses), settings)
        for page in db.query(PageExtractionResult).filter_by(book_id=book.id):
            page.status = statuses[page.page_number - 1]
        db.commit()
        return book

    return _make


@pytest.mark.unit
def test_format_usd():
    assert format_usd(0.1) == "$0.10"
    assert format_usd(3 * 0.1) == "$0.30"
    assert format_usd(0) == "$0.00"


def test_nothing_to_retry(db, book_with_statuses):
    book = book_with_statuses([PageStatus.SUCCESS, PageStatus.SUCCESS])

    rec = recommend_retry(db, book.id)

    assert rec.action == ACTION_NONE
    assert rec.pages == []
    assert rec.estimated_cost == "$0.00"
    assert rec.full_rerun_cost == "$0.20"


def test_failed_and_partial_pages(db, book_with_statuses):
    S, P, F = PageStatus.SUCCESS, PageStatus.PARTIAL, PageStatus.FAILED
    book = book_with_statuses([S, F, S, P, S])

    rec = recommend_retry(db, book.id)

    assert rec.action == ACTION_RETRY_PAGES
    assert rec.pages == [2, 4]
    assert rec.failed_pages == [2]
    assert rec.partial_pages == [4]
    assert rec.estimated_cost == "$0.20"
    assert rec.estimated_time_seconds == 30
    assert rec.full_rerun_cost == "$0.50"
    assert rec.full_rerun_time_seconds == 75
    assert rec.estimated_savings == "$0.30"
    assert "$0.20" in rec.message


def test_every_page_failed_recommends_full_rerun(db, book_with_statuses):
    book = book_with_statuses([PageStatus.FAILED, PageStatus.PARTIAL])

    rec = recommend_retry(db, book.id)

    assert rec.action == ACTION_FULL_RERUN
    assert rec.estimated_cost == rec.full_rerun_cost


def test_whole_section_failed_recommends_section(db, book_with_statuses):
    # JEE over 5 pages: Physics 1-2, Chemistry 3, Mathematics 4-5
    S, F = PageStatus.SUCCESS, PageStatus.FAILED
    book = book_with_statuses([S, S, S, F, F], exam_name="JEE", pyq_type=PyqType.FULL_LENGTH)

    rec = recommend_retry(db, book.id)

    assert rec.action == ACTION_RETRY_SECTION
    assert rec.section == "Mathematics"
    assert rec.pages == [4, 5]


def test_custom_per_page_estimates(db, book_with_statuses):
    book = book_with_statuses([PageStatus.SUCCESS, PageStatus.FAILED])

    rec = recommend_retry(db, book.id, per_page_cost=0.25, per_page_seconds=20)

    assert rec.estimated_cost == "$0.25"
    assert rec.estimated_time_seconds == 20
    assert rec.to_dict()["action"] == ACTION_RETRY_PAGES


def test_unknown_book(db):
    with pytest.raises(BookNotFoundError):
        recommend_retry(db, 999)
