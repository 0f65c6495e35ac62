"""
Extraction report: overview, missing numbers, per-page and per-section
breakdowns, and the book's cost summary.
"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database.models import (
    Book, PageExtractionResult, PageStatus, Question, SectionExtractionResult,
)
from database.schemas import BookResponse, PageResultResponse, SectionResultResponse
from services.blob_store import BlobStore

from .cost_ledger import get_book_cost_summary


def page_details(db: Session, book_id: int, blob_store: Optional[BlobStore] = None) -> list:
    pages = db.query(PageExtractionResult).filter(
        PageExtractionResult.book_id == book_id
    ).order_by(PageExtractionResult.page_number).all()
    out = []
    for page in pages:
        item = PageResultResponse.model_validate(page)
        if blob_store is not None and page.page_image_key:
            item.image_url = blob_store.url(page.page_image_key)
        out.append(item.model_dump(mode="json"))
    return out


def build_extraction_report(db: Session, book: Book, blob_store: Optional[BlobStore] = None) -> dict:
    pages = page_details(db, book.id, blob_store)
    sections = db.query(SectionExtractionResult).filter(
        SectionExtractionResult.book_id == book.id
    ).order_by(SectionExtractionResult.start_page).all()

    status_counts = {s.value: 0 for s in PageStatus}
    for page in pages:
        status_counts[page["status"]] += 1

    questions = db.query(func.count(Question.id)).filter(Question.book_id == book.id).scalar() or 0
    expected = book.expected_questions or 0
    missing = sorted({n for s in sections for n in (s.missing_question_numbers or [])})

    return {
        "book": BookResponse.model_validate(book).model_dump(mode="json"),
        "overview": {
            "total_pages": len(pages),
            "successful_pages": status_counts[PageStatus.SUCCESS.value],
            "partial_pages": status_counts[PageStatus.PARTIAL.value],
            "failed_pages": status_counts[PageStatus.FAILED.value],
            "pending_pages": status_counts[PageStatus.PENDING.value],
            "questions_extracted": questions,
            "expected_questions": expected,
            "completion_percent": round(min(100.0, 100.0 * questions / expected), 1) if expected else 0.0,
        },
        "missing_question_numbers": missing,
        "pages": pages,
        "sections": [SectionResultResponse.model_validate(s).model_dump(mode="json") for s in sections],
        "cost": get_book_cost_summary(db, book.id),
    }
