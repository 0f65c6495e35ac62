"""
Duplicate Detector.

An upload is a duplicate if an existing book carries the same inferred exam
identity (exam name + year, a re-scan of the same paper), or failing that the
same SHA-256 of its bytes. Read-only; the caller decides whether to reject.
"""

import hashlib
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database.models import Book, UploadStatus

MATCH_EXAM_IDENTITY = "exam_identity"
MATCH_CONTENT_HASH = "content_hash"


@dataclass
class DuplicateMatch:
    book_id: int
    title: str
    upload_status: UploadStatus
    total_questions_extracted: int
    matched_on: str


def compute_content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _to_match(book: Book, matched_on: str) -> DuplicateMatch:
    return DuplicateMatch(
        book_id=book.id,
        title=book.title,
        upload_status=book.upload_status,
        total_questions_extracted=book.total_questions_extracted or 0,
        matched_on=matched_on,
    )


def find_duplicate(
    db: Session,
    content_hash: str,
    exam_name: Optional[str] = None,
    exam_year: Optional[int] = None,
    exclude_book_id: Optional[int] = None,
) -> Optional[DuplicateMatch]:
    """
    Look for an existing book matching this upload.

    The exam-identity check only runs when both name and year are known;
    names compare case-insensitively.
    """
    if exam_name and exam_year:
        q = db.query(Book).filter(
            func.lower(Book.exam_name) == exam_name.strip().lower(),
            Book.exam_year == exam_year,
        )
        if exclude_book_id is not None:
            q = q.filter(Book.id != exclude_book_id)
        book = q.order_by(Book.id).first()
        if book:
            return _to_match(book, MATCH_EXAM_IDENTITY)

    q = db.query(Book).filter(Book.content_hash == content_hash)
    if exclude_book_id is not None:
        q = q.filter(Book.id != exclude_book_id)
    book = q.order_by(Book.id).first()
    if book:
        return _to_match(book, MATCH_CONTENT_HASH)
    return None
