"""
Upload intake: hash → metadata inference → duplicate check → book creation.

Runs inside the upload request. Metadata inference never blocks the upload;
a duplicate raises DuplicateDocumentError after the inference call has been
written to the ledger (with no book attached).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from database.models import Book, BookType, PyqType, UploadStatus
from database.schemas import DetectedMetadata
from services.blob_store import BlobStore, source_key

from .config import DEFAULT_EXPECTED_QUESTIONS
from .cost_ledger import CostLedger
from .duplicates import compute_content_hash, find_duplicate
from .exceptions import DuplicateDocumentError
from .metadata import GENERIC_DESCRIPTION, MetadataResult, fallback_title, infer_metadata
from .page_splitter import render_first_page

log = logging.getLogger(__name__)


@dataclass
class UploadOverrides:
    """Form fields supplied with the upload; they win over inferred values."""
    title: Optional[str] = None
    description: Optional[str] = None
    subject: Optional[str] = None
    exam_name: Optional[str] = None
    exam_year: Optional[int] = None
    book_type: BookType = BookType.PYQ
    pyq_type: Optional[PyqType] = None
    expected_questions: Optional[int] = None


@dataclass
class IntakeResult:
    book: Book
    metadata: DetectedMetadata


def _record_calls(ledger: CostLedger, inferred: MetadataResult, book_id: Optional[int]) -> None:
    for call in inferred.calls:
        ledger.record(call, book_id=book_id)


async def intake_upload(
    db: Session,
    blob_store: BlobStore,
    vision,
    ledger: CostLedger,
    filename: str,
    data: bytes,
    overrides: Optional[UploadOverrides] = None,
    **retry_options,
) -> IntakeResult:
    """
    Create a pending Book for an uploaded PDF.

    retry_options (max_attempts, initial_delay, timeout) are passed through to
    metadata inference.

    Raises:
        DuplicateDocumentError if the exam identity or the content hash already exists
    """
    overrides = overrides or UploadOverrides()
    content_hash = compute_content_hash(data)

    first_page = await asyncio.to_thread(render_first_page, data)
    inferred = await infer_metadata(vision, first_page, **retry_options)
    meta = inferred.metadata
    log.info("[Intake] %s: hash=%s… exam=%s year=%s", filename, content_hash[:12], meta.exam_name, meta.exam_year)

    exam_name = overrides.exam_name or meta.exam_name
    exam_year = overrides.exam_year or meta.exam_year
    match = find_duplicate(db, content_hash, exam_name, exam_year)
    if match:
        _record_calls(ledger, inferred, None)
        raise DuplicateDocumentError(match)

    book = Book(
        title=overrides.title or meta.title or fallback_title(filename),
        description=overrides.description or meta.description or GENERIC_DESCRIPTION,
        filename=filename,
        content_hash=content_hash,
        file_size_bytes=len(data),
        exam_name=exam_name,
        exam_year=exam_year,
        exam_type=exam_name,
        subject=overrides.subject or meta.subject,
        book_type=overrides.book_type,
        pyq_type=overrides.pyq_type or meta.category,
        upload_status=UploadStatus.PENDING,
        extraction_progress=0,
        expected_questions=overrides.expected_questions or DEFAULT_EXPECTED_QUESTIONS,
        current_step="Uploaded",
    )
    db.add(book)
    db.commit()
    db.refresh(book)

    try:
        book.storage_key = blob_store.put(source_key(book.id), data, content_type="application/pdf")
        db.commit()
    except Exception:
        db.delete(book)
        db.commit()
        _record_calls(ledger, inferred, None)
        raise

    _record_calls(ledger, inferred, book.id)
    return IntakeResult(book=book, metadata=meta)
