"""
Exam book upload and extraction endpoints.

Upload: validate → hash → metadata inference → duplicate check → create book → queue job.
Everything slow (splitting, extraction, aggregation) runs in the huey worker;
these handlers only read state or submit jobs.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, UploadFile, File, HTTPException, status, Depends, Form, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import func
from sqlalchemy.orm import Session

from database.database import get_db, SessionLocal
from database.models import Book, BookType, PageExtractionResult, PyqType, Question, UploadStatus
from database.schemas import (
    AnswerKeyApplyRequest, AnswerKeyExtractRequest, BookDetailResponse, BookListResponse,
    BookResponse, BookUpdate, DuplicateBookSummary, QuestionListResponse,
    QuestionResponse, RetryPagesRequest, RetrySectionRequest, UploadResponse,
)
from extraction.answer_key import apply_answer_key, extract_answer_key
from extraction.config import ALLOWED_EXTENSIONS, MAX_UPLOAD_SIZE, PER_PAGE_COST_USD, PER_PAGE_SECONDS, PROGRESS_STREAM_INTERVAL
from extraction.cost_ledger import CostLedger
from extraction.duplicates import DuplicateMatch, find_duplicate
from extraction.exceptions import DuplicateDocumentError
from extraction.intake import UploadOverrides, intake_upload
from extraction.progress import get_snapshot, stream_progress
from extraction.report import build_extraction_report, page_details
from extraction.retry_advisor import format_usd, recommend_retry
from extraction.sections import resolve_section_pages
from extraction.vision_client import get_vision_client
from services.blob_store import BlobStore, book_prefix, get_blob_store
from services.cache import Cache, get_cache
from services.tasks import JobQueue, MODE_FULL, MODE_PAGES, MODE_SECTION, MODE_SPLIT, get_job_queue

log = logging.getLogger(__name__)

router = APIRouter(prefix="/books", tags=["books"])


# ─── Dependencies ─────────────────────────────────────────────────────────────

def get_cost_ledger() -> CostLedger:
    return CostLedger(SessionLocal)


def get_session_factory():
    return SessionLocal


def validate_file(file: UploadFile) -> tuple[str, str]:
    """Validate uploaded file"""
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required"
        )

    filename = file.filename.strip()
    extension = Path(filename).suffix.lower().lstrip(".")

    if extension not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported file type: .{extension or '?'}. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )

    return filename, extension


def _get_book_or_404(db: Session, book_id: int) -> Book:
    book = db.query(Book).filter(Book.id == book_id).first()
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


def _duplicate_detail(match: DuplicateMatch) -> dict:
    summary = DuplicateBookSummary(
        book_id=match.book_id,
        title=match.title,
        upload_status=match.upload_status,
        total_questions_extracted=match.total_questions_extracted,
        matched_on=match.matched_on,
    )
    return {
        "message": "This exam paper has already been uploaded.",
        "existing_book": summary.model_dump(mode="json"),
        "actions": {
            "view": f"/books/{match.book_id}",
            "delete_and_reupload": f"/books/{match.book_id}",
            "retry": f"/books/{match.book_id}/retry",
        },
        "hint": "Delete the existing book and upload again, or use the retry endpoint to re-run its extraction.",
    }


# ─── Upload ───────────────────────────────────────────────────────────────────

@router.post("/upload", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_book(
    file: UploadFile = File(..., description="Exam paper PDF"),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    subject: Optional[str] = Form(None),
    exam_name: Optional[str] = Form(None, alias="examName"),
    exam_year: Optional[int] = Form(None, alias="examYear"),
    book_type: BookType = Form(BookType.PYQ, alias="bookType"),
    pyq_type: Optional[PyqType] = Form(None, alias="pyqType"),
    expected_questions: Optional[int] = Form(None, alias="expectedQuestions", ge=1),
    detect_only: bool = Form(False, alias="detectOnly", description="Create the book without processing it"),
    preview_mode: bool = Form(False, alias="previewMode", description="Split pages only"),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    vision=Depends(get_vision_client),
    ledger: CostLedger = Depends(get_cost_ledger),
    jobs: JobQueue = Depends(get_job_queue),
):
    """
    Upload an exam PDF.

    201 with the created book and detected metadata, or 409 with the
    conflicting book and remediation links when it is a duplicate.
    """
    filename, _ = validate_file(file)
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(data) > MAX_UPLOAD_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large: {len(data)} bytes. Max: {MAX_UPLOAD_SIZE} bytes"
        )

    overrides = UploadOverrides(
        title=title, description=description, subject=subject,
        exam_name=exam_name, exam_year=exam_year, book_type=book_type,
        pyq_type=pyq_type, expected_questions=expected_questions,
    )
    try:
        result = await intake_upload(db, blob_store, vision, ledger, filename, data, overrides)
    except DuplicateDocumentError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=_duplicate_detail(e.match))

    book = result.book
    if detect_only:
        processing = "detect_only"
    elif preview_mode:
        processing = "preview"
        jobs.submit(book.id, MODE_SPLIT)
    else:
        processing = "queued"
        book.current_step = "Queued for extraction"
        book.job_queued_at = datetime.now(timezone.utc)
        db.commit()
        jobs.submit(book.id, MODE_FULL)

    db.refresh(book)
    log.info("Uploaded book %d (%s), processing=%s", book.id, filename, processing)
    return UploadResponse(
        book=BookResponse.model_validate(book),
        detected_metadata=result.metadata,
        processing=processing,
    )


# ─── CRUD ─────────────────────────────────────────────────────────────────────

@router.get("", response_model=BookListResponse)
def list_books(
    status_filter: Optional[UploadStatus] = Query(None, alias="status"),
    subject: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    query = db.query(Book)
    if status_filter:
        query = query.filter(Book.upload_status == status_filter)
    if subject:
        query = query.filter(func.lower(Book.subject) == subject.strip().lower())
    total = query.count()
    books = query.order_by(Book.created_at.desc(), Book.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return BookListResponse(
        books=[BookResponse.model_validate(b) for b in books],
        total=total, page=page, limit=limit,
    )


@router.get("/{book_id}", response_model=BookDetailResponse)
def get_book(book_id: int, db: Session = Depends(get_db)):
    book = _get_book_or_404(db, book_id)
    count = db.query(func.count(Question.id)).filter(Question.book_id == book_id).scalar() or 0
    response = BookDetailResponse.model_validate(book)
    response.question_count = count
    return response


@router.get("/{book_id}/questions", response_model=QuestionListResponse)
def list_book_questions(
    book_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    _get_book_or_404(db, book_id)
    query = db.query(Question).filter(Question.book_id == book_id)
    total = query.count()
    questions = query.order_by(Question.question_number).offset((page - 1) * limit).limit(limit).all()
    return QuestionListResponse(
        questions=[QuestionResponse.model_validate(q) for q in questions],
        total=total, page=page, limit=limit,
    )


@router.patch("/{book_id}", response_model=BookResponse)
def update_book(
    book_id: int,
    update: BookUpdate,
    db: Session = Depends(get_db),
    jobs: JobQueue = Depends(get_job_queue),
):
    """Edit book metadata; startProcessing=true queues a full extraction run."""
    book = _get_book_or_404(db, book_id)
    changes = update.model_dump(exclude_unset=True, exclude={"start_processing"})

    new_name = changes.get("exam_name", book.exam_name)
    new_year = changes.get("exam_year", book.exam_year)
    if ("exam_name" in changes or "exam_year" in changes) and new_name and new_year:
        match = find_duplicate(db, book.content_hash, new_name, new_year, exclude_book_id=book.id)
        if match and match.matched_on == "exam_identity":
            raise HTTPException(status_code=409, detail=_duplicate_detail(match))

    for field, value in changes.items():
        setattr(book, field, value)

    if update.start_processing:
        if book.upload_status == UploadStatus.PROCESSING:
            raise HTTPException(status_code=409, detail="Book is already being processed")
        if book.job_queued_at is not None:
            raise HTTPException(status_code=409, detail="An extraction run is already queued for this book")
        book.upload_status = UploadStatus.PENDING
        book.error_message = None
        book.current_step = "Queued for extraction"
        book.job_queued_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(book)

    if update.start_processing:
        jobs.submit(book.id, MODE_FULL)
    return book


@router.delete("/{book_id}")
def delete_book(
    book_id: int,
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Delete a book with its pages, sections, questions, cost rows and stored files."""
    book = _get_book_or_404(db, book_id)
    try:
        removed = blob_store.delete_prefix(book_prefix(book_id))
    except Exception as e:
        removed = 0
        log.warning("Blob cleanup failed for book %d: %s", book_id, e)
    db.delete(book)
    db.commit()
    return {"message": "Book deleted", "book_id": book_id, "files_removed": removed}


# ─── Retry ────────────────────────────────────────────────────────────────────

@router.post("/{book_id}/retry")
def retry_book(book_id: int, db: Session = Depends(get_db), jobs: JobQueue = Depends(get_job_queue)):
    """Full re-run; only from failed or completed."""
    book = _get_book_or_404(db, book_id)
    if book.upload_status not in (UploadStatus.FAILED, UploadStatus.COMPLETED):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot retry a book in '{book.upload_status.value}' state; only failed or completed books can be retried",
        )
    book.upload_status = UploadStatus.PENDING
    book.error_message = None
    book.extraction_progress = 0
    book.current_step = "Queued for retry"
    book.job_queued_at = datetime.now(timezone.utc)
    book.processing_started_at = None
    book.processing_completed_at = None
    db.commit()
    jobs.submit(book.id, MODE_FULL)
    return {"message": "Retry queued", "book_id": book.id, "upload_status": book.upload_status.value}


@router.post("/{book_id}/retry-pages")
def retry_pages(
    book_id: int,
    request: RetryPagesRequest,
    db: Session = Depends(get_db),
    jobs: JobQueue = Depends(get_job_queue),
):
    book = _get_book_or_404(db, book_id)
    if book.upload_status == UploadStatus.PROCESSING:
        raise HTTPException(status_code=409, detail="Book is already being processed")
    wanted = sorted(set(request.page_numbers))
    existing = {
        r[0] for r in db.query(PageExtractionResult.page_number).filter(
            PageExtractionResult.book_id == book_id,
            PageExtractionResult.page_number.in_(wanted),
        ).all()
    }
    unknown = [p for p in wanted if p not in existing]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Pages not found: {unknown}")

    jobs.submit(book_id, MODE_PAGES, pages=wanted)
    return {
        "message": f"Retry queued for {len(wanted)} page(s)",
        "book_id": book_id,
        "pages": wanted,
        "estimated_cost": format_usd(len(wanted) * PER_PAGE_COST_USD),
        "estimated_time_seconds": len(wanted) * PER_PAGE_SECONDS,
    }


@router.post("/{book_id}/retry-section")
def retry_section(
    book_id: int,
    request: RetrySectionRequest,
    db: Session = Depends(get_db),
    jobs: JobQueue = Depends(get_job_queue),
):
    """Estimate a section re-run; execute=true also queues it."""
    book = _get_book_or_404(db, book_id)
    page_range = resolve_section_pages(db, book_id, request.subject)
    if page_range is None:
        raise HTTPException(status_code=404, detail=f"Section '{request.subject}' not found")
    pages = list(range(page_range[0], page_range[1] + 1))

    queued = False
    if request.execute:
        if book.upload_status == UploadStatus.PROCESSING:
            raise HTTPException(status_code=409, detail="Book is already being processed")
        jobs.submit(book_id, MODE_SECTION, subject=request.subject)
        queued = True

    return {
        "book_id": book_id,
        "subject": request.subject,
        "start_page": page_range[0],
        "end_page": page_range[1],
        "pages": pages,
        "estimated_cost": format_usd(len(pages) * PER_PAGE_COST_USD),
        "estimated_time_seconds": len(pages) * PER_PAGE_SECONDS,
        "queued": queued,
    }


@router.post("/{book_id}/smart-retry")
def smart_retry(book_id: int, db: Session = Depends(get_db)):
    """Cheapest retry recommendation; changes nothing."""
    _get_book_or_404(db, book_id)
    return recommend_retry(db, book_id).to_dict()


# ─── Progress / reporting ─────────────────────────────────────────────────────

@router.get("/{book_id}/progress")
def get_progress(book_id: int, db: Session = Depends(get_db)):
    snapshot = get_snapshot(db, book_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Book not found")
    return snapshot


@router.get("/{book_id}/progress/stream")
def stream_book_progress(
    book_id: int,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    cache: Cache = Depends(get_cache),
):
    """Server-sent events: a snapshot every ~2s until completed or failed."""
    _get_book_or_404(db, book_id)

    async def event_stream():
        async for item in stream_progress(session_factory, book_id, PROGRESS_STREAM_INTERVAL, cache):
            yield f"event: {item['event']}\ndata: {json.dumps(item['data'], default=str)}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{book_id}/extraction-report")
def extraction_report(
    book_id: int,
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    book = _get_book_or_404(db, book_id)
    return build_extraction_report(db, book, blob_store)


@router.get("/{book_id}/pages")
def list_pages(
    book_id: int,
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    _get_book_or_404(db, book_id)
    pages = page_details(db, book_id, blob_store)
    return {"book_id": book_id, "total_pages": len(pages), "pages": pages}


# ─── Answer keys ──────────────────────────────────────────────────────────────

@router.post("/{book_id}/extract-answer-key")
async def extract_book_answer_key(
    book_id: int,
    request: AnswerKeyExtractRequest,
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    vision=Depends(get_vision_client),
    ledger: CostLedger = Depends(get_cost_ledger),
):
    """Read an answer-key page; returns the parsed key without applying it."""
    _get_book_or_404(db, book_id)
    page = db.query(PageExtractionResult).filter(
        PageExtractionResult.book_id == book_id,
        PageExtractionResult.page_number == request.page_number,
    ).first()
    if not page or not page.page_image_key:
        raise HTTPException(status_code=404, detail=f"Page {request.page_number} not found")

    try:
        key = await extract_answer_key(vision, ledger, book_id, request.page_number, blob_store.get(page.page_image_key))
    except Exception as e:
        log.warning("Answer key extraction failed for book %d page %d: %s", book_id, request.page_number, e)
        raise HTTPException(status_code=502, detail=f"Answer key extraction failed: {e}")
    return {
        "book_id": book_id,
        "page_number": request.page_number,
        "answer_key": {str(n): a for n, a in sorted(key.items())},
        "count": len(key),
    }


@router.post("/{book_id}/apply-answer-key")
def apply_book_answer_key(book_id: int, request: AnswerKeyApplyRequest, db: Session = Depends(get_db)):
    _get_book_or_404(db, book_id)
    result = apply_answer_key(db, book_id, request.answer_key)
    return {"book_id": book_id, **result}
