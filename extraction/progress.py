"""
Progress Reporter — read-only projection of a book's extraction status.

get_snapshot() for polling; stream_progress() is an async generator that
re-reads every interval and stops after a terminal status, or emits an
error event if the book disappears mid-stream.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from sqlalchemy.orm import Session

from database.models import Book, UploadStatus
from services.cache import Cache

from .config import PROGRESS_STREAM_INTERVAL

log = logging.getLogger(__name__)

TERMINAL_STATUSES = {UploadStatus.COMPLETED.value, UploadStatus.FAILED.value}


def _cache_key(book_id: int) -> str:
    return f"book_progress:{book_id}"


def get_snapshot(db: Session, book_id: int) -> Optional[dict]:
    book = db.query(Book).filter(Book.id == book_id).first()
    if book is None:
        return None
    status = book.upload_status.value if isinstance(book.upload_status, UploadStatus) else book.upload_status
    return {
        "book_id": book.id,
        "upload_status": status,
        "extraction_progress": book.extraction_progress or 0,
        "current_step": book.current_step,
        "total_questions_extracted": book.total_questions_extracted or 0,
        "error_message": book.error_message,
    }


def read_snapshot(session_factory, book_id: int, cache: Optional[Cache] = None, ttl: float = 1.0) -> Optional[dict]:
    """Snapshot through the cache (if given); terminal snapshots are not cached."""
    if cache is not None:
        try:
            cached = cache.get_json(_cache_key(book_id))
            if cached is not None:
                return cached
        except Exception as e:
            log.warning("[Progress] Cache read failed: %s", e)

    db = session_factory()
    try:
        snapshot = get_snapshot(db, book_id)
    finally:
        db.close()

    if cache is not None and snapshot is not None and snapshot["upload_status"] not in TERMINAL_STATUSES:
        try:
            cache.set_json(_cache_key(book_id), snapshot, ttl)
        except Exception as e:
            log.warning("[Progress] Cache write failed: %s", e)
    return snapshot


async def stream_progress(
    session_factory,
    book_id: int,
    interval: float = PROGRESS_STREAM_INTERVAL,
    cache: Optional[Cache] = None,
) -> AsyncIterator[dict]:
    """
    Yield {"event": "progress", "data": snapshot} until a terminal status,
    or {"event": "error", ...} once if the book no longer exists.
    """
    while True:
        snapshot = read_snapshot(session_factory, book_id, cache, ttl=interval / 2)
        if snapshot is None:
            yield {"event": "error", "data": {"book_id": book_id, "message": "Book not found"}}
            return
        yield {"event": "progress", "data": snapshot}
        if snapshot["upload_status"] in TERMINAL_STATUSES:
            return
        await asyncio.sleep(interval)
