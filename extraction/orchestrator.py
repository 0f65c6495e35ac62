"""
Extraction Orchestrator — the book-level state machine.

    pending → processing → {completed, failed}

Full run:
  Step 1 (split):     rasterize the PDF unless pages already exist
  Step 2 (plan):      create section plans unless they already exist
  Step 3 (extract):   PageExtractor over every page, bounded concurrency
  Step 4 (aggregate): rebuild section results
  Step 5 (finalize):  completed if any question exists, else failed

Per-page failures never fail the book; only split errors, empty documents and
unexpected internal errors do. Targeted runs (pages / section) re-extract the
named pages only, then aggregate and finalize the whole book again.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import func, update

from database.models import Book, PageExtractionResult, Question, UploadStatus
from services.blob_store import BlobStore

from .config import ExtractionSettings
from .cost_ledger import CostLedger
from .exceptions import BookNotFoundError, EmptyDocumentError, PermanentExtractionError
from .page_extractor import PageExtractor, refresh_book_counters
from .page_splitter import split_document
from .sections import aggregate_sections, plan_sections, resolve_section_pages

log = logging.getLogger(__name__)

# progress milestones (percent)
PROGRESS_SPLIT = 10
PROGRESS_EXTRACT_END = 95


def _now():
    return datetime.now(timezone.utc)


class ExtractionOrchestrator:
    def __init__(self, session_factory, blob_store: BlobStore, vision, ledger: CostLedger,
                 settings: Optional[ExtractionSettings] = None):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.settings = settings or ExtractionSettings()
        self.extractor = PageExtractor(session_factory, blob_store, vision, ledger, self.settings)

    # ── Book state helpers ────────────────────────────────────────────────────

    def _update_book(self, book_id: int, **values) -> None:
        db = self.session_factory()
        try:
            book = db.query(Book).filter(Book.id == book_id).first()
            if book is None:
                raise BookNotFoundError(book_id)
            for key, value in values.items():
                setattr(book, key, value)
            db.commit()
        finally:
            db.close()

    def advance_progress(self, book_id: int, progress: int, step: Optional[str] = None) -> None:
        """Compare-and-set: progress is only ever raised, never lowered."""
        db = self.session_factory()
        try:
            db.execute(
                update(Book)
                .where(Book.id == book_id, Book.extraction_progress < progress)
                .values(extraction_progress=progress)
                .execution_options(synchronize_session=False)
            )
            if step:
                db.execute(
                    update(Book).where(Book.id == book_id).values(current_step=step)
                    .execution_options(synchronize_session=False)
                )
            db.commit()
        except Exception as e:
            db.rollback()
            log.warning("[Orchestrator] Progress update failed for book %d: %s", book_id, e)
        finally:
            db.close()

    def _enter_processing(self, book_id: int) -> bool:
        """
        Move a book into processing for a full run, resetting progress.

        Compare-and-set on upload_status: returns False without touching the
        row when another run already holds the book.
        """
        db = self.session_factory()
        try:
            result = db.execute(
                update(Book)
                .where(Book.id == book_id, Book.upload_status != UploadStatus.PROCESSING)
                .values(
                    upload_status=UploadStatus.PROCESSING,
                    extraction_progress=0,
                    current_step="Splitting PDF into pages",
                    error_message=None,
                    job_queued_at=None,
                    processing_started_at=_now(),
                    processing_completed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount:
                return True
            if db.query(Book.id).filter(Book.id == book_id).first() is None:
                raise BookNotFoundError(book_id)
            return False
        finally:
            db.close()

    def _fail(self, book_id: int, message: str) -> None:
        log.error("[Orchestrator] Book %d failed: %s", book_id, message)
        try:
            self._update_book(
                book_id,
                upload_status=UploadStatus.FAILED,
                error_message=message,
                current_step="Failed",
                processing_completed_at=_now(),
            )
        except BookNotFoundError:
            log.warning("[Orchestrator] Book %d disappeared before it could be marked failed", book_id)

    def _page_numbers(self, book_id: int) -> List[int]:
        db = self.session_factory()
        try:
            rows = db.query(PageExtractionResult.page_number).filter(
                PageExtractionResult.book_id == book_id
            ).order_by(PageExtractionResult.page_number).all()
            return [r[0] for r in rows]
        finally:
            db.close()

    # ── Steps ─────────────────────────────────────────────────────────────────

    def _ensure_split(self, book_id: int) -> List[int]:
        pages = self._page_numbers(book_id)
        if pages:
            return pages
        db = self.session_factory()
        try:
            book = db.query(Book).filter(Book.id == book_id).first()
            if book is None:
                raise BookNotFoundError(book_id)
            if not book.storage_key:
                raise PermanentExtractionError("Source PDF is missing from storage")
            pdf_bytes = self.blob_store.get(book.storage_key)
            count = split_document(db, self.blob_store, book_id, pdf_bytes, dpi=self.settings.render_dpi)
        finally:
            db.close()
        if count == 0:
            raise EmptyDocumentError("PDF has no pages")
        return self._page_numbers(book_id)

    def _ensure_plan(self, book_id: int, page_count: int) -> None:
        db = self.session_factory()
        try:
            book = db.query(Book).filter(Book.id == book_id).one()
            plan_sections(db, book, page_count, self.settings)
        finally:
            db.close()

    async def _extract_pages(self, book_id: int, page_numbers: List[int], progress_from: int, progress_to: int) -> None:
        semaphore = asyncio.Semaphore(max(1, self.settings.page_concurrency))
        total = len(page_numbers)
        done = 0

        async def _run(page_number: int):
            nonlocal done
            async with semaphore:
                try:
                    outcome = await self.extractor.extract(book_id, page_number)
                    log.info("   Step 3 (extract): book %d page %d → %s (%d questions)",
                             book_id, page_number, outcome.status.value, outcome.questions_extracted)
                except Exception as e:
                    log.exception("[Orchestrator] Book %d page %d: unexpected error: %s", book_id, page_number, e)
                done += 1
                progress = progress_from + (progress_to - progress_from) * done // total
                self.advance_progress(book_id, progress, f"Extracted page {done}/{total}")

        await asyncio.gather(*[_run(p) for p in page_numbers])

    def _finalize(self, book_id: int) -> None:
        db = self.session_factory()
        try:
            try:
                aggregate_sections(db, book_id, self.settings)
            except Exception as e:
                db.rollback()
                log.warning("[Orchestrator] Section aggregation failed for book %d: %s", book_id, e)
            refresh_book_counters(db, book_id)
            total = db.query(func.count(Question.id)).filter(Question.book_id == book_id).scalar() or 0
            page_count = db.query(func.count(PageExtractionResult.id)).filter(
                PageExtractionResult.book_id == book_id
            ).scalar() or 0
        finally:
            db.close()

        if total == 0:
            self._fail(book_id, f"No questions could be extracted from {page_count} page(s)")
            return
        self._update_book(
            book_id,
            upload_status=UploadStatus.COMPLETED,
            extraction_progress=100,
            current_step=f"Completed: {total} questions from {page_count} pages",
            error_message=None,
            processing_completed_at=_now(),
        )
        log.info("   Step 5 (finalize): book %d completed with %d questions", book_id, total)

    # ── Entry points ──────────────────────────────────────────────────────────

    async def run_full(self, book_id: int) -> None:
        """Split (if needed), plan, extract every page, aggregate, finalize."""
        try:
            if not self._enter_processing(book_id):
                log.warning("[Orchestrator] Book %d is already being processed; skipping full run", book_id)
                return
            log.info("Step 1 (split): book %d", book_id)
            page_numbers = self._ensure_split(book_id)
            self.advance_progress(book_id, PROGRESS_SPLIT, f"Split into {len(page_numbers)} pages")

            log.info("Step 2 (plan): book %d, %d pages", book_id, len(page_numbers))
            self._ensure_plan(book_id, len(page_numbers))

            log.info("Step 3 (extract): book %d", book_id)
            await self._extract_pages(book_id, page_numbers, PROGRESS_SPLIT, PROGRESS_EXTRACT_END)

            log.info("Step 4 (aggregate): book %d", book_id)
            self.advance_progress(book_id, PROGRESS_EXTRACT_END, "Aggregating sections")
            self._finalize(book_id)
        except BookNotFoundError as e:
            log.warning("[Orchestrator] %s; nothing to do", e)
        except PermanentExtractionError as e:
            self._fail(book_id, str(e))
        except Exception as e:
            log.exception("[Orchestrator] Book %d: internal error", book_id)
            self._fail(book_id, f"Internal error: {e}")

    async def split_only(self, book_id: int) -> int:
        """Preview mode: split and stop. Status stays pending unless splitting fails."""
        try:
            page_numbers = self._ensure_split(book_id)
            self._update_book(book_id, current_step=f"Preview ready: {len(page_numbers)} pages")
            return len(page_numbers)
        except BookNotFoundError as e:
            log.warning("[Orchestrator] %s; nothing to split", e)
        except PermanentExtractionError as e:
            self._fail(book_id, str(e))
        except Exception as e:
            log.exception("[Orchestrator] Book %d: preview split failed", book_id)
            self._fail(book_id, f"Internal error: {e}")
        return 0

    async def retry_pages(self, book_id: int, page_numbers: Iterable[int]) -> None:
        """Re-extract only the given pages, then re-aggregate and finalize the whole book."""
        wanted = sorted(set(page_numbers))
        try:
            existing = set(self._page_numbers(book_id))
            unknown = [p for p in wanted if p not in existing]
            if unknown:
                log.warning("[Orchestrator] Book %d: ignoring unknown pages %s", book_id, unknown)
                wanted = [p for p in wanted if p in existing]
            if not wanted:
                return
            self._update_book(
                book_id,
                upload_status=UploadStatus.PROCESSING,
                current_step=f"Retrying pages {', '.join(str(p) for p in wanted)}",
                error_message=None,
                processing_completed_at=None,
            )
            db = self.session_factory()
            try:
                current = db.query(Book.extraction_progress).filter(Book.id == book_id).scalar() or 0
            finally:
                db.close()
            start = min(current, PROGRESS_EXTRACT_END)
            await self._extract_pages(book_id, wanted, start, PROGRESS_EXTRACT_END)
            self.advance_progress(book_id, PROGRESS_EXTRACT_END, "Aggregating sections")
            self._finalize(book_id)
        except BookNotFoundError as e:
            log.warning("[Orchestrator] %s; nothing to retry", e)
        except PermanentExtractionError as e:
            self._fail(book_id, str(e))
        except Exception as e:
            log.exception("[Orchestrator] Book %d: page retry failed", book_id)
            self._fail(book_id, f"Internal error: {e}")

    async def retry_section(self, book_id: int, subject: str) -> None:
        db = self.session_factory()
        try:
            page_range = resolve_section_pages(db, book_id, subject)
        finally:
            db.close()
        if page_range is None:
            log.warning("[Orchestrator] Book %d has no section '%s'", book_id, subject)
            return
        await self.retry_pages(book_id, range(page_range[0], page_range[1] + 1))
