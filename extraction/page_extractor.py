"""
Page Extractor — one page image in, question rows and a page status out.

Flow per attempt:
  1. Claim the page (attempt_seq += 1); the claimed value guards the final write
  2. Load the page image and cap its size
  3. Invoke the vision model through retry_with_backoff (one ledger row per attempt)
  4. Parse the JSON answer into ExtractedQuestion candidates
  5. Compare claimed numbers with the page's expected range → success / partial / failed
  6. Replace this page's questions and overwrite its PageExtractionResult, unless a
     newer attempt has claimed the page in the meantime
  7. Recompute the book's question total from persisted rows
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from database.models import Book, PageExtractionResult, PageStatus, Question, SectionPlan
from services.blob_store import BlobStore

from .config import ExtractionSettings
from .cost_ledger import CostLedger, ModelCall, format_cost
from .exceptions import PermanentExtractionError, VisionResponseError
from .page_splitter import cap_image_size
from .parsing import extract_json_payload
from .retry import retry_with_backoff
from .schemas import ExtractedQuestion

log = logging.getLogger(__name__)

OPERATION_PAGE = "page_extraction"

EXTRACTION_PROMPT = """Extract every exam question visible on this page.
{context}
Return ONLY a JSON array. One object per question:
{{
  "question_number": <integer printed next to the question>,
  "question_text": "<full stem, LaTeX for math>",
  "question_type": "<single_correct | multiple_correct | assertion_reason | integer_type | match_list>",
  "options": {{"A": "...", "B": "...", "C": "...", "D": "..."}},
  "correct_answer": "<A-D or integer, null if not printed>",
  "explanation": "<if printed, else null>",
  "subject": "<subject>",
  "topic": "<chapter / topic>",
  "subtopic": "<optional>",
  "difficulty": "<easy | medium | hard>",
  "has_diagram": <true | false>,
  "diagram_description": "<describe the figure if has_diagram>"
}}
Return [] if the page has no questions (instructions, answer keys, blank pages)."""


@dataclass
class PageOutcome:
    page_number: int
    status: PageStatus
    questions_extracted: int = 0
    extracted: List[int] = field(default_factory=list)
    missing: List[int] = field(default_factory=list)
    error: Optional[str] = None
    stale: bool = False


@dataclass
class _PageClaim:
    seq: int
    image_key: Optional[str]
    expected_first: Optional[int]
    expected_last: Optional[int]
    subject: Optional[str]
    exam_year: Optional[int]
    exam_type: Optional[str]


def build_prompt(subject: Optional[str], expected_first: Optional[int], expected_last: Optional[int]) -> str:
    lines = []
    if subject:
        lines.append(f"Subject: {subject}.")
    if expected_first is not None and expected_last is not None:
        lines.append(f"This page should contain questions {expected_first} to {expected_last}.")
    return EXTRACTION_PROMPT.format(context="\n".join(lines))


def parse_page_questions(text: str) -> List[ExtractedQuestion]:
    """
    Parse the model answer into candidates.

    Items without a positive question number are dropped; when a number
    repeats, the last occurrence wins.

    Raises:
        VisionResponseError if no JSON array of questions can be found
    """
    try:
        payload = extract_json_payload(text)
    except ValueError as e:
        raise VisionResponseError(f"Unparsable model response: {e}") from e

    if isinstance(payload, dict):
        for key in ("questions", "results", "data", "items"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
        else:
            payload = [payload] if "question_number" in payload or "questionNumber" in payload else []

    if not isinstance(payload, list):
        raise VisionResponseError(f"Expected a JSON array, got {type(payload).__name__}")

    by_number = {}
    for item in payload:
        if not isinstance(item, dict):
            continue
        try:
            candidate = ExtractedQuestion.model_validate(item)
        except Exception as e:
            log.debug("[PageExtractor] Dropping malformed question %s: %s", item.get("question_number"), e)
            continue
        by_number[candidate.question_number] = candidate
    return [by_number[n] for n in sorted(by_number)]


def classify_page(
    numbers: List[int],
    expected_first: Optional[int],
    expected_last: Optional[int],
    errored: bool,
) -> tuple:
    """
    Returns (status, missing) for one attempt.

    failed:  the invocation errored, or nothing came back although questions were expected
    partial: some expected numbers are missing and at least one question was found
    success: otherwise (including pages with no expectation and no questions)
    """
    if errored:
        return PageStatus.FAILED, []
    if expected_first is None or expected_last is None:
        return PageStatus.SUCCESS, []
    expected = set(range(expected_first, expected_last + 1))
    missing = sorted(expected - set(numbers))
    if not numbers:
        return PageStatus.FAILED, missing
    if missing:
        return PageStatus.PARTIAL, missing
    return PageStatus.SUCCESS, []


def refresh_book_counters(db: Session, book_id: int) -> None:
    """total_questions_extracted = count(questions), in one statement."""
    try:
        count_q = select(func.count(Question.id)).where(Question.book_id == book_id).scalar_subquery()
        db.execute(
            update(Book).where(Book.id == book_id)
            .values(total_questions_extracted=count_q)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception as e:
        db.rollback()
        log.warning("[PageExtractor] Counter refresh failed for book %d: %s", book_id, e)


class PageExtractor:
    """Extracts one page at a time; safe to call concurrently for different pages."""

    def __init__(self, session_factory, blob_store: BlobStore, vision, ledger: CostLedger,
                 settings: Optional[ExtractionSettings] = None):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.vision = vision
        self.ledger = ledger
        self.settings = settings or ExtractionSettings()

    def _claim(self, book_id: int, page_number: int) -> _PageClaim:
        db = self.session_factory()
        try:
            result = db.execute(
                update(PageExtractionResult)
                .where(PageExtractionResult.book_id == book_id,
                       PageExtractionResult.page_number == page_number)
                .values(attempt_seq=PageExtractionResult.attempt_seq + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                raise PermanentExtractionError(f"Page {page_number} of book {book_id} has not been split")
            page = db.query(PageExtractionResult).filter(
                PageExtractionResult.book_id == book_id,
                PageExtractionResult.page_number == page_number,
            ).one()
            book = db.query(Book).filter(Book.id == book_id).one()
            plan = db.query(SectionPlan).filter(
                SectionPlan.book_id == book_id,
                SectionPlan.start_page <= page_number,
                SectionPlan.end_page >= page_number,
            ).first()
            claim = _PageClaim(
                seq=page.attempt_seq,
                image_key=page.page_image_key,
                expected_first=page.expected_first,
                expected_last=page.expected_last,
                subject=plan.subject if plan else book.subject,
                exam_year=book.exam_year,
                exam_type=book.exam_type or book.exam_name,
            )
            db.commit()
            return claim
        finally:
            db.close()

    async def extract(self, book_id: int, page_number: int) -> PageOutcome:
        """
        Run one extraction attempt for a page and persist its outcome.

        Model and parse failures are converted into a failed page; only
        persistence problems propagate.
        """
        started = time.monotonic()
        claim = self._claim(book_id, page_number)
        cost = Decimal("0")
        error: Optional[str] = None
        candidates: Optional[List[ExtractedQuestion]] = None

        def on_attempt(attempt, response, exc, elapsed_ms):
            nonlocal cost
            call = ModelCall(
                provider=getattr(response, "provider", None) or getattr(self.vision, "provider", "openai"),
                model_name=getattr(response, "model", None) or self.settings.vision_model,
                operation_type=OPERATION_PAGE,
                input_tokens=getattr(response, "input_tokens", 0) or 0,
                output_tokens=getattr(response, "output_tokens", 0) or 0,
                success=exc is None,
                error_message=f"attempt {attempt}: {exc}" if exc is not None else None,
                processing_time_ms=elapsed_ms,
                page_number=page_number,
            )
            cost += call.cost
            self.ledger.record(call, book_id=book_id)

        try:
            if not claim.image_key:
                raise PermanentExtractionError("Page image missing; split the document again")
            image = cap_image_size(self.blob_store.get(claim.image_key), self.settings.max_image_dim)
            prompt = build_prompt(claim.subject, claim.expected_first, claim.expected_last)
            response = await retry_with_backoff(
                lambda: self.vision.analyze(image, prompt, model=self.settings.vision_model),
                max_attempts=self.settings.max_attempts,
                initial_delay=self.settings.initial_delay,
                timeout=self.settings.model_timeout,
                on_attempt=on_attempt,
                label=f"book {book_id} page {page_number}",
            )
            candidates = parse_page_questions(response.text)
        except Exception as e:
            error = str(e) or type(e).__name__
            log.warning("[PageExtractor] Book %d page %d failed: %s", book_id, page_number, error)

        numbers = [c.question_number for c in candidates] if candidates is not None else []
        status, missing = classify_page(numbers, claim.expected_first, claim.expected_last, errored=error is not None)
        if status == PageStatus.FAILED and error is None:
            error = f"No questions found; expected {claim.expected_first}-{claim.expected_last}"

        outcome = PageOutcome(
            page_number=page_number,
            status=status,
            questions_extracted=len(numbers),
            extracted=numbers,
            missing=missing,
            error=error,
        )
        elapsed_ms = int((time.monotonic() - started) * 1000)
        written = self._persist(book_id, page_number, claim, candidates, outcome, cost, elapsed_ms)
        if not written:
            outcome.stale = True
            return outcome

        db = self.session_factory()
        try:
            refresh_book_counters(db, book_id)
        finally:
            db.close()
        return outcome

    def _persist(self, book_id, page_number, claim: _PageClaim, candidates, outcome: PageOutcome,
                 cost: Decimal, elapsed_ms: int) -> bool:
        db = self.session_factory()
        try:
            page = db.query(PageExtractionResult).filter(
                PageExtractionResult.book_id == book_id,
                PageExtractionResult.page_number == page_number,
            ).with_for_update().one_or_none()
            if page is None or page.attempt_seq != claim.seq:
                db.rollback()
                log.info("[PageExtractor] Book %d page %d: discarding stale attempt %d",
                         book_id, page_number, claim.seq)
                return False

            # A failed invocation leaves previously extracted questions in place
            if candidates is not None:
                stale_rows = Question.page_number == page_number
                if outcome.extracted:
                    stale_rows = or_(stale_rows, Question.question_number.in_(outcome.extracted))
                db.query(Question).filter(Question.book_id == book_id, stale_rows).delete(synchronize_session=False)
                for c in candidates:
                    db.add(_to_question_row(book_id, page_number, c, claim))

            if page.status != PageStatus.PENDING:
                page.retry_count = (page.retry_count or 0) + 1
                page.last_retry_at = datetime.now(timezone.utc)
            page.status = outcome.status
            page.questions_extracted = outcome.questions_extracted
            page.extracted_questions = list(outcome.extracted)
            page.missing_questions = list(outcome.missing)
            page.expected_question_range = (
                f"Q{claim.expected_first}-Q{claim.expected_last}"
                if claim.expected_first is not None and claim.expected_last is not None else None
            )
            page.error_message = outcome.error
            page.api_cost = format_cost(cost)
            page.processing_time_ms = elapsed_ms
            db.commit()
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def _to_question_row(book_id: int, page_number: int, c: ExtractedQuestion, claim: _PageClaim) -> Question:
    if not c.subject and claim.subject:
        c = c.model_copy(update={"subject": claim.subject})
    return Question(
        book_id=book_id,
        page_number=page_number,
        question_number=c.question_number,
        subject=c.subject,
        topic=c.topic,
        subtopic=c.subtopic,
        exam_year=claim.exam_year,
        exam_type=claim.exam_type,
        question_text=c.question_text,
        question_type=c.question_type,
        option_a=c.options.get("A"),
        option_b=c.options.get("B"),
        option_c=c.options.get("C"),
        option_d=c.options.get("D"),
        correct_answer=c.correct_answer,
        explanation=c.explanation,
        difficulty=c.difficulty,
        is_active=c.is_complete,
        has_diagram=c.has_diagram,
        diagram_description=c.diagram_description,
        structured_data=c.structured_data,
    )
