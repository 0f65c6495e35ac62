"""
Section Planner + Aggregator.

Planning (once per book, before extraction) writes SectionPlan rows:
  - full-length paper of a known exam → the exam layout, pages split in
    proportion to each subject's question share
  - subject-wise paper with a subject → one section over all pages
  - anything else → no plan; sections are inferred from results later
and gives each planned page its expected question range.

Aggregation replaces every SectionExtractionResult row of the book. It only
reads stored rows, so running it twice in a row gives the same result.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from database.models import (
    Book, PageExtractionResult, PageStatus, PyqType, Question,
    SectionExtractionResult, SectionPlan, SectionStatus,
)

from .config import ExtractionSettings

log = logging.getLogger(__name__)


@dataclass
class _Span:
    subject: str
    start_page: int
    end_page: int
    first_question: Optional[int]
    last_question: Optional[int]
    expected: int


# ── Planning ──────────────────────────────────────────────────────────────────

def _apportion_pages(page_count: int, counts: List[int]) -> List[Tuple[int, int]]:
    """Contiguous 1-based page ranges, one per count, sized by share of the total."""
    total = sum(counts)
    ranges = []
    cumulative = 0
    start = 1
    for i, count in enumerate(counts):
        cumulative += count
        end = page_count if i == len(counts) - 1 else round(page_count * cumulative / total)
        end = min(max(end, start), page_count - (len(counts) - 1 - i))
        ranges.append((start, end))
        start = end + 1
    return ranges


def page_question_ranges(start_page: int, end_page: int, first: int, last: int) -> Dict[int, Optional[Tuple[int, int]]]:
    """
    Spread a section's question numbers evenly over its pages.
    Pages that get no numbers (more pages than questions) map to None.
    """
    pages = end_page - start_page + 1
    questions = last - first + 1
    out: Dict[int, Optional[Tuple[int, int]]] = {}
    for i in range(pages):
        lo = first + (i * questions) // pages
        hi = first + ((i + 1) * questions) // pages - 1
        out[start_page + i] = (lo, hi) if hi >= lo else None
    return out


def plan_sections(db: Session, book: Book, page_count: int, settings: Optional[ExtractionSettings] = None) -> List[SectionPlan]:
    """
    Create SectionPlan rows for a book and set per-page expected ranges.
    Does nothing if the book already has a plan. Commits.
    """
    settings = settings or ExtractionSettings()
    if page_count <= 0:
        return []
    existing = db.query(SectionPlan).filter(SectionPlan.book_id == book.id).order_by(SectionPlan.position).all()
    if existing:
        return existing

    layout: Optional[List[Tuple[str, int]]] = None
    if book.pyq_type == PyqType.FULL_LENGTH:
        layout = settings.layout_for(book.exam_name)
        if layout and page_count < len(layout):
            log.info("[Sections] Book %d: %d pages cannot hold %d sections; skipping plan",
                     book.id, page_count, len(layout))
            layout = None
    elif book.pyq_type == PyqType.SUBJECT_WISE and book.subject:
        layout = [(book.subject, book.expected_questions or settings.default_section_questions)]

    if not layout:
        return []

    plans: List[SectionPlan] = []
    first_question = 1
    page_ranges = _apportion_pages(page_count, [count for _, count in layout])
    for position, ((subject, count), (start, end)) in enumerate(zip(layout, page_ranges)):
        plan = SectionPlan(
            book_id=book.id,
            position=position,
            subject=subject,
            start_page=start,
            end_page=end,
            first_question=first_question,
            last_question=first_question + count - 1,
            expected_questions=count,
        )
        db.add(plan)
        plans.append(plan)
        first_question += count

    pages = {
        p.page_number: p
        for p in db.query(PageExtractionResult).filter(PageExtractionResult.book_id == book.id).all()
    }
    for plan in plans:
        ranges = page_question_ranges(plan.start_page, plan.end_page, plan.first_question, plan.last_question)
        for page_number, rng in ranges.items():
            page = pages.get(page_number)
            if page is None:
                continue
            page.expected_first, page.expected_last = rng if rng else (None, None)
            page.expected_question_range = f"Q{rng[0]}-Q{rng[1]}" if rng else None

    db.commit()
    log.info("[Sections] Book %d: planned %d sections", book.id, len(plans))
    return plans


def resolve_section_pages(db: Session, book_id: int, subject: str) -> Optional[Tuple[int, int]]:
    """Page range of the named section: the plan if there is one, else the last aggregation."""
    needle = subject.strip().lower()
    for plan in db.query(SectionPlan).filter(SectionPlan.book_id == book_id).order_by(SectionPlan.position):
        if plan.subject.lower() == needle:
            return plan.start_page, plan.end_page
    for section in db.query(SectionExtractionResult).filter(SectionExtractionResult.book_id == book_id).order_by(SectionExtractionResult.start_page):
        if section.subject.lower() == needle:
            return section.start_page, section.end_page
    return None


# ── Aggregation ───────────────────────────────────────────────────────────────

def _dominant_subjects(db: Session, book_id: int) -> Dict[int, str]:
    """page_number → most common question subject on that page."""
    counters: Dict[int, Counter] = {}
    rows = db.query(Question.page_number, Question.subject).filter(
        Question.book_id == book_id, Question.subject.isnot(None), Question.page_number.isnot(None)
    ).all()
    for page_number, subject in rows:
        counters.setdefault(page_number, Counter())[subject.strip()] += 1
    # ties break alphabetically so the result is stable
    return {
        page: sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]
        for page, counter in counters.items()
    }


def _infer_spans(pages: List[PageExtractionResult], subjects: Dict[int, str], expected: int) -> List[_Span]:
    """Group contiguous pages by dominant subject; pages without questions join their neighbours."""
    ordered = [p.page_number for p in pages]
    labels: List[Optional[str]] = [subjects.get(n) for n in ordered]
    if not any(labels):
        return []
    # forward fill, then back fill the leading gap
    for i in range(1, len(labels)):
        if labels[i] is None:
            labels[i] = labels[i - 1]
    first_known = next(label for label in labels if label)
    labels = [label or first_known for label in labels]

    spans: List[_Span] = []
    for page_number, label in zip(ordered, labels):
        if spans and spans[-1].subject == label and spans[-1].end_page == page_number - 1:
            spans[-1].end_page = page_number
        else:
            spans.append(_Span(label, page_number, page_number, None, None, expected))
    return spans


def _section_status(range_pages: List[PageExtractionResult], extracted: int, expected: int, missing: List[int]) -> SectionStatus:
    if range_pages and all(p.status == PageStatus.FAILED for p in range_pages):
        return SectionStatus.FAILED
    if extracted >= expected and not missing:
        return SectionStatus.COMPLETE
    return SectionStatus.PARTIAL


def aggregate_sections(db: Session, book_id: int, settings: Optional[ExtractionSettings] = None) -> List[SectionExtractionResult]:
    """
    Recompute all section rows for a book from its plans (or inferred spans)
    and its page results. Full replace; commits.
    """
    settings = settings or ExtractionSettings()
    book = db.query(Book).filter(Book.id == book_id).one()
    pages = db.query(PageExtractionResult).filter(
        PageExtractionResult.book_id == book_id
    ).order_by(PageExtractionResult.page_number).all()

    plans = db.query(SectionPlan).filter(SectionPlan.book_id == book_id).order_by(SectionPlan.position).all()
    if plans:
        spans = [
            _Span(p.subject, p.start_page, p.end_page, p.first_question, p.last_question, p.expected_questions)
            for p in plans
        ]
    else:
        spans = _infer_spans(pages, _dominant_subjects(db, book_id), settings.section_questions_for(book.exam_type or book.exam_name))

    db.query(SectionExtractionResult).filter(SectionExtractionResult.book_id == book_id).delete(synchronize_session=False)

    results: List[SectionExtractionResult] = []
    for span in spans:
        range_pages = [p for p in pages if span.start_page <= p.page_number <= span.end_page]
        found = set()
        for p in range_pages:
            found.update(p.extracted_questions or [])

        if span.first_question is not None:
            expected_numbers = set(range(span.first_question, span.last_question + 1))
        elif found:
            expected_numbers = set(range(min(found), max(found) + 1))
        else:
            expected_numbers = set()
        missing = sorted(expected_numbers - found)

        row = SectionExtractionResult(
            book_id=book_id,
            subject=span.subject,
            start_page=span.start_page,
            end_page=span.end_page,
            expected_questions=span.expected,
            extracted_questions=len(found),
            missing_question_numbers=missing,
            status=_section_status(range_pages, len(found), span.expected, missing),
        )
        db.add(row)
        results.append(row)

    db.commit()
    log.info("[Sections] Book %d: aggregated %d sections", book_id, len(results))
    return results
