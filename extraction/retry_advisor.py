"""
Retry Advisor — cheapest way to fix a book's failed / partial pages.

Read-only. Costs are a flat per-page estimate (PER_PAGE_COST_USD), so a
targeted retry of N pages is compared against re-running every page.
"""

from dataclasses import dataclass, field, asdict
from typing import List, Optional

from sqlalchemy.orm import Session

from database.models import Book, PageExtractionResult, PageStatus, SectionPlan

from .config import PER_PAGE_COST_USD, PER_PAGE_SECONDS
from .exceptions import BookNotFoundError

ACTION_NONE = "none"
ACTION_RETRY_PAGES = "retry_pages"
ACTION_RETRY_SECTION = "retry_section"
ACTION_FULL_RERUN = "full_rerun"


def format_usd(amount: float) -> str:
    return f"${amount:.2f}"


@dataclass
class RetryRecommendation:
    book_id: int
    action: str
    pages: List[int] = field(default_factory=list)
    failed_pages: List[int] = field(default_factory=list)
    partial_pages: List[int] = field(default_factory=list)
    section: Optional[str] = None
    estimated_cost: str = "$0.00"
    estimated_time_seconds: int = 0
    full_rerun_cost: str = "$0.00"
    full_rerun_time_seconds: int = 0
    estimated_savings: str = "$0.00"
    message: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def recommend_retry(
    db: Session,
    book_id: int,
    per_page_cost: float = PER_PAGE_COST_USD,
    per_page_seconds: int = PER_PAGE_SECONDS,
) -> RetryRecommendation:
    """Inspect persisted page results and recommend no-op, pages, section or full re-run."""
    if db.query(Book.id).filter(Book.id == book_id).first() is None:
        raise BookNotFoundError(book_id)

    pages = db.query(PageExtractionResult).filter(
        PageExtractionResult.book_id == book_id
    ).order_by(PageExtractionResult.page_number).all()
    failed = [p.page_number for p in pages if p.status == PageStatus.FAILED]
    partial = [p.page_number for p in pages if p.status == PageStatus.PARTIAL]
    targets = sorted(failed + partial)

    total_pages = len(pages)
    rec = RetryRecommendation(
        book_id=book_id,
        action=ACTION_NONE,
        failed_pages=failed,
        partial_pages=partial,
        full_rerun_cost=format_usd(total_pages * per_page_cost),
        full_rerun_time_seconds=total_pages * per_page_seconds,
    )
    if not targets:
        rec.message = "All pages extracted successfully; nothing to retry."
        return rec

    rec.pages = targets
    rec.estimated_cost = format_usd(len(targets) * per_page_cost)
    rec.estimated_time_seconds = len(targets) * per_page_seconds
    rec.estimated_savings = format_usd((total_pages - len(targets)) * per_page_cost)

    if len(targets) == total_pages:
        rec.action = ACTION_FULL_RERUN
        rec.message = f"All {total_pages} pages need another pass; re-run the whole book."
        return rec

    target_set = set(targets)
    for plan in db.query(SectionPlan).filter(SectionPlan.book_id == book_id).order_by(SectionPlan.position):
        if target_set == set(range(plan.start_page, plan.end_page + 1)):
            rec.action = ACTION_RETRY_SECTION
            rec.section = plan.subject
            rec.message = f"Every page of the {plan.subject} section needs another pass; retry that section."
            return rec

    rec.action = ACTION_RETRY_PAGES
    rec.message = (
        f"Retry {len(targets)} page(s) for {rec.estimated_cost} instead of "
        f"re-running all {total_pages} for {rec.full_rerun_cost}."
    )
    return rec
