"""
Background extraction jobs.

Request handlers only submit jobs through a JobQueue and return; the huey
worker (worker.py) picks them up and drives the async orchestrator.
"""

import asyncio
import logging
from typing import List, Optional

from database.database import SessionLocal
from extraction.config import ExtractionSettings
from extraction.cost_ledger import CostLedger
from extraction.orchestrator import ExtractionOrchestrator
from extraction.vision_client import get_vision_client
from services.blob_store import get_blob_store
from services.queue import huey_queue

log = logging.getLogger(__name__)

MODE_FULL = "full"
MODE_SPLIT = "split"
MODE_PAGES = "pages"
MODE_SECTION = "section"


def build_orchestrator() -> ExtractionOrchestrator:
    return ExtractionOrchestrator(
        SessionLocal,
        get_blob_store(),
        get_vision_client(),
        CostLedger(SessionLocal),
        ExtractionSettings(),
    )


async def run_job(orchestrator: ExtractionOrchestrator, book_id: int, mode: str,
                  pages: Optional[List[int]] = None, subject: Optional[str] = None) -> None:
    if mode == MODE_FULL:
        await orchestrator.run_full(book_id)
    elif mode == MODE_SPLIT:
        await orchestrator.split_only(book_id)
    elif mode == MODE_PAGES:
        await orchestrator.retry_pages(book_id, pages or [])
    elif mode == MODE_SECTION:
        await orchestrator.retry_section(book_id, subject or "")
    else:
        raise ValueError(f"Unknown extraction mode: {mode}")


# Executed by the huey worker, NOT FastAPI
@huey_queue.task()
def extraction_task(book_id: int, mode: str, pages: Optional[List[int]] = None, subject: Optional[str] = None):
    log.info("[Worker] book %d: %s job started", book_id, mode)
    asyncio.run(run_job(build_orchestrator(), book_id, mode, pages, subject))
    log.info("[Worker] book %d: %s job finished", book_id, mode)


class JobQueue:
    """What the HTTP layer sees: submit and forget, failures surface via book status."""

    def submit(self, book_id: int, mode: str, pages: Optional[List[int]] = None,
               subject: Optional[str] = None) -> None:
        raise NotImplementedError


class HueyJobQueue(JobQueue):
    def submit(self, book_id, mode, pages=None, subject=None):
        extraction_task(book_id, mode, pages, subject)
        log.info("[JobQueue] queued %s job for book %d", mode, book_id)


_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    global _job_queue
    if _job_queue is None:
        _job_queue = HueyJobQueue()
    return _job_queue
