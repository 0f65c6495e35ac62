"""
Pytest configuration: SQLite per test, local blob store, scripted vision model.
"""

import json
import uuid
import os

# The app module builds its engine at import; keep it off Postgres in tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

import fitz  # PyMuPDF
import pytest
from sqlalchemy.orm import sessionmaker

from database.database import Base, build_engine, get_db
from database.models import Book, UploadStatus
from extraction.config import ExtractionSettings
from extraction.cost_ledger import CostLedger
from extraction.orchestrator import ExtractionOrchestrator
from extraction.vision_client import VisionResponse
from services.blob_store import LocalBlobStore, source_key
from services.cache import TTLMemoryCache
from services.tasks import JobQueue


class FakeVision:
    """
    Scripted stand-in for the vision client.

    Each call pops the next scripted item: a string is returned as the model
    text, an exception is raised. When the script runs out, "[]" is returned.
    """

    provider = "openai"
    model = "gpt-4o"

    def __init__(self, script=None, input_tokens=1000, output_tokens=500):
        self.script = list(script or [])
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls = []

    async def analyze(self, image_png, prompt, system=None, model=None, max_tokens=None):
        self.calls.append(prompt)
        item = self.script.pop(0) if self.script else "[]"
        if callable(item):
            item = item(len(self.calls))
        if isinstance(item, BaseException):
            raise item
        return VisionResponse(
            text=item,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model=model or self.model,
            provider=self.provider,
        )


class RecordingJobQueue(JobQueue):
    def __init__(self):
        self.jobs = []

    def submit(self, book_id, mode, pages=None, subject=None):
        self.jobs.append({"book_id": book_id, "mode": mode, "pages": pages, "subject": subject})


def make_pdf(pages: int = 3, label: str = "Sample paper") -> bytes:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=300, height=400)
        page.insert_text((30, 50), f"{label} - page {i + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def questions_json(numbers, subject=None, topic="Kinematics") -> str:
    """Model answer with one complete MCQ per number."""
    return json.dumps([
        {
            "question_number": n,
            "question_text": f"Question {n}: which of the following statements is correct?",
            "question_type": "single_correct",
            "options": {"A": "first", "B": "second", "C": "third", "D": "fourth"},
            "correct_answer": None,
            "subject": subject,
            "topic": topic,
            "difficulty": "medium",
        }
        for n in numbers
    ])


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'extraction.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def ledger(session_factory):
    return CostLedger(session_factory)


@pytest.fixture
def settings():
    return ExtractionSettings(initial_delay=0, model_timeout=5, render_dpi=72, page_concurrency=1)


@pytest.fixture
def make_book(db, blob_store):
    """Create a pending book whose source PDF is already in the blob store."""

    def _make(pages=3, pdf=None, **fields):
        data = pdf if pdf is not None else make_pdf(pages)
        values = dict(
            title="Sample paper",
            filename="sample.pdf",
            content_hash=uuid.uuid4().hex,
            file_size_bytes=len(data),
            upload_status=UploadStatus.PENDING,
        )
        values.update(fields)
        book = Book(**values)
        db.add(book)
        db.commit()
        book.storage_key = blob_store.put(source_key(book.id), data, content_type="application/pdf")
        db.commit()
        db.refresh(book)
        return book

    return _make


@pytest.fixture
def make_orchestrator(session_factory, blob_store, ledger, settings):
    def _make(vision):
        return ExtractionOrchestrator(session_factory, blob_store, vision, ledger, settings)

    return _make


@pytest.fixture
def client(session_factory, blob_store, ledger):
    """TestClient wired to the per-test database, blob store and a scripted model."""
    from fastapi.testclient import TestClient

    from extraction.vision_client import get_vision_client
    from extraction_api import app
    from routers import books
    from services.cache import get_cache
    from services.tasks import get_job_queue

    vision = FakeVision()
    jobs = RecordingJobQueue()

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_vision_client] = lambda: vision
    app.dependency_overrides[books.get_cost_ledger] = lambda: ledger
    app.dependency_overrides[books.get_session_factory] = lambda: session_factory
    app.dependency_overrides[books.get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_job_queue] = lambda: jobs
    app.dependency_overrides[get_cache] = lambda: TTLMemoryCache()

    test_client = TestClient(app)
    test_client.vision = vision
    test_client.jobs = jobs
    yield test_client
    app.dependency_overrides.clear()
