"""
Tests for upload intake outside the HTTP layer
"""

import asyncio
import threading

import pytest

from database.models import ApiCostTracking, Book, PyqType, UploadStatus
from extraction.exceptions import DuplicateDocumentError
from extraction.intake import UploadOverrides, intake_upload
from services.blob_store import source_key

from conftest import FakeVision, make_pdf


def test_intake_stores_source_pdf(db, blob_store, ledger):
    pdf = make_pdf(2)
    vision = FakeVision(['{"exam_name": "JEE", "exam_year": 2022, "category": "full_length"}'])

    result = asyncio.run(intake_upload(db, blob_store, vision, ledger, "jee.pdf", pdf))

    book = result.book
    assert book.upload_status == UploadStatus.PENDING
    assert book.exam_name == "JEE"
    assert book.exam_type == "JEE"
    assert book.pyq_type == PyqType.FULL_LENGTH
    assert book.storage_key == source_key(book.id)
    assert blob_store.get(book.storage_key) == pdf
    assert book.file_size_bytes == len(pdf)


def test_override_identity_is_used_for_duplicate_check(db, blob_store, ledger, make_book):
    existing = make_book(exam_name="NEET", exam_year=2021)

    with pytest.raises(DuplicateDocumentError) as exc_info:
        asyncio.run(intake_upload(db, blob_store, FakeVision(), ledger, "paper.pdf", make_pdf(1),
                                  UploadOverrides(exam_name="neet", exam_year=2021)))

    assert exc_info.value.match.book_id == existing.id
    assert db.query(Book).count() == 1


def test_storage_failure_removes_the_book(db, blob_store, ledger, monkeypatch):
    def broken_put(key, data, content_type=None):
        raise OSError("bucket unavailable")

    monkeypatch.setattr(blob_store, "put", broken_put)

    with pytest.raises(OSError):
        asyncio.run(intake_upload(db, blob_store, FakeVision(), ledger, "paper.pdf", make_pdf(1)))

    assert db.query(Book).count() == 0
    row = db.query(ApiCostTracking).one()
    assert row.book_id is None


def test_retried_metadata_still_catches_identity_duplicate(db, blob_store, ledger, make_book):
    existing = make_book(exam_name="NEET", exam_year=2024)
    vision = FakeVision([TimeoutError("timed out"), '{"exam_name": "NEET", "exam_year": 2024}'])

    with pytest.raises(DuplicateDocumentError) as exc_info:
        asyncio.run(intake_upload(db, blob_store, vision, ledger, "paper.pdf", make_pdf(1), initial_delay=0))

    assert exc_info.value.match.book_id == existing.id
    rows = db.query(ApiCostTracking).order_by(ApiCostTracking.id).all()
    assert [(row.book_id, row.success) for row in rows] == [(None, False), (None, True)]


def test_first_page_is_rendered_off_the_event_loop(db, blob_store, ledger, monkeypatch):
    threads = []

    def recording_render(data):
        threads.append(threading.get_ident())
        return None

    monkeypatch.setattr("extraction.intake.render_first_page", recording_render)

    asyncio.run(intake_upload(db, blob_store, FakeVision(), ledger, "paper.pdf", make_pdf(1)))

    assert threads and threads[0] != threading.get_ident()
