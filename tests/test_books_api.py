"""
HTTP tests for /books: upload, duplicates, retries, progress and reports
"""

import asyncio
import json

import pytest

from database.models import (
    ApiCostTracking, Book, PageExtractionResult, PageStatus, PyqType, Question, UploadStatus,
)
from extraction.metadata import GENERIC_DESCRIPTION
from extraction.page_splitter import split_document
from extraction.sections import plan_sections
from services.tasks import MODE_FULL, MODE_PAGES, MODE_SECTION, MODE_SPLIT

from conftest import make_pdf, questions_json

NEET_2024 = json.dumps({
    "exam_name": "NEET",
    "exam_year": 2024,
    "title": "NEET 2024 Question Paper",
    "description": "NEET UG 2024 full paper",
    "category": "full_length",
    "subject": None,
})


def _upload(client, filename="neet_2024-paper.pdf", data=None, **form):
    return client.post(
        "/books/upload",
        files={"file": (filename, data if data is not None else make_pdf(2), "application/pdf")},
        data=form,
    )


@pytest.fixture
def split_book(db, blob_store, make_book, settings):
    def _make(pages=3, **fields):
        book = make_book(pages=pages, **fields)
        split_document(db, blob_store, book.id, make_pdf(pages), dpi=72)
        plan_sections(db, book, pages, settings)
        return book

    return _make


# ─── Upload ───────────────────────────────────────────────────────────────────

def test_upload_creates_book_and_queues_job(client, db):
    client.vision.script = [NEET_2024]

    response = _upload(client)

    assert response.status_code == 201
    body = response.json()
    assert body["processing"] == "queued"
    assert body["detected_metadata"]["exam_name"] == "NEET"
    book = body["book"]
    assert book["title"] == "NEET 2024 Question Paper"
    assert book["exam_year"] == 2024
    assert book["pyq_type"] == "full_length"
    assert book["upload_status"] == "pending"
    assert book["expected_questions"] == 200
    assert client.jobs.jobs == [{"book_id": book["id"], "mode": MODE_FULL, "pages": None, "subject": None}]

    cost = db.query(ApiCostTracking).one()
    assert cost.book_id == book["id"]
    assert cost.operation_type == "metadata_detection"


def test_upload_without_metadata_uses_filename(client):
    client.vision.script = [RuntimeError("vision service down")]

    response = _upload(client, filename="jee_main-2023.pdf")

    assert response.status_code == 201
    book = response.json()["book"]
    assert book["title"] == "jee main 2023"
    assert book["description"] == GENERIC_DESCRIPTION
    assert book["exam_name"] is None


def test_form_fields_override_metadata(client):
    client.vision.script = [NEET_2024]

    response = _upload(client, title="My paper", examYear="2023", pyqType="subject_wise",
                       subject="Physics", expectedQuestions="45")

    book = response.json()["book"]
    assert book["title"] == "My paper"
    assert book["exam_year"] == 2023
    assert book["pyq_type"] == "subject_wise"
    assert book["subject"] == "Physics"
    assert book["expected_questions"] == 45


def test_same_bytes_are_rejected(client, db):
    pdf = make_pdf(2, label="paper A")
    first = _upload(client, data=pdf)
    assert first.status_code == 201

    second = _upload(client, filename="copy.pdf", data=pdf)

    assert second.status_code == 409
    detail = second.json()["detail"]
    assert detail["existing_book"]["book_id"] == first.json()["book"]["id"]
    assert detail["existing_book"]["matched_on"] == "content_hash"
    assert detail["actions"]["retry"] == f"/books/{first.json()['book']['id']}/retry"
    assert db.query(Book).count() == 1
    assert len(client.jobs.jobs) == 1


def test_same_exam_identity_is_rejected(client, db):
    client.vision.script = [NEET_2024, NEET_2024]
    assert _upload(client, data=make_pdf(2, label="scan one")).status_code == 201

    response = _upload(client, filename="rescan.pdf", data=make_pdf(3, label="scan two"))

    assert response.status_code == 409
    assert response.json()["detail"]["existing_book"]["matched_on"] == "exam_identity"
    # the detection call of the rejected upload is still accounted for
    assert db.query(ApiCostTracking).filter(ApiCostTracking.book_id.is_(None)).count() == 1


def test_detect_only_and_preview(client):
    detect = _upload(client, data=make_pdf(1, label="one"), detectOnly="true")
    preview = _upload(client, data=make_pdf(1, label="two"), previewMode="true")

    assert detect.json()["processing"] == "detect_only"
    assert preview.json()["processing"] == "preview"
    assert client.jobs.jobs == [
        {"book_id": preview.json()["book"]["id"], "mode": MODE_SPLIT, "pages": None, "subject": None}
    ]


@pytest.mark.parametrize("filename, data", [
    ("paper.docx", b"PK\x03\x04"),
    ("paper.pdf", b""),
])
def test_upload_rejects_bad_files(client, filename, data):
    assert _upload(client, filename=filename, data=data).status_code == 400


# ─── CRUD ─────────────────────────────────────────────────────────────────────

def test_list_and_get(client, make_book):
    make_book(subject="Physics")
    book = make_book(subject="Chemistry", upload_status=UploadStatus.COMPLETED)

    listing = client.get("/books", params={"status": "completed"}).json()
    assert listing["total"] == 1
    assert listing["books"][0]["id"] == book.id

    assert client.get("/books", params={"subject": "physics"}).json()["total"] == 1
    detail = client.get(f"/books/{book.id}").json()
    assert detail["question_count"] == 0
    assert client.get("/books/999").status_code == 404


def test_patch_rejects_identity_of_another_book(client, make_book):
    make_book(exam_name="NEET", exam_year=2024)
    book = make_book()

    response = client.patch(f"/books/{book.id}", json={"examName": "NEET", "examYear": 2024})

    assert response.status_code == 409


def test_patch_updates_and_starts_processing(client, make_book):
    book = make_book(upload_status=UploadStatus.FAILED)

    response = client.patch(f"/books/{book.id}", json={"examName": "JEE", "pyqType": "full_length", "startProcessing": True})

    assert response.status_code == 200
    body = response.json()
    assert body["exam_name"] == "JEE"
    assert body["upload_status"] == "pending"
    assert client.jobs.jobs[0]["mode"] == MODE_FULL


def test_patch_refuses_second_run_while_one_is_queued(client, db):
    book_id = _upload(client).json()["book"]["id"]
    assert db.get(Book, book_id).job_queued_at is not None

    response = client.patch(f"/books/{book_id}", json={"startProcessing": True})

    assert response.status_code == 409
    assert [job["mode"] for job in client.jobs.jobs] == [MODE_FULL]


def test_patch_refuses_while_processing(client, make_book):
    book = make_book(upload_status=UploadStatus.PROCESSING, extraction_progress=60)

    assert client.patch(f"/books/{book.id}", json={"startProcessing": True}).status_code == 409
    assert client.jobs.jobs == []


def test_delete_removes_book_and_files(client, db, split_book):
    book_id = split_book(pages=2).id

    response = client.delete(f"/books/{book_id}")

    assert response.status_code == 200
    assert response.json()["files_removed"] == 3
    assert client.get(f"/books/{book_id}").status_code == 404
    db.expire_all()
    assert db.query(PageExtractionResult).filter_by(book_id=book_id).count() == 0


# ─── Retry ────────────────────────────────────────────────────────────────────

def test_retry_requires_failed_or_completed(client, make_book):
    pending = make_book()
    failed = make_book(upload_status=UploadStatus.FAILED, error_message="boom", extraction_progress=40)

    assert client.post(f"/books/{pending.id}/retry").status_code == 400

    response = client.post(f"/books/{failed.id}/retry")
    assert response.status_code == 200
    assert response.json()["upload_status"] == "pending"
    assert client.jobs.jobs == [{"book_id": failed.id, "mode": MODE_FULL, "pages": None, "subject": None}]


def test_retry_pages(client, split_book):
    book = split_book(pages=3)

    assert client.post(f"/books/{book.id}/retry-pages", json={"pageNumbers": [2, 9]}).status_code == 400
    assert client.post(f"/books/{book.id}/retry-pages", json={"pageNumbers": []}).status_code == 422

    response = client.post(f"/books/{book.id}/retry-pages", json={"pageNumbers": [3, 2, 3]})
    assert response.status_code == 200
    body = response.json()
    assert body["pages"] == [2, 3]
    assert body["estimated_cost"] == "$0.20"
    assert client.jobs.jobs == [{"book_id": book.id, "mode": MODE_PAGES, "pages": [2, 3], "subject": None}]


def test_retry_pages_conflicts_while_processing(client, split_book):
    book = split_book(pages=2, upload_status=UploadStatus.PROCESSING)
    assert client.post(f"/books/{book.id}/retry-pages", json={"pageNumbers": [1]}).status_code == 409


def test_retry_section_estimates_then_executes(client, split_book):
    book = split_book(pages=5, exam_name="JEE", pyq_type=PyqType.FULL_LENGTH)

    assert client.post(f"/books/{book.id}/retry-section", json={"subject": "Biology"}).status_code == 404

    estimate = client.post(f"/books/{book.id}/retry-section", json={"subject": "Mathematics"}).json()
    assert estimate["pages"] == [4, 5]
    assert estimate["estimated_cost"] == "$0.20"
    assert estimate["queued"] is False
    assert client.jobs.jobs == []

    executed = client.post(f"/books/{book.id}/retry-section", json={"subject": "Mathematics", "execute": True}).json()
    assert executed["queued"] is True
    assert client.jobs.jobs == [{"book_id": book.id, "mode": MODE_SECTION, "pages": None, "subject": "Mathematics"}]


def test_smart_retry(client, db, split_book):
    book = split_book(pages=3)
    page = db.query(PageExtractionResult).filter_by(book_id=book.id, page_number=2).one()
    page.status = PageStatus.FAILED
    db.commit()

    body = client.post(f"/books/{book.id}/smart-retry").json()

    assert body["action"] == "retry_pages"
    assert body["pages"] == [2]
    assert body["estimated_cost"] == "$0.10"
    assert client.jobs.jobs == []


# ─── Progress / report ────────────────────────────────────────────────────────

def test_progress_and_stream(client, make_book):
    book = make_book(upload_status=UploadStatus.COMPLETED, extraction_progress=100, total_questions_extracted=12)

    snapshot = client.get(f"/books/{book.id}/progress").json()
    assert snapshot["upload_status"] == "completed"
    assert snapshot["total_questions_extracted"] == 12
    assert client.get("/books/999/progress").status_code == 404

    response = client.get(f"/books/{book.id}/progress/stream")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [chunk for chunk in response.text.split("\n\n") if chunk]
    assert len(events) == 1
    assert events[0].startswith("event: progress\ndata: ")
    assert json.loads(events[0].split("data: ", 1)[1])["extraction_progress"] == 100


def test_report_pages_and_questions_after_run(client, db, make_book, make_orchestrator):
    book = make_book(pages=3, subject="Physics", expected_questions=20)
    vision = client.vision
    vision.script = [questions_json(range(1, 6)), questions_json(range(6, 11)), ValueError("unreadable")]
    asyncio.run(make_orchestrator(vision).run_full(book.id))

    report = client.get(f"/books/{book.id}/extraction-report").json()

    assert report["book"]["upload_status"] == "completed"
    assert report["overview"] == {
        "total_pages": 3,
        "successful_pages": 2,
        "partial_pages": 0,
        "failed_pages": 1,
        "pending_pages": 0,
        "questions_extracted": 10,
        "expected_questions": 20,
        "completion_percent": 50.0,
    }
    assert report["cost"]["total_calls"] == 3
    assert report["cost"]["total_cost_usd"] == "0.015000"
    assert report["pages"][2]["status"] == "failed"
    assert report["pages"][2]["error_message"] == "unreadable"

    pages = client.get(f"/books/{book.id}/pages").json()
    assert pages["total_pages"] == 3
    assert pages["pages"][0]["image_url"] == f"/uploads/books/{book.id}/pages/page-001.png"

    questions = client.get(f"/books/{book.id}/questions", params={"limit": 4}).json()
    assert questions["total"] == 10
    assert [q["question_number"] for q in questions["questions"]] == [1, 2, 3, 4]
    assert questions["questions"][0]["question_type"] == "single_correct"


# ─── Answer keys ──────────────────────────────────────────────────────────────

def test_extract_and_apply_answer_key(client, db, split_book):
    book = split_book(pages=2)
    db.add(Question(book_id=book.id, page_number=1, question_number=1, question_text="Question one text",
                    subject="Physics", topic="Optics", option_a="a", option_b="b", option_c="c", option_d="d"))
    db.commit()
    client.vision.script = ['{"1": "(c)", "2": "a"}']

    extracted = client.post(f"/books/{book.id}/extract-answer-key", json={"pageNumber": 2})
    assert extracted.status_code == 200
    assert extracted.json()["answer_key"] == {"1": "C", "2": "A"}

    applied = client.post(f"/books/{book.id}/apply-answer-key", json={"answerKey": extracted.json()["answer_key"]})
    assert applied.json() == {"book_id": book.id, "updated": 1, "invalid": [], "not_found": [2]}
    db.expire_all()
    assert db.query(Question).filter_by(book_id=book.id).one().correct_answer == "C"


def test_answer_key_errors(client, split_book):
    book = split_book(pages=1)

    assert client.post(f"/books/{book.id}/extract-answer-key", json={"pageNumber": 5}).status_code == 404

    client.vision.script = ["no answers on this page"]
    assert client.post(f"/books/{book.id}/extract-answer-key", json={"pageNumber": 1}).status_code == 502
