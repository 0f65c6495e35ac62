"""
Pydantic schemas for request/response validation
Separate from SQLAlchemy models for clean API contracts
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict
from datetime import datetime

from database.models import UploadStatus, BookType, PyqType, PageStatus, SectionStatus, QuestionType


# ==========================================
# BOOK SCHEMAS
# ==========================================

class BookUpdate(BaseModel):
    """Schema for PATCH /books/{id} - all fields optional"""
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    subject: Optional[str] = Field(None, max_length=100)
    exam_name: Optional[str] = Field(None, max_length=100, alias="examName")
    exam_year: Optional[int] = Field(None, ge=1950, le=2100, alias="examYear")
    exam_type: Optional[str] = Field(None, max_length=100, alias="examType")
    pyq_type: Optional[PyqType] = Field(None, alias="pyqType")
    expected_questions: Optional[int] = Field(None, ge=1, alias="expectedQuestions")
    start_processing: bool = Field(False, alias="startProcessing")


class BookResponse(BaseModel):
    """Schema for Book response"""
    id: int
    title: str
    description: Optional[str] = None
    filename: str
    content_hash: str
    file_size_bytes: int
    exam_name: Optional[str] = None
    exam_year: Optional[int] = None
    subject: Optional[str] = None
    exam_type: Optional[str] = None
    book_type: BookType
    pyq_type: Optional[PyqType] = None
    upload_status: UploadStatus
    extraction_progress: int
    current_step: Optional[str] = None
    total_questions_extracted: int
    expected_questions: int
    error_message: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BookDetailResponse(BookResponse):
    question_count: int = 0


class BookListResponse(BaseModel):
    books: List[BookResponse]
    total: int
    page: int
    limit: int


class DetectedMetadata(BaseModel):
    """Best-effort metadata inferred from the first page; every field may be absent."""
    exam_name: Optional[str] = None
    exam_year: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[PyqType] = None
    subject: Optional[str] = None


class UploadResponse(BaseModel):
    book: BookResponse
    detected_metadata: DetectedMetadata
    processing: str = Field(..., description="queued | preview | detect_only")


class DuplicateBookSummary(BaseModel):
    book_id: int
    title: str
    upload_status: UploadStatus
    total_questions_extracted: int
    matched_on: str


# ==========================================
# PAGE / SECTION SCHEMAS
# ==========================================

class PageResultResponse(BaseModel):
    page_number: int
    status: PageStatus
    page_image_key: Optional[str] = None
    image_url: Optional[str] = None
    questions_extracted: int
    expected_question_range: Optional[str] = None
    extracted_questions: List[int] = Field(default_factory=list)
    missing_questions: List[int] = Field(default_factory=list)
    error_message: Optional[str] = None
    api_cost: str
    processing_time_ms: Optional[int] = None
    retry_count: int
    last_retry_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SectionResultResponse(BaseModel):
    subject: str
    start_page: int
    end_page: int
    expected_questions: int
    extracted_questions: int
    missing_question_numbers: List[int] = Field(default_factory=list)
    status: SectionStatus

    model_config = ConfigDict(from_attributes=True)


class QuestionResponse(BaseModel):
    id: int
    question_number: int
    page_number: Optional[int] = None
    subject: Optional[str] = None
    topic: Optional[str] = None
    subtopic: Optional[str] = None
    question_text: str
    question_type: QuestionType
    option_a: Optional[str] = None
    option_b: Optional[str] = None
    option_c: Optional[str] = None
    option_d: Optional[str] = None
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None
    difficulty: Optional[str] = None
    is_active: bool
    has_diagram: bool

    model_config = ConfigDict(from_attributes=True)


class QuestionListResponse(BaseModel):
    questions: List[QuestionResponse]
    total: int
    page: int
    limit: int


# ==========================================
# RETRY REQUESTS
# ==========================================

class RetryPagesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page_numbers: List[int] = Field(..., min_length=1, alias="pageNumbers")


class RetrySectionRequest(BaseModel):
    subject: str = Field(..., min_length=1)
    execute: bool = Field(False, description="Queue the section re-run instead of only estimating it")


class AnswerKeyExtractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page_number: int = Field(..., ge=1, alias="pageNumber")


class AnswerKeyApplyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    answer_key: Dict[str, str] = Field(..., alias="answerKey")
