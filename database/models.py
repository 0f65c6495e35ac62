"""
SQLAlchemy models for the exam extraction pipeline
Book → PageExtractionResult / SectionPlan / SectionExtractionResult / Question, plus the cost ledger.

Integer-array columns (extracted / missing question numbers) are JSON columns that
default to an empty list; they are never NULL.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, DateTime, Text, Numeric, JSON,
    UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from database.database import Base


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class UploadStatus(str, enum.Enum):
    """Lifecycle of a book: pending → processing → {completed, failed}"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BookType(str, enum.Enum):
    PYQ = "pyq"
    STANDARD = "standard"


class PyqType(str, enum.Enum):
    SUBJECT_WISE = "subject_wise"
    FULL_LENGTH = "full_length"


class PageStatus(str, enum.Enum):
    """PENDING marks a page that was split but not yet extracted."""
    PENDING = "pending"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class SectionStatus(str, enum.Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class QuestionType(str, enum.Enum):
    SINGLE_CORRECT = "single_correct"
    MULTIPLE_CORRECT = "multiple_correct"
    ASSERTION_REASON = "assertion_reason"
    INTEGER_TYPE = "integer_type"
    MATCH_LIST = "match_list"


# ==========================================
# BOOK (one uploaded exam PDF)
# ==========================================

class Book(Base):
    """
    One uploaded exam PDF and its extraction lifecycle record.
    Mutated by the orchestrator; deleted only by an explicit delete that cascades
    to pages, sections, plans, questions and cost rows.
    """
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    filename = Column(String(500), nullable=False)
    storage_key = Column(String(1000), nullable=True)
    content_hash = Column(String(64), nullable=False, index=True)  # SHA-256 hex
    file_size_bytes = Column(Integer, nullable=False, default=0)

    # Inferred / edited exam identity
    exam_name = Column(String(100), nullable=True, index=True)
    exam_year = Column(Integer, nullable=True, index=True)
    subject = Column(String(100), nullable=True)
    exam_type = Column(String(100), nullable=True)
    book_type = Column(SQLEnum(BookType, name="book_type", values_callable=_enum_values), nullable=False, default=BookType.PYQ)
    pyq_type = Column(SQLEnum(PyqType, name="pyq_type", values_callable=_enum_values), nullable=True)

    # Extraction lifecycle
    upload_status = Column(
        SQLEnum(UploadStatus, name="upload_status", values_callable=_enum_values),
        nullable=False, default=UploadStatus.PENDING, index=True,
    )
    extraction_progress = Column(Integer, nullable=False, default=0)
    current_step = Column(String(500), nullable=True)
    total_questions_extracted = Column(Integer, nullable=False, default=0)
    expected_questions = Column(Integer, nullable=False, default=200)
    error_message = Column(Text, nullable=True)
    job_queued_at = Column(DateTime(timezone=True), nullable=True)  # set while a full run waits in the queue
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processing_completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    pages = relationship("PageExtractionResult", back_populates="book", cascade="all, delete-orphan",
                         order_by="PageExtractionResult.page_number")
    section_plans = relationship("SectionPlan", back_populates="book", cascade="all, delete-orphan",
                                 order_by="SectionPlan.position")
    sections = relationship("SectionExtractionResult", back_populates="book", cascade="all, delete-orphan")
    questions = relationship("Question", back_populates="book", cascade="all, delete-orphan")
    cost_entries = relationship("ApiCostTracking", back_populates="book", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Book(id={self.id}, title='{self.title}', status='{self.upload_status}')>"


# ==========================================
# PER-PAGE AND PER-SECTION BOOKKEEPING
# ==========================================

class PageExtractionResult(Base):
    """
    One row per page number per book, overwritten in place on every retry.
    attempt_seq is claimed at the start of each extraction attempt; only the
    holder of the current value may write the result.
    """
    __tablename__ = "page_extraction_results"
    __table_args__ = (
        UniqueConstraint("book_id", "page_number", name="uq_page_extraction_book_page"),
    )

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    page_number = Column(Integer, nullable=False)
    page_image_key = Column(String(1000), nullable=True)
    status = Column(SQLEnum(PageStatus, name="page_status", values_callable=_enum_values),
                    nullable=False, default=PageStatus.PENDING)
    questions_extracted = Column(Integer, nullable=False, default=0)
    expected_question_range = Column(String(50), nullable=True)  # e.g. "Q1-Q10"
    expected_first = Column(Integer, nullable=True)
    expected_last = Column(Integer, nullable=True)
    extracted_questions = Column(JSON, nullable=False, default=list)
    missing_questions = Column(JSON, nullable=False, default=list)
    error_message = Column(Text, nullable=True)
    api_cost = Column(String(20), nullable=False, default="0.000000")
    processing_time_ms = Column(Integer, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    attempt_seq = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    book = relationship("Book", back_populates="pages")

    def __repr__(self):
        return f"<PageExtractionResult(book_id={self.book_id}, page={self.page_number}, status='{self.status}')>"


class SectionPlan(Base):
    """
    Persisted range definition for one subject of one book, created at planning time.
    Aggregation reads these instead of re-deriving boundaries from an exam layout.
    """
    __tablename__ = "section_plans"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    subject = Column(String(100), nullable=False)
    start_page = Column(Integer, nullable=False)
    end_page = Column(Integer, nullable=False)
    first_question = Column(Integer, nullable=False)
    last_question = Column(Integer, nullable=False)
    expected_questions = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    book = relationship("Book", back_populates="section_plans")


class SectionExtractionResult(Base):
    """Derived roll-up of page results; always replaced wholesale by the aggregator."""
    __tablename__ = "section_extraction_results"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    subject = Column(String(100), nullable=False)
    start_page = Column(Integer, nullable=False)
    end_page = Column(Integer, nullable=False)
    expected_questions = Column(Integer, nullable=False, default=0)
    extracted_questions = Column(Integer, nullable=False, default=0)
    missing_question_numbers = Column(JSON, nullable=False, default=list)
    status = Column(SQLEnum(SectionStatus, name="section_status", values_callable=_enum_values), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    book = relationship("Book", back_populates="sections")


# ==========================================
# COST LEDGER
# ==========================================

class ApiCostTracking(Base):
    """One row per external model invocation. Append-only."""
    __tablename__ = "api_cost_tracking"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=True, index=True)
    api_provider = Column(String(50), nullable=False)
    model_name = Column(String(100), nullable=False)
    operation_type = Column(String(50), nullable=False, index=True)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    estimated_cost_usd = Column(String(20), nullable=False, default="0.000000")
    page_number = Column(Integer, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    book = relationship("Book", back_populates="cost_entries")


# ==========================================
# QUESTIONS
# ==========================================

class Question(Base):
    """
    A single extracted question. question_number is unique within its book;
    page_number records the page whose latest extraction produced it.
    """
    __tablename__ = "questions"
    __table_args__ = (
        UniqueConstraint("book_id", "question_number", name="uq_question_book_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    page_number = Column(Integer, nullable=True, index=True)
    question_number = Column(Integer, nullable=False)

    subject = Column(String(100), nullable=True)
    topic = Column(String(255), nullable=True)
    subtopic = Column(String(255), nullable=True)
    exam_year = Column(Integer, nullable=True)
    exam_type = Column(String(100), nullable=True)

    question_text = Column(Text, nullable=False, default="")
    question_image = Column(String(1000), nullable=True)
    question_type = Column(SQLEnum(QuestionType, name="question_type", values_callable=_enum_values),
                           nullable=False, default=QuestionType.SINGLE_CORRECT)
    option_a = Column(Text, nullable=True)
    option_b = Column(Text, nullable=True)
    option_c = Column(Text, nullable=True)
    option_d = Column(Text, nullable=True)
    option_a_image = Column(String(1000), nullable=True)
    option_b_image = Column(String(1000), nullable=True)
    option_c_image = Column(String(1000), nullable=True)
    option_d_image = Column(String(1000), nullable=True)
    correct_answer = Column(String(20), nullable=True)  # some sources carry no key
    explanation = Column(Text, nullable=True)
    marks_positive = Column(Numeric(5, 2), nullable=False, default=4)
    marks_negative = Column(Numeric(5, 2), nullable=False, default=1)
    difficulty = Column(String(20), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    has_diagram = Column(Boolean, nullable=False, default=False)
    diagram_description = Column(Text, nullable=True)
    structured_data = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    book = relationship("Book", back_populates="questions")

    def __repr__(self):
        return f"<Question(book_id={self.book_id}, number={self.question_number})>"
