"""
Runtime configuration for the extraction pipeline.

Everything is read from the environment once at import time (a .env file is
loaded by the API / worker entry points). ExtractionSettings snapshots the
values the orchestrator needs so callers can override them per instance.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

# ── Vision model ──────────────────────────────────────────────────────────────
VISION_PROVIDER = os.getenv("VISION_PROVIDER", "openai")
VISION_MODEL = os.getenv("VISION_MODEL", "gpt-4o")
METADATA_MODEL = os.getenv("METADATA_MODEL", VISION_MODEL)
VISION_MAX_TOKENS = int(os.getenv("VISION_MAX_TOKENS", "4096"))

# ── Retry policy ──────────────────────────────────────────────────────────────
MAX_ATTEMPTS = int(os.getenv("EXTRACTION_MAX_ATTEMPTS", "3"))
INITIAL_RETRY_DELAY = float(os.getenv("EXTRACTION_INITIAL_DELAY", "1.0"))  # seconds, doubles per attempt
MODEL_TIMEOUT = float(os.getenv("EXTRACTION_MODEL_TIMEOUT", "120"))         # seconds per invocation

# ── Rendering ─────────────────────────────────────────────────────────────────
RENDER_DPI = int(os.getenv("RENDER_DPI", "200"))
MAX_VISION_IMAGE_DIM = int(os.getenv("MAX_VISION_IMAGE_DIM", "2048"))

# ── Scheduling ────────────────────────────────────────────────────────────────
PAGE_CONCURRENCY = int(os.getenv("PAGE_CONCURRENCY", "1"))
PROGRESS_STREAM_INTERVAL = float(os.getenv("PROGRESS_STREAM_INTERVAL", "2.0"))

# ── Retry advisor estimates ───────────────────────────────────────────────────
PER_PAGE_COST_USD = float(os.getenv("PER_PAGE_COST_USD", "0.10"))
PER_PAGE_SECONDS = int(os.getenv("PER_PAGE_SECONDS", "15"))

# ── Upload ────────────────────────────────────────────────────────────────────
MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", 104857600))  # 100MB
ALLOWED_EXTENSIONS = {"pdf"}
DEFAULT_EXPECTED_QUESTIONS = 200

# ── Storage / cache ───────────────────────────────────────────────────────────
BLOB_BACKEND = os.getenv("BLOB_BACKEND", "local")     # local | s3
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_REGION = os.getenv("AWS_REGION", "us-east-1")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CACHE_BACKEND = os.getenv("CACHE_BACKEND", "memory")  # memory | redis

# ── Sections ──────────────────────────────────────────────────────────────────
DEFAULT_SECTION_QUESTIONS = 45

# Expected questions per section when boundaries have to be inferred from results
SECTION_QUESTIONS_BY_EXAM: Dict[str, int] = {
    "NEET": 45,
    "JEE": 30,
}

# Full-length paper layouts: ordered (subject, question count)
EXAM_LAYOUTS: Dict[str, List[Tuple[str, int]]] = {
    "NEET": [("Physics", 45), ("Chemistry", 45), ("Botany", 45), ("Zoology", 45)],
    "JEE": [("Physics", 30), ("Chemistry", 30), ("Mathematics", 30)],
}


@dataclass
class ExtractionSettings:
    """Snapshot of pipeline tunables handed to the orchestrator and page extractor."""
    vision_model: str = VISION_MODEL
    max_attempts: int = MAX_ATTEMPTS
    initial_delay: float = INITIAL_RETRY_DELAY
    model_timeout: float = MODEL_TIMEOUT
    render_dpi: int = RENDER_DPI
    max_image_dim: int = MAX_VISION_IMAGE_DIM
    page_concurrency: int = PAGE_CONCURRENCY
    default_section_questions: int = DEFAULT_SECTION_QUESTIONS
    section_questions_by_exam: Dict[str, int] = field(default_factory=lambda: dict(SECTION_QUESTIONS_BY_EXAM))
    exam_layouts: Dict[str, List[Tuple[str, int]]] = field(default_factory=lambda: dict(EXAM_LAYOUTS))

    def section_questions_for(self, exam_name) -> int:
        if exam_name:
            return self.section_questions_by_exam.get(exam_name.strip().upper(), self.default_section_questions)
        return self.default_section_questions

    def layout_for(self, exam_name):
        if not exam_name:
            return None
        return self.exam_layouts.get(exam_name.strip().upper())
