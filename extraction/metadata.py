"""
Metadata Inferencer — a vision call on the first page of an upload.

Asks for exam name, year, title, description, category and subject. The
result is best-effort: any field may be absent, and an invocation or parse
error yields an all-absent result instead of failing the upload. Usage
records (one per attempt) are returned so the caller can write the ledger
rows once it knows which book (if any) the calls belong to.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from database.schemas import DetectedMetadata
from database.models import PyqType

from .config import INITIAL_RETRY_DELAY, MAX_ATTEMPTS, METADATA_MODEL, MODEL_TIMEOUT
from .cost_ledger import ModelCall
from .parsing import extract_json_obj
from .retry import retry_with_backoff

log = logging.getLogger(__name__)

OPERATION_METADATA = "metadata_detection"

GENERIC_DESCRIPTION = "Previous year question paper uploaded for question extraction."

METADATA_PROMPT = """This is the first page of an exam question paper or question bank.
Identify it and return ONLY a JSON object with these keys (use null when unsure):
{
  "exam_name": "<short exam name, e.g. NEET, JEE Main>",
  "exam_year": <four digit year or null>,
  "title": "<human readable title>",
  "description": "<one sentence description>",
  "category": "<subject_wise | full_length>",
  "subject": "<subject name if the paper covers a single subject, else null>"
}"""

_YEAR_RE = re.compile(r"(19|20)\d{2}")


@dataclass
class MetadataResult:
    metadata: DetectedMetadata
    calls: List[ModelCall] = field(default_factory=list)

    @property
    def call(self) -> ModelCall:
        """The last invocation (the one whose answer was used, if any)."""
        return self.calls[-1]


def _clean_str(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "unknown", "n/a"):
        return None
    return text


def _clean_year(value) -> Optional[int]:
    if isinstance(value, int) and 1950 <= value <= 2100:
        return value
    match = _YEAR_RE.search(str(value or ""))
    return int(match.group(0)) if match else None


def _clean_category(value) -> Optional[PyqType]:
    text = (_clean_str(value) or "").lower().replace("-", "_").replace(" ", "_")
    if text in ("subject_wise", "subjectwise"):
        return PyqType.SUBJECT_WISE
    if text in ("full_length", "fulllength", "full_paper"):
        return PyqType.FULL_LENGTH
    return None


def parse_metadata(raw: dict) -> DetectedMetadata:
    """Validate a raw model dict field by field; bad values become None."""
    return DetectedMetadata(
        exam_name=_clean_str(raw.get("exam_name") or raw.get("examName")),
        exam_year=_clean_year(raw.get("exam_year") or raw.get("examYear")),
        title=_clean_str(raw.get("title")),
        description=_clean_str(raw.get("description")),
        category=_clean_category(raw.get("category")),
        subject=_clean_str(raw.get("subject")),
    )


async def infer_metadata(vision, image_png: Optional[bytes], max_attempts: int = MAX_ATTEMPTS,
                         initial_delay: float = INITIAL_RETRY_DELAY,
                         timeout: Optional[float] = MODEL_TIMEOUT) -> MetadataResult:
    """
    Run metadata inference on the first page image.

    Transient failures are retried with backoff; every attempt gets its own
    usage record.

    Args:
        vision:    Vision client exposing analyze(image_png, prompt, model=...)
        image_png: First page PNG, or None when the PDF could not be rendered

    Returns:
        MetadataResult; never raises
    """
    model = getattr(vision, "model", METADATA_MODEL) or METADATA_MODEL
    provider = getattr(vision, "provider", "openai")
    if image_png is None:
        call = ModelCall(provider=provider, model_name=model, operation_type=OPERATION_METADATA, page_number=1,
                         success=False, error_message="First page could not be rendered")
        return MetadataResult(metadata=DetectedMetadata(), calls=[call])

    calls: List[ModelCall] = []

    def on_attempt(attempt, response, exc, elapsed_ms):
        calls.append(ModelCall(
            provider=getattr(response, "provider", None) or provider,
            model_name=getattr(response, "model", None) or model,
            operation_type=OPERATION_METADATA,
            input_tokens=getattr(response, "input_tokens", 0) or 0,
            output_tokens=getattr(response, "output_tokens", 0) or 0,
            success=exc is None,
            error_message=f"attempt {attempt}: {exc}" if exc is not None else None,
            processing_time_ms=elapsed_ms,
            page_number=1,
        ))

    try:
        response = await retry_with_backoff(
            lambda: vision.analyze(image_png, METADATA_PROMPT, model=model, max_tokens=500),
            max_attempts=max_attempts,
            initial_delay=initial_delay,
            timeout=timeout,
            on_attempt=on_attempt,
            label="metadata inference",
        )
        metadata = parse_metadata(extract_json_obj(response.text))
    except Exception as e:
        log.warning("[Metadata] Inference failed, continuing without metadata: %s", e)
        if calls and calls[-1].success:
            # answered but unparsable
            calls[-1].success = False
            calls[-1].error_message = str(e)
        metadata = DetectedMetadata()
    return MetadataResult(metadata=metadata, calls=calls)


def fallback_title(filename: str) -> str:
    """'neet_2024-paper.pdf' → 'neet 2024 paper'"""
    stem = Path(filename or "").stem
    title = re.sub(r"[_\-]+", " ", stem).strip()
    return title or "Untitled exam paper"
