"""
Answer keys printed separately from the questions (last pages, or a separate sheet).

extract_answer_key() reads {question_number: answer} from one page image;
apply_answer_key() writes the answers onto a book's questions and re-activates
questions that become complete.
"""

import logging
import re
import time
from typing import Dict, Optional

from sqlalchemy.orm import Session

from database.models import Question, QuestionType

from .cost_ledger import CostLedger, ModelCall
from .parsing import extract_json_obj
from .retry import retry_with_backoff
from .schemas import is_complete_question

log = logging.getLogger(__name__)

OPERATION_ANSWER_KEY = "answer_key_extraction"

ANSWER_KEY_PROMPT = """This page is an answer key for an exam paper.
Return ONLY a JSON object mapping each question number to its answer, e.g.
{"1": "A", "2": "C", "3": "BD", "4": "12"}
Use option letters for choice questions and the number for integer-type questions."""

_CHOICE_RE = re.compile(r"^[A-D]{1,4}$")
_INTEGER_RE = re.compile(r"^-?\d+(\.\d+)?$")
_OPTION_NUMBERS = {"1": "A", "2": "B", "3": "C", "4": "D"}


def normalize_answer(value, question_type: Optional[QuestionType] = None) -> Optional[str]:
    """'(b)' → 'B', 'a, c' → 'AC', '12' stays '12' for integer questions."""
    if value is None:
        return None
    text = re.sub(r"[\s(),.]", "", str(value).upper())
    if not text:
        return None
    if question_type == QuestionType.INTEGER_TYPE:
        return text if _INTEGER_RE.match(text) else None
    if text in _OPTION_NUMBERS and question_type is not None:
        return _OPTION_NUMBERS[text]
    if _CHOICE_RE.match(text):
        return "".join(sorted(set(text)))
    if _INTEGER_RE.match(text):
        return text
    return None


def parse_answer_key(raw: Dict) -> Dict[int, str]:
    key: Dict[int, str] = {}
    for number, answer in (raw or {}).items():
        digits = re.sub(r"\D", "", str(number))
        answer_text = normalize_answer(answer)
        if digits and answer_text:
            key[int(digits)] = answer_text
    return key


async def extract_answer_key(vision, ledger: CostLedger, book_id: int, page_number: int, image_png: bytes,
                             max_attempts: int = 3, initial_delay: float = 1.0) -> Dict[int, str]:
    def on_attempt(attempt, response, exc, elapsed_ms):
        ledger.record(ModelCall(
            provider=getattr(response, "provider", None) or getattr(vision, "provider", "openai"),
            model_name=getattr(response, "model", None) or getattr(vision, "model", "unknown"),
            operation_type=OPERATION_ANSWER_KEY,
            input_tokens=getattr(response, "input_tokens", 0) or 0,
            output_tokens=getattr(response, "output_tokens", 0) or 0,
            success=exc is None,
            error_message=str(exc) if exc is not None else None,
            processing_time_ms=elapsed_ms,
            page_number=page_number,
        ), book_id=book_id)

    started = time.monotonic()
    response = await retry_with_backoff(
        lambda: vision.analyze(image_png, ANSWER_KEY_PROMPT, max_tokens=2000),
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        on_attempt=on_attempt,
        label=f"answer key book {book_id} page {page_number}",
    )
    key = parse_answer_key(extract_json_obj(response.text))
    log.info("[AnswerKey] Book %d page %d: %d answers in %.1fs", book_id, page_number, len(key),
             time.monotonic() - started)
    return key


def apply_answer_key(db: Session, book_id: int, key: Dict) -> dict:
    """
    Set correct_answer on matching questions.

    Returns:
        {"updated": n, "invalid": [numbers], "not_found": [numbers]}
    """
    questions = {
        q.question_number: q
        for q in db.query(Question).filter(Question.book_id == book_id).all()
    }
    updated = 0
    invalid = []
    not_found = []
    for raw_number, raw_answer in key.items():
        digits = re.sub(r"\D", "", str(raw_number))
        if not digits:
            continue
        number = int(digits)
        question = questions.get(number)
        if question is None:
            not_found.append(number)
            continue
        answer = normalize_answer(raw_answer, question.question_type)
        if answer is None:
            invalid.append(number)
            continue
        question.correct_answer = answer
        question.is_active = is_complete_question(
            question.question_text, question.subject, question.topic, question.question_type,
            {"A": question.option_a, "B": question.option_b, "C": question.option_c, "D": question.option_d},
        )
        updated += 1
    db.commit()
    return {"updated": updated, "invalid": sorted(invalid), "not_found": sorted(not_found)}
