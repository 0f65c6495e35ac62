"""
Internal schemas for model output.

ExtractedQuestion validates one question object from the page-extraction
response; anything without a usable question number is rejected.
"""

from typing import Optional, Dict, Any

from pydantic import BaseModel, Field, ConfigDict, AliasChoices, field_validator

from database.models import QuestionType

_OPTION_LABELS = ("A", "B", "C", "D")


class ExtractedQuestion(BaseModel):
    """One question candidate parsed from a page."""
    model_config = ConfigDict(extra="ignore")

    question_number: int = Field(..., gt=0, validation_alias=AliasChoices("question_number", "questionNumber", "number"))
    question_text: str = Field("", validation_alias=AliasChoices("question_text", "questionText", "text"))
    question_type: QuestionType = Field(QuestionType.SINGLE_CORRECT, validation_alias=AliasChoices("question_type", "questionType", "type"))
    options: Dict[str, str] = Field(default_factory=dict)
    correct_answer: Optional[str] = Field(None, validation_alias=AliasChoices("correct_answer", "correctAnswer", "answer"))
    explanation: Optional[str] = None
    subject: Optional[str] = None
    topic: Optional[str] = None
    subtopic: Optional[str] = None
    difficulty: Optional[str] = None
    has_diagram: bool = Field(False, validation_alias=AliasChoices("has_diagram", "hasDiagram"))
    diagram_description: Optional[str] = Field(None, validation_alias=AliasChoices("diagram_description", "diagramDescription"))
    structured_data: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("structured_data", "structuredData"))

    @field_validator("question_number", mode="before")
    @classmethod
    def _coerce_number(cls, v):
        # "Q12", "12." → 12
        if isinstance(v, str):
            digits = "".join(ch for ch in v if ch.isdigit())
            return int(digits) if digits else v
        return v

    @field_validator("question_type", mode="before")
    @classmethod
    def _coerce_type(cls, v):
        if v is None:
            return QuestionType.SINGLE_CORRECT
        text = str(v).strip().lower().replace("-", "_").replace(" ", "_")
        valid = {t.value for t in QuestionType}
        return text if text in valid else QuestionType.SINGLE_CORRECT

    @field_validator("options", mode="before")
    @classmethod
    def _coerce_options(cls, v):
        # Accept {"A": ...} or ["...", "...", ...] or [{"label": "A", "text": ...}]
        if v is None:
            return {}
        if isinstance(v, list):
            out = {}
            for i, item in enumerate(v[:4]):
                if isinstance(item, dict):
                    label = str(item.get("label") or _OPTION_LABELS[i]).strip().upper()[:1]
                    out[label] = str(item.get("text") or "").strip()
                else:
                    out[_OPTION_LABELS[i]] = str(item).strip()
            return out
        if isinstance(v, dict):
            return {str(k).strip().upper()[:1]: str(val or "").strip() for k, val in v.items()}
        return {}

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _coerce_answer(cls, v):
        if v is None:
            return None
        text = str(v).strip().upper()
        return text or None

    @property
    def is_complete(self) -> bool:
        return is_complete_question(self.question_text, self.subject, self.topic, self.question_type, self.options)


def is_complete_question(text, subject, topic, question_type, options: Dict[str, str]) -> bool:
    """Enough content to show the question in practice sets."""
    if len((text or "").strip()) < 10:
        return False
    if not subject or not topic:
        return False
    if question_type in (QuestionType.SINGLE_CORRECT, QuestionType.MULTIPLE_CORRECT):
        return all(options.get(label) for label in _OPTION_LABELS)
    return True
