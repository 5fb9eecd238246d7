"""
Pydantic schemas for the question generation pipeline.

Candidate items arrive as loosely-typed JSON from the model; CandidateItem
coerces them (numeric answers, list answers, non-string options) into one
shape before validation. Everything else here is plain request / report data.
"""

import enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class QuestionType(str, enum.Enum):
    MCQ = "MCQ"                 # single correct option
    MSQ = "MSQ"                 # multiple correct options
    NAT = "NAT"                 # numerical answer
    SUBJECTIVE = "Subjective"   # open-ended


OPTION_TYPES = (QuestionType.MCQ, QuestionType.MSQ)
REQUIRED_OPTION_COUNT = 4


# ─── Candidate items (model output) ────────────────────────────────────────────

def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)


class CandidateItem(BaseModel):
    """One question as returned by the model, before it is persisted."""
    model_config = ConfigDict(extra="ignore")

    question_statement: str = ""
    question_type: str = ""
    options: Optional[List[str]] = None
    answer: Optional[str] = None
    solution: Optional[str] = None
    is_wrong: bool = False
    validation_reason: Optional[str] = None

    @field_validator("question_statement", "question_type", mode="before")
    @classmethod
    def _coerce_str(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("answer", "solution", "validation_reason", mode="before")
    @classmethod
    def _coerce_optional_str(cls, v: Any) -> Optional[str]:
        return _to_text(v)

    @field_validator("options", mode="before")
    @classmethod
    def _coerce_options(cls, v: Any) -> Optional[List[str]]:
        if v is None:
            return None
        if not isinstance(v, list):
            raise ValueError("options must be a list or null")
        return ["" if o is None else str(o) for o in v]

    @field_validator("is_wrong", mode="before")
    @classmethod
    def _coerce_flag(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return bool(v)


class ExtractedItem(CandidateItem):
    """A question read off a rendered exam page."""
    question_number: Optional[str] = None
    page_number: Optional[int] = None
    has_image: bool = False
    image_description: Optional[str] = None
    is_continuation: bool = False
    spans_multiple_pages: bool = False
    topic_id: Optional[int] = None

    @field_validator("question_number", "image_description", mode="before")
    @classmethod
    def _coerce_extra_str(cls, v: Any) -> Optional[str]:
        return _to_text(v)

    @field_validator("has_image", "is_continuation", "spans_multiple_pages", mode="before")
    @classmethod
    def _coerce_extra_flag(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return bool(v)


class StructuralCheck(BaseModel):
    ok: bool
    reason: str = ""
    item: Optional[CandidateItem] = None


class SolvedAnswer(BaseModel):
    answer: str
    solution: str

    @field_validator("answer", "solution", mode="before")
    @classmethod
    def _coerce(cls, v: Any) -> str:
        return _to_text(v) or ""


class SemanticVerdict(BaseModel):
    is_wrong: bool = False
    reason: str = ""
    correct_answer: Optional[str] = None


# ─── Quotas ────────────────────────────────────────────────────────────────────

class TopicInput(BaseModel):
    """A topic as it enters quota planning."""
    id: int
    name: str
    weightage: float = Field(0.0, ge=0)
    notes: Optional[str] = None


class TopicQuota(BaseModel):
    """GenerationTarget: one topic's share of a run."""
    topic_id: int
    topic_name: str
    weight: float
    quota: int
    existing_count: int = 0
    remaining: int = 0
    reference_count: int = 0
    notes: Optional[str] = None


class QuotaPlan(BaseModel):
    total_requested: int
    total_weight: float
    zero_weight_topics: int
    extra_count: int                 # items added by the zero-weight rule
    total_to_generate: int           # total_requested + extra_count
    topics: List[TopicQuota]         # descending weight, quota > 0 only


class TopicStatsReport(BaseModel):
    question_type: str
    total_target: int
    total_existing: int
    total_remaining: int
    extra_count: int
    topics: List[TopicQuota]


# ─── Run configuration ─────────────────────────────────────────────────────────

class QuestionConfig(BaseModel):
    """Scoring attached to every persisted question."""
    correct_marks: float = 4
    incorrect_marks: float = -1
    skipped_marks: float = 0
    partial_marks: float = 0
    time_minutes: float = 3
    difficulty_level: str = "Medium"
    purpose: str = "practice"


class GenerationTimings(BaseModel):
    """All pipeline sleeps, in seconds. Tests zero them."""
    item_cooldown: float = 5.0
    retry_cooldown: float = 2.0
    error_cooldown: float = 3.0
    topic_cooldown: float = 3.0
    pause_poll: float = 1.0
    call_timeout: float = 60.0
    solution_cooldown: float = 8.0
    solution_retry_step: float = 3.0
    solution_retry_cap: float = 15.0
    validation_cooldown: float = 8.0
    validation_error_cooldown: float = 5.0

    @classmethod
    def zero(cls) -> "GenerationTimings":
        return cls(**{name: 0.0 for name in cls.model_fields if name != "call_timeout"})


class GenerationRequest(BaseModel):
    course_id: int
    question_type: QuestionType = QuestionType.MCQ
    total_questions: int = Field(..., ge=1)
    slot: Optional[str] = None
    part: Optional[str] = None
    config: QuestionConfig = Field(default_factory=QuestionConfig)
    max_attempts: int = Field(3, ge=1)


# ─── Progress & reports ────────────────────────────────────────────────────────

Stage = Literal["questions", "pyq_solutions", "validation"]
Level = Literal["info", "success", "warning", "error"]


class ProgressEvent(BaseModel):
    stage: Stage
    message: str
    level: Level = "info"
    current_topic: Optional[str] = None
    topic_index: int = 0
    total_topics: int = 0
    item_index: int = 0
    items_in_topic: int = 0
    generated: int = 0
    target: int = 0


class GenerationSummary(BaseModel):
    generated: int = 0
    skipped: int = 0
    target: int = 0
    stopped: bool = False
    per_topic: Dict[str, int] = Field(default_factory=dict)


class BackfillReport(BaseModel):
    total: int = 0
    with_answer: int = 0
    with_solution: int = 0
    already_complete: int = 0
    needing_solutions: int = 0
    completed: int = 0
    failed: int = 0
    stopped: bool = False


class ValidationRunReport(BaseModel):
    validated: int = 0
    wrong: int = 0
    correct: int = 0
    failed: int = 0
    stopped: bool = False
    wrong_ids: List[int] = Field(default_factory=list)


# ─── HTTP requests ─────────────────────────────────────────────────────────────

class RunStartRequest(BaseModel):
    mode: Literal["questions", "pyq_solutions"] = "questions"
    course_id: int
    question_type: QuestionType = QuestionType.MCQ
    total_questions: Optional[int] = Field(None, ge=1)
    slot: Optional[str] = None
    part: Optional[str] = None
    config: QuestionConfig = Field(default_factory=QuestionConfig)


class ValidationRunRequest(BaseModel):
    course_id: int


class ApiKeysRequest(BaseModel):
    """Either an explicit list or free text to scan (pasted .env, CSV, ...)."""
    keys: Optional[List[str]] = None
    text: Optional[str] = None
    gemini_pattern: bool = False
