"""Pydantic schemas for domain objects and API payloads.

Domain models (questions, selection config, sessions, retention records,
results) are validated here and shared by the pure selection and scoring
modules, the repositories and the HTTP controllers. Request models keep the
API input shapes stable.
"""

from enum import Enum
from typing import Annotated, Dict, FrozenSet, List, Literal, Optional, Set, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

DEFAULT_WEIGHT = 5
ALL_WEIGHTS = frozenset(range(1, 11))
MAX_PROGRESS_LEVEL = 6


class Category(str, Enum):
    THEORY = "THEORY"
    MACHINE = "MACHINE"
    FACILITY = "FACILITY"
    OTHER = "OTHER"


# Categories that share the exam quota evenly.
BALANCED_CATEGORIES = (Category.THEORY, Category.MACHINE, Category.FACILITY)


class SessionMode(str, Enum):
    TIMED = "TIMED"
    UNTIMED = "UNTIMED"
    CATEGORY = "CATEGORY"
    WRONG_REVIEW = "WRONG_REVIEW"
    PROGRESS_REVIEW = "PROGRESS_REVIEW"


PASS_FAIL_MODES = frozenset({SessionMode.TIMED, SessionMode.UNTIMED, SessionMode.CATEGORY})


def coerce_weight(value) -> int:
    # unknown or out-of-range weights count as mid priority
    try:
        weight = int(value)
    except (TypeError, ValueError):
        return DEFAULT_WEIGHT
    return weight if 1 <= weight <= 10 else DEFAULT_WEIGHT


def coerce_category(value) -> Category:
    if isinstance(value, Category):
        return value
    name = str(value or "").strip().upper()
    return Category(name) if name in Category.__members__ else Category.OTHER


class Question(BaseModel):
    """A multiple-choice question as seen by the engine.

    Only `weight`, `must_include` and `must_exclude` influence selection.
    `correct_option` is 1-based; the content fields are carried through
    untouched.
    """
    id: int
    category: Category = Category.OTHER
    weight: int = DEFAULT_WEIGHT
    must_include: bool = False
    must_exclude: bool = False
    text: str = ""
    options: List[str] = Field(default_factory=list)
    correct_option: int = 1
    explanation: Optional[str] = None

    @field_validator("weight", mode="before")
    @classmethod
    def _coerce_weight(cls, value):
        return coerce_weight(value)

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, value):
        return coerce_category(value)


class FilterSelection(BaseModel):
    """Sample only questions whose weight is in `selected_weights`."""
    mode: Literal["FILTER"] = "FILTER"
    weight_based_enabled: bool = False
    selected_weights: Set[int] = Field(default_factory=lambda: set(ALL_WEIGHTS))

    @field_validator("selected_weights")
    @classmethod
    def _check_weights(cls, value: Set[int]) -> Set[int]:
        bad = sorted(w for w in value if w not in ALL_WEIGHTS)
        if bad:
            raise ValueError(f"weights must be between 1 and 10: {bad}")
        return value


class RatioSelection(BaseModel):
    """Allocate the requested count across weight buckets by percentage.

    Ratios need not sum to 100; rounding gaps are filled from the rest of
    the pool.
    """
    mode: Literal["RATIO"] = "RATIO"
    weight_based_enabled: bool = True
    weight_ratios: Dict[int, float] = Field(default_factory=dict)

    @field_validator("weight_ratios")
    @classmethod
    def _check_ratios(cls, value: Dict[int, float]) -> Dict[int, float]:
        for weight, ratio in value.items():
            if weight not in ALL_WEIGHTS:
                raise ValueError(f"weight must be between 1 and 10: {weight}")
            if not 0 <= ratio <= 100:
                raise ValueError(f"ratio for weight {weight} must be between 0 and 100")
        return value


SelectionConfig = Annotated[Union[FilterSelection, RatioSelection], Field(discriminator="mode")]
selection_config_adapter = TypeAdapter(SelectionConfig)
DEFAULT_SELECTION = FilterSelection()


class ExamSession(BaseModel):
    """Persisted state of one exam or study session.

    The question tuple is fixed at creation; only `answers`,
    `learning_progress`, `start_time` and `timer_reset` change afterwards.
    """
    questions: Tuple[Question, ...]
    answers: Dict[int, int] = Field(default_factory=dict)
    learning_progress: Dict[int, int] = Field(default_factory=dict)
    start_time: float
    mode: SessionMode
    category: Optional[Category] = None
    user_id: Optional[int] = None
    timer_reset: bool = False

    def question_ids(self) -> FrozenSet[int]:
        return frozenset(q.id for q in self.questions)

    def question(self, question_id: int) -> Optional[Question]:
        return next((q for q in self.questions if q.id == question_id), None)

    @property
    def answered_count(self) -> int:
        ids = self.question_ids()
        return sum(1 for qid in self.answers if qid in ids)

    @property
    def unanswered_count(self) -> int:
        return len(self.questions) - self.answered_count


class RetentionRecord(BaseModel):
    """Miss/streak tracker for a wrongly answered question."""
    question_id: int
    last_answer: Optional[int] = None
    wrong_count: int = 1
    correct_streak: int = 0
    updated_at: float = 0.0


class CategoryScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    correct: int = 0
    wrong: int = 0
    unanswered: int = 0


class ExamResult(BaseModel):
    """Immutable snapshot of a submitted session."""
    model_config = ConfigDict(frozen=True)

    total: int
    correct: int
    wrong: int
    unanswered: int
    percentage: float
    passed: Optional[bool] = None
    category_breakdown: Dict[str, CategoryScore] = Field(default_factory=dict)
    wrong_question_ids: Tuple[int, ...] = ()
    timestamp: float
    mode: SessionMode
    category: Optional[Category] = None


class CategoryTally(BaseModel):
    correct: int = 0
    total: int = 0


class Statistics(BaseModel):
    """Aggregate over the stored result history."""
    total_exams: int = 0
    average_score: int = 0
    category_stats: Dict[str, CategoryTally] = Field(default_factory=dict)
    recent_results: List[ExamResult] = Field(default_factory=list)


class StartSessionIn(BaseModel):
    """Payload for starting (or resuming) a session."""
    mode: SessionMode
    category: Optional[Category] = None
    total_count: Optional[int] = Field(default=None, ge=1)
    question_ids: Optional[List[int]] = None


class AnswerIn(BaseModel):
    """A single answer selection event."""
    question_id: int
    option: int = Field(ge=1)


class ProgressIn(BaseModel):
    """A learning-progress level for one question (1 = weakest, 6 = fully understood)."""
    question_id: int
    level: int = Field(ge=1, le=MAX_PROGRESS_LEVEL)


class SubmitIn(BaseModel):
    confirmed: bool = False


class ExitIn(BaseModel):
    choice: Optional[Literal["save", "grade", "discard"]] = None
