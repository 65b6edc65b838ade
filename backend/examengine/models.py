"""SQLModel data models.

This module defines the store's tables using SQLModel. The question bank
mirrors the admin data (questions with their answer options); the other
tables hold engine state as small key/value style rows whose payloads are
pydantic JSON documents.
"""

from typing import Optional
from sqlmodel import SQLModel, Field, Relationship
from datetime import datetime, timezone
from typing import List


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Question(SQLModel, table=True):
    """A multiple-choice question with its selection metadata.

    Fields:
    - `weight`: 1 (asked most often) to 10 (asked least often)
    - `must_include` / `must_exclude`: overrides that bypass sampling
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    category: str = Field(index=True)
    question_text: str
    explanation: Optional[str] = None
    weight: int = 5
    must_include: bool = False
    must_exclude: bool = False
    answers: List['Answer'] = Relationship(back_populates='question')


class Answer(SQLModel, table=True):
    """Answer option for a `Question`.

    `position` is the 1-based option number shown to the user and
    `is_correct` marks the correct option.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    question_id: int = Field(foreign_key='question.id', index=True)
    position: int
    answer_text: str
    is_correct: bool = False
    question: Optional[Question] = Relationship(back_populates='answers')


class StoredSession(SQLModel, table=True):
    """The current exam session of this store, serialised as JSON."""
    slot: str = Field(default="current", primary_key=True)
    user_id: Optional[int] = None
    mode: str
    payload: str
    updated_at: datetime = Field(default_factory=_utcnow)


class LearningProgress(SQLModel, table=True):
    """Global learning progress keyed by question only (survives across sessions)."""
    question_id: int = Field(primary_key=True)
    level: int
    updated_at: datetime = Field(default_factory=_utcnow)


class RetentionEntry(SQLModel, table=True):
    """Retention record for a wrongly answered question."""
    question_id: int = Field(primary_key=True)
    last_answer: Optional[int] = None
    wrong_count: int = 1
    correct_streak: int = 0
    updated_at: float = 0.0


class ExamResultRecord(SQLModel, table=True):
    """A stored exam result; `payload` is the serialised `ExamResult`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: float = Field(index=True)
    mode: str
    payload: str


class Setting(SQLModel, table=True):
    """Small JSON settings documents such as the selection configuration."""
    key: str = Field(primary_key=True)
    payload: str
    updated_at: datetime = Field(default_factory=_utcnow)
