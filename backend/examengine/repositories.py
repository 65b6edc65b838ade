"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (questions,
the current session, learning progress, retention records, results,
settings). Repositories translate between SQLModel rows and the pydantic
domain schemas and perform commits where appropriate. `ExamStore` bundles
them behind the narrow interface the session engine consumes.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select
from . import models, schemas
from .config import settings
from .errors import StorageQuotaExceeded

logger = logging.getLogger("examengine.store")

SELECTION_CONFIG_KEY = "selection_config"


def _commit(session: Session) -> None:
    """Commit, translating a full database into `StorageQuotaExceeded`."""
    try:
        session.commit()
    except OperationalError as exc:
        session.rollback()
        if "full" in str(exc).lower():
            raise StorageQuotaExceeded(str(exc)) from exc
        raise


class QuestionRepository:
    """CRUD operations for `Question` and related `Answer` records."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, question: models.Question, answers: List[models.Answer]) -> models.Question:
        """Create a question and attach provided answers.

        The function commits the question first to obtain an id, then
        assigns that id to answers before committing them.
        """
        self.session.add(question)
        self.session.commit()
        self.session.refresh(question)
        for a in answers:
            a.question_id = question.id
            self.session.add(a)
        self.session.commit()
        return question

    def exists_by_category_and_text(self, category: str, question_text: str) -> bool:
        """Return True if a question with the same category/text already exists."""
        stmt = select(models.Question.id).where(
            models.Question.category == category,
            models.Question.question_text == question_text
        )
        return self.session.exec(stmt).first() is not None

    def list_pool(self, category: Optional[schemas.Category] = None) -> List[schemas.Question]:
        """Return the question pool, optionally restricted to one category."""
        stmt = select(models.Question)
        if category is not None:
            stmt = stmt.where(models.Question.category == category.value)
        rows = self.session.exec(stmt.order_by(models.Question.id)).all()
        if not rows:
            return []
        answer_stmt = select(models.Answer).where(models.Answer.question_id.in_([r.id for r in rows]))
        by_question: Dict[int, List[models.Answer]] = {}
        for a in self.session.exec(answer_stmt).all():
            by_question.setdefault(a.question_id, []).append(a)
        return [_to_domain(r, by_question.get(r.id, [])) for r in rows]


def _to_domain(row: models.Question, answers: List[models.Answer]) -> schemas.Question:
    ordered = sorted(answers, key=lambda a: a.position)
    correct = next((a.position for a in ordered if a.is_correct), None)
    # fallback: if no answer is marked correct, the first option is treated as correct
    if correct is None:
        correct = ordered[0].position if ordered else 1
    return schemas.Question(
        id=row.id,
        category=row.category,
        weight=row.weight,
        must_include=row.must_include,
        must_exclude=row.must_exclude,
        text=row.question_text,
        options=[a.answer_text for a in ordered],
        correct_option=correct,
        explanation=row.explanation,
    )


class SessionRepository:
    """Load/save/clear the single current session."""
    def __init__(self, session: Session):
        self.session = session

    def load(self) -> Optional[schemas.ExamSession]:
        """Return the stored session or `None` if absent or unreadable."""
        row = self.session.get(models.StoredSession, "current")
        if not row:
            return None
        try:
            return schemas.ExamSession.model_validate_json(row.payload)
        except ValidationError:
            logger.warning("stored_session_unreadable %s", json.dumps({"mode": row.mode}, ensure_ascii=True))
            return None

    def save(self, exam_session: schemas.ExamSession) -> None:
        row = self.session.get(models.StoredSession, "current")
        if row is None:
            row = models.StoredSession(slot="current", mode=exam_session.mode.value, payload="")
        row.user_id = exam_session.user_id
        row.mode = exam_session.mode.value
        row.payload = exam_session.model_dump_json()
        row.updated_at = datetime.now(timezone.utc)
        self.session.add(row)
        _commit(self.session)

    def clear(self) -> None:
        row = self.session.get(models.StoredSession, "current")
        if row is not None:
            self.session.delete(row)
            _commit(self.session)


class ProgressRepository:
    """Global learning progress keyed by question id."""
    def __init__(self, session: Session):
        self.session = session

    def load_all(self) -> Dict[int, int]:
        rows = self.session.exec(select(models.LearningProgress)).all()
        return {r.question_id: r.level for r in rows}

    def save(self, question_id: int, level: int) -> None:
        row = self.session.get(models.LearningProgress, question_id)
        if row is None:
            row = models.LearningProgress(question_id=question_id, level=level)
        row.level = level
        row.updated_at = datetime.now(timezone.utc)
        self.session.add(row)
        _commit(self.session)


class RetentionRepository:
    """Upserts and removals of retention records."""
    def __init__(self, session: Session):
        self.session = session

    def list(self) -> List[schemas.RetentionRecord]:
        rows = self.session.exec(select(models.RetentionEntry).order_by(models.RetentionEntry.question_id)).all()
        return [
            schemas.RetentionRecord(
                question_id=r.question_id,
                last_answer=r.last_answer,
                wrong_count=r.wrong_count,
                correct_streak=r.correct_streak,
                updated_at=r.updated_at,
            )
            for r in rows
        ]

    def upsert(self, record: schemas.RetentionRecord) -> None:
        row = self.session.get(models.RetentionEntry, record.question_id)
        if row is None:
            row = models.RetentionEntry(question_id=record.question_id)
        row.last_answer = record.last_answer
        row.wrong_count = record.wrong_count
        row.correct_streak = record.correct_streak
        row.updated_at = record.updated_at
        self.session.add(row)
        _commit(self.session)

    def remove(self, question_id: int) -> None:
        row = self.session.get(models.RetentionEntry, question_id)
        if row is not None:
            self.session.delete(row)
            _commit(self.session)


class ResultRepository:
    """Bounded history of exam results.

    Appends beyond `limit` stored results raise `StorageQuotaExceeded`, the
    same way a full device store rejects a write.
    """
    def __init__(self, session: Session, limit: Optional[int] = None):
        self.session = session
        self.limit = limit if limit is not None else settings.RESULT_HISTORY_LIMIT

    def count(self) -> int:
        return self.session.exec(select(func.count()).select_from(models.ExamResultRecord)).one()

    def append(self, result: schemas.ExamResult) -> None:
        if self.count() >= self.limit:
            raise StorageQuotaExceeded(f"result history is full ({self.limit} entries)")
        self.session.add(models.ExamResultRecord(timestamp=result.timestamp, mode=result.mode.value, payload=result.model_dump_json()))
        _commit(self.session)

    def list(self) -> List[schemas.ExamResult]:
        """Return stored results, oldest first."""
        stmt = select(models.ExamResultRecord).order_by(models.ExamResultRecord.timestamp, models.ExamResultRecord.id)
        return [schemas.ExamResult.model_validate_json(r.payload) for r in self.session.exec(stmt).all()]

    def prune(self, keep_count: int) -> int:
        """Delete all but the newest `keep_count` results; return how many were removed."""
        stmt = select(models.ExamResultRecord).order_by(models.ExamResultRecord.timestamp, models.ExamResultRecord.id)
        rows = self.session.exec(stmt).all()
        doomed = rows[: max(0, len(rows) - keep_count)]
        for r in doomed:
            self.session.delete(r)
        self.session.commit()
        return len(doomed)


class SettingRepository:
    """Key/value JSON settings."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, key: str) -> Optional[str]:
        row = self.session.get(models.Setting, key)
        return row.payload if row else None

    def put(self, key: str, payload: str) -> None:
        row = self.session.get(models.Setting, key)
        if row is None:
            row = models.Setting(key=key, payload=payload)
        row.payload = payload
        row.updated_at = datetime.now(timezone.utc)
        self.session.add(row)
        _commit(self.session)

    def delete(self, key: str) -> None:
        row = self.session.get(models.Setting, key)
        if row is not None:
            self.session.delete(row)
            self.session.commit()


class ExamStore:
    """The persistence collaborator seen by the session engine."""
    def __init__(self, session: Session, result_limit: Optional[int] = None):
        self.session = session
        self.questions = QuestionRepository(session)
        self.sessions = SessionRepository(session)
        self.progress = ProgressRepository(session)
        self.retention = RetentionRepository(session)
        self.results = ResultRepository(session, limit=result_limit)
        self.settings = SettingRepository(session)

    def fetch_question_pool(self, category: Optional[schemas.Category] = None) -> List[schemas.Question]:
        return self.questions.list_pool(category)

    def load_session(self) -> Optional[schemas.ExamSession]:
        return self.sessions.load()

    def save_session(self, exam_session: schemas.ExamSession) -> None:
        self.sessions.save(exam_session)

    def clear_session(self) -> None:
        self.sessions.clear()

    def load_global_progress(self) -> Dict[int, int]:
        return self.progress.load_all()

    def save_global_progress(self, question_id: int, level: int) -> None:
        self.progress.save(question_id, level)

    def load_retention(self) -> List[schemas.RetentionRecord]:
        return self.retention.list()

    def upsert_retention(self, record: schemas.RetentionRecord) -> None:
        self.retention.upsert(record)

    def remove_retention(self, question_id: int) -> None:
        self.retention.remove(question_id)

    def append_result(self, result: schemas.ExamResult) -> None:
        self.results.append(result)

    def list_results(self) -> List[schemas.ExamResult]:
        return self.results.list()

    def prune_results(self, keep_count: int) -> int:
        return self.results.prune(keep_count)

    def load_selection_config(self):
        """Return the saved selection config, or the default when unset or unreadable."""
        raw = self.settings.get(SELECTION_CONFIG_KEY)
        if not raw:
            return schemas.DEFAULT_SELECTION
        try:
            return schemas.selection_config_adapter.validate_json(raw)
        except ValidationError:
            logger.warning("selection_config_unreadable %s", json.dumps({"key": SELECTION_CONFIG_KEY}, ensure_ascii=True))
            return schemas.DEFAULT_SELECTION

    def save_selection_config(self, config) -> None:
        self.settings.put(SELECTION_CONFIG_KEY, schemas.selection_config_adapter.dump_json(config).decode("utf-8"))

    def reset_selection_config(self) -> None:
        self.settings.delete(SELECTION_CONFIG_KEY)
