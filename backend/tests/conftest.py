from pathlib import Path
import os
import tempfile
import pytest

# Point the app at a throwaway database and outbox before anything imports it.
_TMP = Path(tempfile.mkdtemp(prefix="examengine-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP / 'exam.db'}")
os.environ.setdefault("SYNC_OUTBOX_DIR", str(_TMP / "outbox"))

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from examengine import models
from examengine.database import create_db_and_tables
from examengine.repositories import QuestionRepository


@pytest.fixture
def engine():
    """A private in-memory database shared across threads."""
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def add_question(db):
    """Insert a question with four options; option `correct` is the right one."""
    counter = {"n": 0}

    def _add(category="THEORY", weight=5, must_include=False, must_exclude=False, correct=1, explanation=None):
        counter["n"] += 1
        q = models.Question(
            category=category,
            question_text=f"{category} question {counter['n']}",
            explanation=explanation,
            weight=weight,
            must_include=must_include,
            must_exclude=must_exclude,
        )
        answers = [
            models.Answer(position=i, answer_text=f"option {i}", is_correct=i == correct)
            for i in range(1, 5)
        ]
        return QuestionRepository(db).create(q, answers).id

    return _add


@pytest.fixture
def seed_bank(add_question):
    """Twenty-five questions in each balanced category, ids returned per category."""
    def _seed(per_category=25):
        return {
            cat: [add_question(category=cat) for _ in range(per_category)]
            for cat in ("THEORY", "MACHINE", "FACILITY")
        }

    return _seed
