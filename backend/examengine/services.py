"""Business logic services used by HTTP controllers and the runtime.

`ExamSessionService` owns the session state machine
(CREATING -> ACTIVE -> SUBMITTING -> CLOSED). It builds candidate
question sets, applies the resumption rule against the stored session,
mutates answers and progress with immediate persistence, and submits and
scores sessions. The live state is an explicit `ExamContext` passed in by
the caller; the service itself is stateless apart from its collaborators.

Persistence failures never abort an exam flow: they are logged and the
in-memory session carries on.
"""

import json
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import models, repositories, scoring, selection, timer
from .config import Settings, settings as default_settings
from .errors import (
    CONCURRENT_USER_MISMATCH,
    STALE_SESSION_MISMATCH,
    STORAGE_QUOTA_EXCEEDED,
    SessionNotActive,
    StorageQuotaExceeded,
)
from .repositories import ExamStore
from .schemas import (
    DEFAULT_SELECTION,
    Category,
    ExamResult,
    ExamSession,
    Question,
    SessionMode,
    Statistics,
    coerce_category,
    coerce_weight,
)
from .utils.parsers import parse_file_to_questions
from .utils.sync_jobs import SyncDispatcher
from .utils.sync_outbox import record_sync_event

logger = logging.getLogger("examengine.engine")


class EngineState(str, Enum):
    CREATING = "CREATING"
    ACTIVE = "ACTIVE"
    SUBMITTING = "SUBMITTING"
    CLOSED = "CLOSED"


@dataclass
class ExamContext:
    """Live state of one session, owned by whoever started it."""
    session: ExamSession
    state: EngineState = EngineState.CREATING
    policy: timer.TimerPolicy = timer.TimerPolicy.FIXED
    resumed: bool = False
    warnings: List[dict] = field(default_factory=list)
    result: Optional[ExamResult] = None
    sync_job_id: Optional[str] = None

    @property
    def key(self) -> FrozenSet[int]:
        return self.session.question_ids()


@dataclass(frozen=True)
class SubmitOutcome:
    status: str  # "confirmation_required" | "submitted" | "already_closed"
    result: Optional[ExamResult] = None
    unanswered: int = 0


def _log(level: int, event: str, payload: dict) -> None:
    logger.log(level, "%s %s", event, json.dumps(payload, ensure_ascii=True))


class ExamSessionService:
    """Start, resume, mutate, submit and leave exam sessions."""
    def __init__(
        self,
        session: Session,
        config: Optional[Settings] = None,
        store: Optional[ExamStore] = None,
        dispatcher: Optional[SyncDispatcher] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.session = session
        self.settings = config or default_settings
        self.store = store or ExamStore(session)
        self.dispatcher = dispatcher
        self.rng = rng or random
        self.clock = clock or time.time

    # -- candidate sets -------------------------------------------------

    def build_candidates(
        self,
        mode: SessionMode,
        category: Optional[Category] = None,
        total_count: Optional[int] = None,
        question_ids: Optional[Sequence[int]] = None,
    ) -> Tuple[List[Question], List[dict]]:
        """Compute the question set for a new session of `mode`.

        Returns `(questions, warnings)`; a pool smaller than requested yields
        fewer questions plus an insufficient-pool warning.
        """
        config = self._selection_config()
        if question_ids is not None:
            by_id = {q.id: q for q in self.store.fetch_question_pool()}
            wanted = list(dict.fromkeys(question_ids))
            questions = [by_id[qid] for qid in wanted if qid in by_id]
            return questions, _warnings(len(wanted), len(questions))

        if mode in (SessionMode.TIMED, SessionMode.UNTIMED):
            requested = total_count or self.settings.EXAM_TOTAL_QUESTIONS
            pool = self.store.fetch_question_pool()
            questions = selection.select_balanced(pool, requested, config, self.rng)
            return questions, _warnings(requested, len(questions))

        if mode == SessionMode.CATEGORY:
            if category is None:
                raise ValueError("category is required for CATEGORY sessions")
            requested = total_count or self.settings.CATEGORY_SESSION_SIZE
            pool = self.store.fetch_question_pool(category)
            questions = selection.select_category_only(pool, category, requested, config, self.rng)
            return questions, _warnings(requested, len(questions))

        pool = self.store.fetch_question_pool()
        if mode == SessionMode.WRONG_REVIEW:
            limit = total_count or self.settings.WRONG_REVIEW_SIZE
            questions = selection.select_wrong_review(
                pool, self.store.load_retention(), limit, self.settings.RETENTION_CLEAR_STREAK, self.rng
            )
            return questions, []
        if mode == SessionMode.PROGRESS_REVIEW:
            questions = selection.select_progress_review(
                pool, self.store.load_global_progress(), self.settings.REVIEW_PER_CATEGORY, self.rng
            )
            return questions, []
        raise ValueError(f"unsupported mode: {mode}")

    # -- lifecycle ------------------------------------------------------

    def start(
        self,
        mode: SessionMode,
        user_id: Optional[int] = None,
        category: Optional[Category] = None,
        total_count: Optional[int] = None,
        question_ids: Optional[Sequence[int]] = None,
        now: Optional[float] = None,
    ) -> ExamContext:
        """Build a candidate set and open a session on it.

        A stored session on exactly the same question set (same mode, same
        or no owner, never TIMED) is resumed; any other stored session is
        replaced. Mode-selected sets are shown in shuffled order; explicit
        `question_ids` keep the order given.
        """
        questions, warnings = self.build_candidates(mode, category, total_count, question_ids)
        if not questions:
            raise ValueError("no questions available for this session")
        if question_ids is None:
            self.rng.shuffle(questions)
        return self._open(questions, mode, category, user_id, warnings, now)

    def resume_current(self, user_id: Optional[int] = None, now: Optional[float] = None) -> ExamContext:
        """Reopen the stored session on its own question set."""
        stored = self._load_stored()
        if stored is None or stored.mode == SessionMode.TIMED:
            raise ValueError("no resumable session")
        if stored.user_id is not None and stored.user_id != user_id:
            raise ValueError("no resumable session")
        return self._open(list(stored.questions), stored.mode, stored.category, user_id, [], now)

    def _open(
        self,
        questions: List[Question],
        mode: SessionMode,
        category: Optional[Category],
        user_id: Optional[int],
        warnings: List[dict],
        now: Optional[float],
    ) -> ExamContext:
        now = self.clock() if now is None else now
        fresh = ExamSession(questions=tuple(questions), start_time=now, mode=mode, category=category, user_id=user_id)
        ctx = ExamContext(session=fresh, warnings=list(warnings))
        global_progress = self._load_global_progress()

        stored = self._load_stored()
        if stored is not None and _resumable(stored, fresh):
            answers = {qid: opt for qid, opt in stored.answers.items() if qid in ctx.key}
            progress = {qid: lvl for qid, lvl in stored.learning_progress.items() if qid in ctx.key}
            # with answers on record the clock keeps running from the original start
            start_time = stored.start_time if answers else now
            ctx.session = fresh.model_copy(
                update={"answers": answers, "learning_progress": progress, "timer_reset": stored.timer_reset, "start_time": start_time}
            )
            ctx.resumed = True
        elif stored is not None:
            _log(
                logging.INFO,
                STALE_SESSION_MISMATCH,
                {"stored_mode": stored.mode.value, "mode": mode.value, "stored_count": len(stored.questions), "count": len(questions)},
            )

        # global progress always wins over what the session carried
        ctx.session.learning_progress.update({qid: lvl for qid, lvl in global_progress.items() if qid in ctx.key})
        ctx.policy = timer.policy_for_mode(mode, resumed_with_progress=ctx.resumed and ctx.session.answered_count > 0)
        ctx.state = EngineState.ACTIVE
        self._persist(ctx)
        _log(
            logging.INFO,
            "session_started",
            {
                "mode": mode.value,
                "questions": len(questions),
                "resumed": ctx.resumed,
                "answered": ctx.session.answered_count,
                "policy": ctx.policy.value,
                "user_id": user_id,
            },
        )
        return ctx

    # -- mutations ------------------------------------------------------

    def answer(self, ctx: ExamContext, question_id: int, option: int) -> None:
        """Record `option` for `question_id` and persist the session."""
        _require_active(ctx)
        question = ctx.session.question(question_id)
        if question is None:
            raise ValueError(f"question not in session: {question_id}")
        if option < 1 or (question.options and option > len(question.options)):
            raise ValueError(f"option out of range for question {question_id}: {option}")
        ctx.session.answers[question_id] = option
        self._persist(ctx)

    def set_progress(self, ctx: ExamContext, question_id: int, level: int) -> None:
        """Record a learning-progress level in the session and globally."""
        _require_active(ctx)
        if ctx.session.question(question_id) is None:
            raise ValueError(f"question not in session: {question_id}")
        ctx.session.learning_progress[question_id] = level
        self._persist(ctx)
        try:
            self.store.save_global_progress(question_id, level)
        except (StorageQuotaExceeded, SQLAlchemyError) as exc:
            self._rollback()
            _log(logging.WARNING, "progress_save_failed", {"question_id": question_id, "error": str(exc)})

    def check_answer(self, ctx: ExamContext, question_id: int) -> dict:
        """Report whether the recorded answer is right without changing state."""
        question = ctx.session.question(question_id)
        if question is None:
            raise ValueError(f"question not in session: {question_id}")
        selected = ctx.session.answers.get(question_id)
        if selected is None:
            status = "unanswered"
        elif selected == question.correct_option:
            status = "correct"
        else:
            status = "wrong"
        return {
            "question_id": question_id,
            "status": status,
            "selected": selected,
            "correct_option": question.correct_option,
            "explanation": question.explanation,
        }

    def reset_timer(self, ctx: ExamContext, now: Optional[float] = None) -> timer.TimerState:
        """Restart the full fixed duration from `now`; later ticks stay on it."""
        _require_active(ctx)
        now = self.clock() if now is None else now
        ctx.session.start_time = now
        ctx.session.timer_reset = True
        if ctx.policy == timer.TimerPolicy.DYNAMIC:
            ctx.policy = timer.TimerPolicy.FIXED
        self._persist(ctx)
        _log(logging.INFO, "timer_reset", {"mode": ctx.session.mode.value})
        return self.timer_state(ctx, now)

    def timer_state(self, ctx: ExamContext, now: Optional[float] = None) -> timer.TimerState:
        now = self.clock() if now is None else now
        return timer.tick(ctx.session, ctx.policy, now, self.settings.EXAM_DURATION_SECONDS, self.settings.SECONDS_PER_UNANSWERED)

    def tick(self, ctx: ExamContext, now: Optional[float] = None) -> timer.TimerState:
        """Evaluate the timer and auto-submit once when it runs out."""
        now = self.clock() if now is None else now
        state = self.timer_state(ctx, now)
        if state.expired and ctx.state == EngineState.ACTIVE:
            _log(logging.INFO, "timer_expired", {"mode": ctx.session.mode.value, "answered": ctx.session.answered_count})
            self.submit(ctx, confirmed=True, now=now)
        return state

    def save(self, ctx: ExamContext) -> None:
        """Explicitly persist the session so it can be resumed later."""
        _require_active(ctx)
        if ctx.session.mode == SessionMode.TIMED:
            raise ValueError("timed exams cannot be saved")
        self._persist(ctx)

    # -- submission -----------------------------------------------------

    def submit(self, ctx: ExamContext, confirmed: bool = False, now: Optional[float] = None) -> SubmitOutcome:
        """Score the session, update retention, record the result, clear the store.

        With unanswered questions left an unconfirmed submit only asks for
        confirmation. Submitting a closed session returns its result again.
        """
        if ctx.state in (EngineState.CLOSED, EngineState.SUBMITTING):
            return SubmitOutcome(status="already_closed", result=ctx.result)
        _require_active(ctx)
        unanswered = ctx.session.unanswered_count
        if unanswered > 0 and not confirmed:
            return SubmitOutcome(status="confirmation_required", unanswered=unanswered)

        now = self.clock() if now is None else now
        ctx.state = EngineState.SUBMITTING
        result = scoring.score(ctx.session, now, self.settings.PASS_THRESHOLD_PERCENT)
        self._apply_retention(ctx.session, now)
        self._record_result(result)
        self._clear_store()
        ctx.result = result
        ctx.state = EngineState.CLOSED
        self._dispatch_sync(ctx)
        _log(
            logging.INFO,
            "session_submitted",
            {
                "mode": result.mode.value,
                "total": result.total,
                "correct": result.correct,
                "wrong": result.wrong,
                "unanswered": result.unanswered,
                "percentage": result.percentage,
                "passed": result.passed,
            },
        )
        return SubmitOutcome(status="submitted", result=result)

    def exit(self, ctx: ExamContext, choice: Optional[str] = None, now: Optional[float] = None) -> dict:
        """Leave the session.

        TIMED grades when anything was answered and discards otherwise;
        UNTIMED always saves; other modes honour `choice` ("save" by
        default, "grade" or "discard").
        """
        if ctx.state == EngineState.CLOSED:
            return {"action": "already_closed", "result": ctx.result}
        _require_active(ctx)
        mode = ctx.session.mode
        if mode == SessionMode.TIMED:
            action = "grade" if ctx.session.answered_count > 0 else "discard"
        elif mode == SessionMode.UNTIMED:
            action = "save"
        else:
            action = choice or "save"

        if action == "grade":
            outcome = self.submit(ctx, confirmed=True, now=now)
            return {"action": "graded", "result": outcome.result}
        if action == "save":
            self._persist(ctx)
            ctx.state = EngineState.CLOSED
            return {"action": "saved", "result": None}
        if action == "discard":
            self._clear_store()
            ctx.state = EngineState.CLOSED
            return {"action": "discarded", "result": None}
        raise ValueError(f"unknown exit choice: {choice}")

    def check_login(self, user_id: Optional[int]) -> Optional[dict]:
        """Reconcile the stored session with the user who just logged in.

        Another user's session is discarded, an ownerless one is adopted.
        Returns a summary of a resumable session or `None`.
        """
        stored = self._load_stored()
        if stored is None:
            return None
        if stored.user_id is not None and stored.user_id != user_id:
            _log(logging.INFO, CONCURRENT_USER_MISMATCH, {"stored_user_id": stored.user_id, "user_id": user_id})
            self._clear_store()
            return None
        if stored.user_id is None and user_id is not None:
            stored = stored.model_copy(update={"user_id": user_id})
            self._save_stored(stored)
        if stored.mode == SessionMode.TIMED:
            return None
        return {
            "mode": stored.mode.value,
            "category": stored.category.value if stored.category else None,
            "question_count": len(stored.questions),
            "answered": stored.answered_count,
            "user_id": stored.user_id,
        }

    # -- persistence helpers -------------------------------------------

    def _selection_config(self):
        try:
            return self.store.load_selection_config()
        except SQLAlchemyError as exc:
            self._rollback()
            _log(logging.WARNING, "selection_config_load_failed", {"error": str(exc)})
            return DEFAULT_SELECTION

    def _load_stored(self) -> Optional[ExamSession]:
        try:
            return self.store.load_session()
        except SQLAlchemyError as exc:
            self._rollback()
            _log(logging.WARNING, "session_load_failed", {"error": str(exc)})
            return None

    def _load_global_progress(self) -> Dict[int, int]:
        try:
            return self.store.load_global_progress()
        except SQLAlchemyError as exc:
            self._rollback()
            _log(logging.WARNING, "progress_load_failed", {"error": str(exc)})
            return {}

    def _persist(self, ctx: ExamContext) -> None:
        self._save_stored(ctx.session)

    def _save_stored(self, exam_session: ExamSession) -> None:
        try:
            self.store.save_session(exam_session)
        except (StorageQuotaExceeded, SQLAlchemyError) as exc:
            self._rollback()
            _log(logging.WARNING, "session_save_failed", {"mode": exam_session.mode.value, "error": str(exc)})

    def _clear_store(self) -> None:
        try:
            self.store.clear_session()
        except (StorageQuotaExceeded, SQLAlchemyError) as exc:
            self._rollback()
            _log(logging.WARNING, "session_clear_failed", {"error": str(exc)})

    def _apply_retention(self, exam_session: ExamSession, now: float) -> None:
        try:
            records = {r.question_id: r for r in self.store.load_retention()}
            upserts, removals = scoring.apply_retention(exam_session, records, now, self.settings.RETENTION_CLEAR_STREAK)
            for record in upserts:
                self.store.upsert_retention(record)
            for question_id in removals:
                self.store.remove_retention(question_id)
        except (StorageQuotaExceeded, SQLAlchemyError) as exc:
            self._rollback()
            _log(logging.WARNING, "retention_save_failed", {"error": str(exc)})

    def _record_result(self, result: ExamResult) -> bool:
        """Append `result`; on a full store prune the oldest half and retry once."""
        try:
            self.store.append_result(result)
            return True
        except StorageQuotaExceeded as exc:
            _log(logging.WARNING, STORAGE_QUOTA_EXCEEDED, {"error": str(exc)})
        except SQLAlchemyError as exc:
            self._rollback()
            _log(logging.WARNING, "result_dropped", {"mode": result.mode.value, "error": str(exc)})
            return False
        try:
            existing = len(self.store.list_results())
            removed = self.store.prune_results(existing // 2)
            _log(logging.INFO, "result_history_pruned", {"removed": removed, "kept": existing - removed})
            self.store.append_result(result)
            return True
        except (StorageQuotaExceeded, SQLAlchemyError) as exc:
            self._rollback()
            _log(logging.WARNING, "result_dropped", {"mode": result.mode.value, "error": str(exc)})
            return False

    def _dispatch_sync(self, ctx: ExamContext) -> None:
        if self.dispatcher is None or ctx.session.user_id is None or ctx.result is None:
            return
        payload = {
            "kind": "exam_result",
            "user_id": ctx.session.user_id,
            "result": ctx.result.model_dump(mode="json"),
        }
        job = self.dispatcher.submit(kind="exam_result", payload=payload, worker=record_sync_event)
        ctx.sync_job_id = job["job_id"]

    def _rollback(self) -> None:
        try:
            self.session.rollback()
        except SQLAlchemyError:
            logger.exception("rollback_failed")


def _resumable(stored: ExamSession, fresh: ExamSession) -> bool:
    if SessionMode.TIMED in (stored.mode, fresh.mode) or stored.mode != fresh.mode:
        return False
    if stored.user_id is not None and stored.user_id != fresh.user_id:
        return False
    return stored.question_ids() == fresh.question_ids()


def _require_active(ctx: ExamContext) -> None:
    if ctx.state != EngineState.ACTIVE:
        raise SessionNotActive(f"session is {ctx.state.value.lower()}")


def _warnings(requested: int, selected: int) -> List[dict]:
    warning = selection.shortfall_warning(requested, selected)
    if warning is None:
        return []
    _log(logging.WARNING, warning["code"], warning)
    return [warning]


class SelectionConfigService:
    """Read and change the stored weight-selection configuration."""
    def __init__(self, session: Session):
        self.store = ExamStore(session)

    def get(self):
        return self.store.load_selection_config()

    def save(self, config):
        self.store.save_selection_config(config)
        return config

    def reset(self):
        self.store.reset_selection_config()
        return DEFAULT_SELECTION


class ResultService:
    """Result history, retention listing and statistics."""
    def __init__(self, session: Session):
        self.store = ExamStore(session)

    def list_results(self) -> List[ExamResult]:
        return self.store.list_results()

    def statistics(self) -> Statistics:
        return scoring.summarize(self.store.list_results())

    def retention(self):
        return self.store.load_retention()


class ImportService:
    """Import question banks from files and persist them to the DB."""
    def __init__(self, session: Session):
        self.session = session
        self.q_repo = repositories.QuestionRepository(session)

    def import_file(self, file_bytes: bytes, filename: str, deduplicate: bool = True, dry_run: bool = False):
        """Parse `filename` contents and create `Question` and `Answer` rows.

        Returns a dictionary with the number of created questions and any
        validation `errors` encountered per item. When `deduplicate` is True,
        questions with identical category/text are skipped.
        """
        parsed = parse_file_to_questions(file_bytes, filename)
        created = 0
        errors = []
        skipped = 0
        for idx, p in enumerate(parsed):
            try:
                self._validate_parsed_question(p)
            except ValueError as e:
                errors.append({'index': idx, 'error': str(e)})
                continue
            category = coerce_category(p.get('category')).value
            question_text = p['question_text'].strip()
            if deduplicate and self.q_repo.exists_by_category_and_text(category, question_text):
                skipped += 1
                continue
            q = models.Question(
                category=category,
                question_text=question_text,
                explanation=p.get('explanation'),
                weight=coerce_weight(p.get('weight')),
                must_include=bool(p.get('must_include')),
                must_exclude=bool(p.get('must_exclude')),
            )
            possible_answers = p['possible_answers']
            # If no answers are explicitly marked correct, mark the first.
            has_marked_correct = any(bool(a.get('is_correct')) for a in possible_answers)
            answers = [
                models.Answer(
                    position=i,
                    answer_text=a['answer_text'],
                    is_correct=bool(a.get('is_correct')) or (not has_marked_correct and i == 1),
                )
                for i, a in enumerate(possible_answers, start=1)
            ]
            if not dry_run:
                self.q_repo.create(q, answers)
            created += 1
        logger.info(
            "questions_imported %s",
            json.dumps({"filename": filename, "created": created, "skipped": skipped, "errors": len(errors), "dry_run": dry_run}, ensure_ascii=True),
        )
        return {'created': created, 'skipped': skipped, 'errors': errors}

    def _validate_parsed_question(self, p: dict):
        """Validate a parsed question dictionary and raise ValueError on error."""
        if not isinstance(p, dict):
            raise ValueError('question item must be an object')
        qt = p.get('question_text')
        if not qt or not isinstance(qt, str) or not qt.strip():
            raise ValueError('missing or empty question_text')
        pas = p.get('possible_answers')
        if not pas or not isinstance(pas, list):
            raise ValueError('possible_answers missing or empty')
        for a in pas:
            if not isinstance(a, dict):
                raise ValueError('each possible_answer must be an object')
            if not a.get('answer_text'):
                raise ValueError('answer missing answer_text')
