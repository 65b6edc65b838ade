"""FastAPI application entrypoint and HTTP controllers.

This module exposes the exam session engine over HTTP. Controllers are
intentionally thin: they accept requests, delegate to services and the
runtime, and return JSON responses.

Endpoints implemented:
- GET /health
- GET /questions
- GET|PUT|DELETE /config/selection
- POST /sessions/start, /sessions/resume, /sessions/login-check
- GET /sessions/current
- POST /sessions/current/answers, /sessions/current/progress
- GET /sessions/current/check/{question_id}
- GET /sessions/current/timer, POST /sessions/current/timer/reset
- POST /sessions/current/save, /sessions/current/submit, /sessions/current/exit
- GET /retention, /results, /statistics
- GET /sync/jobs/{job_id}, /sync/stats
"""

from fastapi import FastAPI, Body, Depends, HTTPException, Request
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sqlmodel import Session
from typing import Optional
import os
import json
import logging
import time
import uuid
from .database import create_db_and_tables, get_session
from . import repositories, services
from .auth import get_current_user_id
from .errors import SessionNotActive
from .runtime import ExamRuntime
from .schemas import AnswerIn, Category, ExitIn, ProgressIn, Question, StartSessionIn, SubmitIn, selection_config_adapter
from .services import ExamContext, ExamSessionService
from .timer import TimerState
from .utils.sync_jobs import SyncDispatcher
from .utils.sync_outbox import get_sync_stats
from .config import settings

app = FastAPI(title="Exam Session Engine API")
logger = logging.getLogger("examengine.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
_sync_jobs = SyncDispatcher(max_jobs=settings.SYNC_MAX_JOBS, ttl_seconds=settings.SYNC_JOB_TTL_SECONDS)
runtime = ExamRuntime(dispatcher=_sync_jobs)

# Wide-open CORS keeps local frontends working without extra config in dev.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if request.url.path.startswith("/sessions"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
    return response


def _question_view(q: Question) -> dict:
    # the correct option stays server side until the question is checked or graded
    return {
        'id': q.id,
        'category': q.category.value,
        'weight': q.weight,
        'text': q.text,
        'options': q.options,
    }


def _timer_view(state: TimerState) -> dict:
    return {'policy': state.policy.value, 'remaining_seconds': state.remaining, 'expired': state.expired}


def _dump(model):
    return model.model_dump(mode='json') if model is not None else None


def _session_view(ctx: ExamContext, svc: ExamSessionService) -> dict:
    s = ctx.session
    return {
        'state': ctx.state.value,
        'mode': s.mode.value,
        'category': s.category.value if s.category else None,
        'user_id': s.user_id,
        'resumed': ctx.resumed,
        'warnings': ctx.warnings,
        'questions': [_question_view(q) for q in s.questions],
        'answers': {str(k): v for k, v in s.answers.items()},
        'learning_progress': {str(k): v for k, v in s.learning_progress.items()},
        'answered': s.answered_count,
        'unanswered': s.unanswered_count,
        'timer': _timer_view(svc.timer_state(ctx)),
        'result': _dump(ctx.result),
        'sync_job_id': ctx.sync_job_id,
    }


def _current_context(user_id: Optional[int]) -> ExamContext:
    ctx = runtime.current
    if ctx is None:
        raise HTTPException(status_code=404, detail='no current session')
    if ctx.session.user_id is not None and ctx.session.user_id != user_id:
        raise HTTPException(status_code=403, detail='session belongs to another user')
    return ctx


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


@app.get('/questions')
def list_questions(category: Optional[Category] = None, db: Session = Depends(get_session)):
    """List the question bank (optionally one category) without answer keys."""
    pool = repositories.ExamStore(db).fetch_question_pool(category)
    return [_question_view(q) for q in pool]


@app.get('/config/selection')
def get_selection_config(db: Session = Depends(get_session)):
    return _dump(services.SelectionConfigService(db).get())


@app.put('/config/selection')
def put_selection_config(payload: dict = Body(...), db: Session = Depends(get_session)):
    """Replace the weight-selection configuration (FILTER or RATIO)."""
    try:
        config = selection_config_adapter.validate_python(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=json.loads(e.json()))
    return _dump(services.SelectionConfigService(db).save(config))


@app.delete('/config/selection')
def reset_selection_config(db: Session = Depends(get_session)):
    return _dump(services.SelectionConfigService(db).reset())


@app.post('/sessions/start')
def start_session(payload: StartSessionIn, db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    """Start a session of the requested mode, resuming a matching stored one.

    The response lists the questions (without answer keys), any restored
    answers, timer state and non-fatal warnings such as a short pool.
    """
    with runtime.lock:
        svc = runtime.service(db)
        try:
            ctx = svc.start(payload.mode, user_id, category=payload.category, total_count=payload.total_count, question_ids=payload.question_ids)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        runtime.activate(ctx)
        return _session_view(ctx, svc)


@app.post('/sessions/resume')
def resume_session(db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    """Reopen the stored session on its own question set."""
    with runtime.lock:
        svc = runtime.service(db)
        try:
            ctx = svc.resume_current(user_id)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        runtime.activate(ctx)
        return _session_view(ctx, svc)


@app.post('/sessions/login-check')
def login_check(db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    """Discard another user's stored session and report a resumable one."""
    with runtime.lock:
        ctx = runtime.current
        if ctx is not None and ctx.session.user_id is not None and ctx.session.user_id != user_id:
            runtime.clear()
        summary = runtime.service(db).check_login(user_id)
        return {'resumable': summary}


@app.get('/sessions/current')
def current_session(db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    with runtime.lock:
        ctx = _current_context(user_id)
        return _session_view(ctx, runtime.service(db))


@app.post('/sessions/current/answers')
def record_answer(payload: AnswerIn, db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    with runtime.lock:
        ctx = _current_context(user_id)
        try:
            runtime.service(db).answer(ctx, payload.question_id, payload.option)
        except SessionNotActive as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {'answered': ctx.session.answered_count, 'unanswered': ctx.session.unanswered_count}


@app.post('/sessions/current/progress')
def record_progress(payload: ProgressIn, db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    with runtime.lock:
        ctx = _current_context(user_id)
        try:
            runtime.service(db).set_progress(ctx, payload.question_id, payload.level)
        except SessionNotActive as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {'question_id': payload.question_id, 'level': payload.level}


@app.get('/sessions/current/check/{question_id}')
def check_answer(question_id: int, db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    """Reveal whether the recorded answer for one question is correct."""
    with runtime.lock:
        ctx = _current_context(user_id)
        try:
            return runtime.service(db).check_answer(ctx, question_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))


@app.get('/sessions/current/timer')
def timer_status(db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    with runtime.lock:
        ctx = _current_context(user_id)
        return {**_timer_view(runtime.service(db).timer_state(ctx)), 'state': ctx.state.value}


@app.post('/sessions/current/timer/reset')
def reset_timer(db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    with runtime.lock:
        ctx = _current_context(user_id)
        try:
            state = runtime.service(db).reset_timer(ctx)
        except SessionNotActive as e:
            raise HTTPException(status_code=409, detail=str(e))
        return _timer_view(state)


@app.post('/sessions/current/save')
def save_session(db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    with runtime.lock:
        ctx = _current_context(user_id)
        try:
            runtime.service(db).save(ctx)
        except SessionNotActive as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {'saved': True}


@app.post('/sessions/current/submit')
def submit_session(payload: SubmitIn, db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    """Submit the current session.

    With unanswered questions left the first call returns
    `confirmation_required`; repeat it with `confirmed: true`. Submitting
    an already closed session returns the same result again.
    """
    with runtime.lock:
        ctx = _current_context(user_id)
        try:
            outcome = runtime.service(db).submit(ctx, confirmed=payload.confirmed)
        except SessionNotActive as e:
            raise HTTPException(status_code=409, detail=str(e))
        runtime.settle()
        return {
            'status': outcome.status,
            'unanswered': outcome.unanswered,
            'result': _dump(outcome.result),
            'sync_job_id': ctx.sync_job_id,
        }


@app.post('/sessions/current/exit')
def exit_session(payload: ExitIn, db: Session = Depends(get_session), user_id: Optional[int] = Depends(get_current_user_id)):
    """Leave the current session (save, grade or discard depending on mode)."""
    with runtime.lock:
        ctx = _current_context(user_id)
        try:
            outcome = runtime.service(db).exit(ctx, payload.choice)
        except SessionNotActive as e:
            raise HTTPException(status_code=409, detail=str(e))
        runtime.settle()
        return {'action': outcome['action'], 'result': _dump(outcome['result'])}


@app.get('/retention')
def list_retention(db: Session = Depends(get_session)):
    return [_dump(r) for r in services.ResultService(db).retention()]


@app.get('/results')
def list_results(db: Session = Depends(get_session)):
    return [_dump(r) for r in services.ResultService(db).list_results()]


@app.get('/statistics')
def statistics(db: Session = Depends(get_session)):
    """Aggregate statistics over the stored result history."""
    return _dump(services.ResultService(db).statistics())


@app.get("/sync/jobs/{job_id}")
def get_sync_job(job_id: str):
    """Poll a background sync job."""
    job = _sync_jobs.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    return job


@app.get("/sync/stats")
def sync_stats():
    return get_sync_stats()
