import threading
import time

from examengine.config import Settings
from examengine.runtime import ExamRuntime
from examengine.schemas import Category, SessionMode
from examengine.services import EngineState
from examengine.utils.ticker import Ticker


def _until(predicate, timeout=5):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _fast_settings(duration=3600):
    cfg = Settings()
    cfg.TICK_INTERVAL_SECONDS = 0.02
    cfg.EXAM_DURATION_SECONDS = duration
    return cfg


def test_ticker_calls_back_until_cancelled():
    calls = []
    ticker = Ticker(0.01, lambda: calls.append(1))
    ticker.start()
    assert _until(lambda: len(calls) >= 3)
    ticker.cancel(timeout=1)
    seen = len(calls)
    time.sleep(0.05)
    assert len(calls) == seen
    assert not ticker.running


def test_ticker_survives_failing_callback(caplog):
    hits = threading.Event()
    state = {"n": 0}

    def flaky():
        state["n"] += 1
        if state["n"] == 1:
            raise RuntimeError("boom")
        hits.set()

    ticker = Ticker(0.01, flaky)
    ticker.start()
    assert hits.wait(2)
    ticker.cancel(timeout=1)
    assert any("tick_failed" in r.getMessage() for r in caplog.records)


def test_runtime_auto_submits_expired_exam(engine, db, seed_bank):
    seed_bank(25)
    runtime = ExamRuntime(engine=engine, config=_fast_settings(duration=0))
    with runtime.lock:
        ctx = runtime.service(db).start(SessionMode.TIMED)
        runtime.activate(ctx)
    assert runtime.ticking
    assert _until(lambda: ctx.state == EngineState.CLOSED)
    assert ctx.result is not None
    assert ctx.result.unanswered == 60
    assert _until(lambda: not runtime.ticking)


def test_untimed_session_has_no_ticker(engine, db, seed_bank):
    seed_bank(5)
    runtime = ExamRuntime(engine=engine, config=_fast_settings())
    ctx = runtime.service(db).start(SessionMode.UNTIMED)
    runtime.activate(ctx)
    assert not runtime.ticking


def test_replacing_context_stops_old_ticker(engine, db, seed_bank):
    seed_bank(25)
    runtime = ExamRuntime(engine=engine, config=_fast_settings())
    first = runtime.service(db).start(SessionMode.TIMED)
    runtime.activate(first)
    old_ticker = runtime._ticker
    second = runtime.service(db).start(SessionMode.CATEGORY, category=Category.THEORY)
    runtime.activate(second)
    assert not old_ticker.running
    assert runtime.current is second
    runtime.clear()
    assert runtime.current is None
    assert not runtime.ticking


def test_stale_tick_is_ignored(engine, db, seed_bank):
    seed_bank(25)
    runtime = ExamRuntime(engine=engine, config=_fast_settings(duration=0))
    stale = runtime.service(db).start(SessionMode.TIMED)
    current = runtime.service(db).start(SessionMode.CATEGORY, category=Category.MACHINE)
    runtime._ctx = current
    runtime._on_tick(stale, stale.key)
    assert stale.state == EngineState.ACTIVE
    # a context whose question set changed since the ticker was armed
    runtime._ctx = stale
    runtime._on_tick(stale, frozenset({-1}))
    assert stale.state == EngineState.ACTIVE
    runtime._on_tick(stale, stale.key)
    assert stale.state == EngineState.CLOSED


def test_ticker_is_bound_to_the_question_set_it_was_armed_for(engine, db, seed_bank):
    seed_bank(25)
    cfg = _fast_settings(duration=0)
    cfg.TICK_INTERVAL_SECONDS = 60
    runtime = ExamRuntime(engine=engine, config=cfg)
    ctx = runtime.service(db).start(SessionMode.TIMED)
    runtime.activate(ctx)
    armed = runtime._ticker
    ctx.session = ctx.session.model_copy(update={"questions": ctx.session.questions[:-1]})
    armed._callback()
    assert ctx.state == EngineState.ACTIVE
    runtime.clear()
