from examengine import timer
from examengine.schemas import ExamSession, Question, SessionMode
from examengine.timer import TimerPolicy

DURATION = 3600
PER_QUESTION = 60


def _session(mode=SessionMode.TIMED, n=10, answered=0, start=1000.0, reset=False):
    questions = tuple(Question(id=i) for i in range(1, n + 1))
    answers = {i: 1 for i in range(1, answered + 1)}
    return ExamSession(questions=questions, answers=answers, start_time=start, mode=mode, timer_reset=reset)


def _remaining(session, policy, now):
    return timer.remaining_seconds(session, policy, now, DURATION, PER_QUESTION)


def test_policy_per_mode():
    assert timer.policy_for_mode(SessionMode.UNTIMED) == TimerPolicy.NONE
    assert timer.policy_for_mode(SessionMode.TIMED) == TimerPolicy.FIXED
    assert timer.policy_for_mode(SessionMode.TIMED, resumed_with_progress=True) == TimerPolicy.FIXED
    assert timer.policy_for_mode(SessionMode.CATEGORY) == TimerPolicy.FIXED
    assert timer.policy_for_mode(SessionMode.CATEGORY, resumed_with_progress=True) == TimerPolicy.DYNAMIC
    assert timer.policy_for_mode(SessionMode.UNTIMED, resumed_with_progress=True) == TimerPolicy.NONE


def test_fixed_countdown_is_monotonic_and_clamped():
    session = _session()
    previous = None
    for now in range(1000, 1000 + DURATION + 120, 7):
        remaining = _remaining(session, TimerPolicy.FIXED, float(now))
        assert remaining >= 0
        if previous is not None:
            assert remaining <= previous
        previous = remaining
    assert previous == 0


def test_fixed_countdown_floors_elapsed_time():
    session = _session()
    assert _remaining(session, TimerPolicy.FIXED, 1000.0) == DURATION
    assert _remaining(session, TimerPolicy.FIXED, 1001.9) == DURATION - 1


def test_tick_expires_at_duration():
    session = _session()
    before = timer.tick(session, TimerPolicy.FIXED, 1000.0 + DURATION - 1, DURATION, PER_QUESTION)
    after = timer.tick(session, TimerPolicy.FIXED, 1000.0 + DURATION + 1, DURATION, PER_QUESTION)
    assert (before.remaining, before.expired) == (1, False)
    assert (after.remaining, after.expired) == (0, True)


def test_dynamic_grants_full_duration_until_something_is_answered():
    session = _session(mode=SessionMode.CATEGORY, n=20, answered=0)
    assert _remaining(session, TimerPolicy.DYNAMIC, 1030.0) == DURATION - 30


def test_dynamic_allows_one_minute_per_unanswered_question():
    session = _session(mode=SessionMode.CATEGORY, n=20, answered=5)
    assert _remaining(session, TimerPolicy.DYNAMIC, 1030.0) == 15 * 60 - 30
    session.answers[6] = 2
    assert _remaining(session, TimerPolicy.DYNAMIC, 1031.0) == 14 * 60 - 31


def test_reset_flag_switches_to_fixed_formula():
    session = _session(mode=SessionMode.CATEGORY, n=20, answered=5, reset=True)
    assert _remaining(session, TimerPolicy.DYNAMIC, 1010.0) == DURATION - 10


def test_untimed_never_expires():
    session = _session(mode=SessionMode.UNTIMED)
    state = timer.tick(session, TimerPolicy.NONE, 1000.0 + 10 * DURATION, DURATION, PER_QUESTION)
    assert state.remaining is None
    assert state.expired is False
