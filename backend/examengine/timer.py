"""Exam timer policies.

The timer is a pure function of the session and the current time; an
external scheduler calls `tick(now)` and acts on the returned state.

- FIXED: `duration - elapsed` (the timed mock exam, fresh study sessions, or
  any session after a manual reset).
- DYNAMIC: a session resumed with partial progress; the full duration while
  nothing is answered, afterwards one allowance per unanswered question minus
  the time elapsed since the session originally started.
- NONE: free study, never expires.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .schemas import ExamSession, SessionMode


class TimerPolicy(str, Enum):
    FIXED = "fixed"
    DYNAMIC = "dynamic"
    NONE = "none"


@dataclass(frozen=True)
class TimerState:
    remaining: Optional[int]
    expired: bool
    policy: TimerPolicy


def policy_for_mode(mode: SessionMode, resumed_with_progress: bool = False) -> TimerPolicy:
    """Pick the timer policy for a session that is being (re)started.

    Only a non-TIMED session resumed with answers already recorded runs on
    the per-unanswered-question budget.
    """
    if mode == SessionMode.UNTIMED:
        return TimerPolicy.NONE
    if mode == SessionMode.TIMED or not resumed_with_progress:
        return TimerPolicy.FIXED
    return TimerPolicy.DYNAMIC


def elapsed_seconds(session: ExamSession, now: float) -> int:
    return max(0, int(math.floor(now - session.start_time)))


def remaining_seconds(session: ExamSession, policy: TimerPolicy, now: float, duration: int, per_question: int) -> Optional[int]:
    """Seconds left under `policy`, clamped at zero; `None` when untimed.

    Reads the answer map of `session` directly, so a tick always sees the
    latest answers.
    """
    if policy == TimerPolicy.NONE:
        return None
    elapsed = elapsed_seconds(session, now)
    if policy == TimerPolicy.FIXED or session.timer_reset or session.answered_count == 0:
        budget = duration
    else:
        budget = session.unanswered_count * per_question
    return max(0, budget - elapsed)


def tick(session: ExamSession, policy: TimerPolicy, now: float, duration: int, per_question: int) -> TimerState:
    remaining = remaining_seconds(session, policy, now, duration, per_question)
    return TimerState(remaining=remaining, expired=remaining == 0, policy=policy)
