"""Scoring, retention bookkeeping and result statistics.

Everything here is a pure reduction; callers persist the returned values.
"""

from typing import Dict, Iterable, List, Mapping, Tuple

from .schemas import (
    PASS_FAIL_MODES,
    CategoryScore,
    CategoryTally,
    ExamResult,
    ExamSession,
    RetentionRecord,
    SessionMode,
    Statistics,
)

RECENT_RESULTS = 10


def score(session: ExamSession, now: float, pass_threshold: float = 60.0) -> ExamResult:
    """Score a session into an immutable `ExamResult`.

    A question is correct when its recorded answer equals the correct
    option, wrong when answered otherwise and unanswered when absent.
    `passed` is only set for modes that report pass/fail.
    """
    correct = wrong = 0
    wrong_ids: List[int] = []
    breakdown: Dict[str, Dict[str, int]] = {}
    for q in session.questions:
        tally = breakdown.setdefault(q.category.value, {"total": 0, "correct": 0, "wrong": 0, "unanswered": 0})
        tally["total"] += 1
        answer = session.answers.get(q.id)
        if answer is None:
            tally["unanswered"] += 1
        elif answer == q.correct_option:
            correct += 1
            tally["correct"] += 1
        else:
            wrong += 1
            tally["wrong"] += 1
            wrong_ids.append(q.id)

    total = len(session.questions)
    percentage = round(correct / total * 100, 1) if total else 0.0
    passed = percentage >= pass_threshold if session.mode in PASS_FAIL_MODES else None
    return ExamResult(
        total=total,
        correct=correct,
        wrong=wrong,
        unanswered=total - correct - wrong,
        percentage=percentage,
        passed=passed,
        category_breakdown={k: CategoryScore(**v) for k, v in breakdown.items()},
        wrong_question_ids=tuple(wrong_ids),
        timestamp=now,
        mode=session.mode,
        category=session.category,
    )


def apply_retention(
    session: ExamSession,
    records: Mapping[int, RetentionRecord],
    now: float,
    clear_streak: int = 3,
) -> Tuple[List[RetentionRecord], List[int]]:
    """Compute retention changes for a submitted session.

    Returns `(upserts, removals)`. In WRONG_REVIEW a correct answer clears
    the record at once and a miss restarts it as a fresh miss; elsewhere a
    record needs `clear_streak` consecutive correct answers to be cleared.
    Unanswered questions leave records untouched.
    """
    upserts: List[RetentionRecord] = []
    removals: List[int] = []
    review = session.mode == SessionMode.WRONG_REVIEW
    for q in session.questions:
        answer = session.answers.get(q.id)
        if answer is None:
            continue
        existing = records.get(q.id)
        if answer == q.correct_option:
            if existing is None:
                continue
            streak = existing.correct_streak + 1
            if review or streak >= clear_streak:
                removals.append(q.id)
            else:
                upserts.append(existing.model_copy(update={"correct_streak": streak, "updated_at": now}))
        elif review or existing is None:
            upserts.append(RetentionRecord(question_id=q.id, last_answer=answer, wrong_count=1, correct_streak=0, updated_at=now))
        else:
            upserts.append(
                existing.model_copy(
                    update={"last_answer": answer, "wrong_count": existing.wrong_count + 1, "correct_streak": 0, "updated_at": now}
                )
            )
    return upserts, removals


def summarize(results: Iterable[ExamResult]) -> Statistics:
    """Aggregate a result history (oldest first) into `Statistics`.

    The average is the running average of each exam's rounded score.
    """
    stats = Statistics()
    for result in sorted(results, key=lambda r: r.timestamp):
        stats.total_exams += 1
        exam_score = round(result.correct / result.total * 100) if result.total else 0
        if stats.total_exams == 1:
            stats.average_score = exam_score
        else:
            stats.average_score = round((stats.average_score * (stats.total_exams - 1) + exam_score) / stats.total_exams)
        for name, cat in result.category_breakdown.items():
            tally = stats.category_stats.setdefault(name, CategoryTally())
            tally.total += cat.total
            tally.correct += cat.correct
        stats.recent_results.append(result)
    stats.recent_results = stats.recent_results[-RECENT_RESULTS:]
    return stats
