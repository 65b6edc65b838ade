"""Session question-set assembly.

`select_balanced` builds full exams: mandatory exclusions are dropped,
mandatory inclusions are always kept, and the rest of the quota is split
evenly over the balanced categories using the weight sampler. The review
builders pick questions from retention records or learning progress.
"""

import json
import logging
import random
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from . import sampling
from .errors import INSUFFICIENT_POOL
from .schemas import BALANCED_CATEGORIES, MAX_PROGRESS_LEVEL, Category, Question, RetentionRecord, SelectionConfig

logger = logging.getLogger("examengine.selection")


def select_balanced(pool: Sequence[Question], total_count: int, config: SelectionConfig, rng: Optional[random.Random] = None) -> List[Question]:
    """Assemble a `total_count` exam balanced over the three main categories.

    Every `must_include` question is returned even when there are more of
    them than `total_count`; in that case no sampling happens at all.
    """
    rng = rng or random
    available = [q for q in pool if not q.must_exclude]
    forced = [q for q in available if q.must_include]
    selected = list(forced)
    chosen = {q.id for q in selected}

    if len(forced) > total_count:
        logger.warning(
            "must_include_overflow %s",
            json.dumps({"must_include": len(forced), "total_count": total_count}, ensure_ascii=True),
        )
        rng.shuffle(selected)
        return selected

    per_category = total_count // len(BALANCED_CATEGORIES)
    for category in BALANCED_CATEGORIES:
        quota = per_category - sum(1 for q in selected if q.category == category)
        # never overshoot, the final truncation must not drop mandatory questions
        quota = min(quota, total_count - len(selected))
        if quota <= 0:
            continue
        candidates = [q for q in available if q.category == category and q.id not in chosen]
        if not candidates:
            logger.warning("category_empty %s", json.dumps({"category": category.value}, ensure_ascii=True))
            continue
        picked = sampling.select(candidates, quota, config, rng)
        selected.extend(picked)
        chosen.update(q.id for q in picked)

    if len(selected) < total_count:
        rest = [q for q in available if q.id not in chosen]
        selected.extend(sampling.select(rest, total_count - len(selected), config, rng))

    rng.shuffle(selected)
    logger.info(
        "balanced_selection %s",
        json.dumps({"requested": total_count, "selected": min(len(selected), total_count), "must_include": len(forced)}, ensure_ascii=True),
    )
    return selected[:total_count]


def select_category_only(pool: Sequence[Question], category: Category, count: int, config: SelectionConfig, rng: Optional[random.Random] = None) -> List[Question]:
    """Weighted selection restricted to one category (focused study)."""
    candidates = [q for q in pool if not q.must_exclude and q.category == category]
    return sampling.select(candidates, count, config, rng)


def select_wrong_review(pool: Sequence[Question], records: Iterable[RetentionRecord], limit: int, clear_streak: int = 3, rng: Optional[random.Random] = None) -> List[Question]:
    """Questions still tracked by a retention record, at most `limit` of them."""
    rng = rng or random
    tracked = {r.question_id for r in records if r.correct_streak < clear_streak}
    candidates = [q for q in pool if q.id in tracked]
    if len(candidates) > limit:
        candidates = rng.sample(candidates, limit)
    return candidates


def select_progress_review(pool: Sequence[Question], progress: Mapping[int, int], per_category: int, rng: Optional[random.Random] = None) -> List[Question]:
    """Questions with a learning-progress level below "fully understood".

    At most `per_category` questions are taken from each balanced category.
    """
    rng = rng or random
    selected: List[Question] = []
    for category in BALANCED_CATEGORIES:
        candidates = [
            q for q in pool
            if q.category == category and q.id in progress and progress[q.id] < MAX_PROGRESS_LEVEL
        ]
        if len(candidates) > per_category:
            candidates = rng.sample(candidates, per_category)
        selected.extend(candidates)
    return selected


def shortfall_warning(requested: int, selected: int) -> Optional[Dict]:
    """Build the non-fatal warning for a pool smaller than requested."""
    if selected >= requested:
        return None
    return {"code": INSUFFICIENT_POOL, "requested": requested, "selected": selected}
