"""Weighted question sampling.

Weights run from 1 to 10 where 1 means "ask often" and 10 "ask rarely".
Draws use the inverse weight `11 - weight` as selection mass, so a weight-1
question is ten times as likely to be drawn as a weight-10 one.

All functions are pure apart from the random source; pass an explicit
`random.Random` to make a draw reproducible.
"""

import json
import logging
import math
import random
from typing import Dict, List, Optional, Sequence

from .schemas import FilterSelection, Question, RatioSelection, SelectionConfig

logger = logging.getLogger("examengine.sampling")


def inverse_weight(weight: int) -> int:
    """Return the selection mass for `weight` (1 -> 10, 10 -> 1)."""
    return 11 - weight


def select(pool: Sequence[Question], count: int, config: SelectionConfig, rng: Optional[random.Random] = None) -> List[Question]:
    """Select up to `count` questions from `pool` according to `config`.

    When `count` covers the whole pool every question is returned without
    sampling. Otherwise the configuration decides between a uniform draw
    (weighting disabled), a weight filter and a ratio allocation.
    """
    rng = rng or random
    if count <= 0 or not pool:
        return []
    if count >= len(pool):
        return list(pool)
    if not config.weight_based_enabled:
        return uniform_sample(pool, count, rng)
    if isinstance(config, FilterSelection):
        return _select_by_filter(pool, count, config.selected_weights, rng)
    if isinstance(config, RatioSelection):
        return _select_by_ratio(pool, count, config.weight_ratios, rng)
    raise TypeError(f"unsupported selection config: {type(config).__name__}")


def uniform_sample(pool: Sequence[Question], count: int, rng=random) -> List[Question]:
    """Uniform random sample without replacement."""
    return rng.sample(list(pool), min(count, len(pool)))


def weighted_sample(pool: Sequence[Question], count: int, rng=random) -> List[Question]:
    """Inverse-weighted sampling without replacement.

    Each draw builds the cumulative mass over the remaining candidates,
    picks a point in `[0, total_mass)` and removes the owning candidate.
    """
    remaining = list(pool)
    if count >= len(remaining):
        return remaining
    selected: List[Question] = []
    while len(selected) < count and remaining:
        masses = [inverse_weight(q.weight) for q in remaining]
        point = rng.random() * sum(masses)
        index = len(remaining) - 1
        cumulative = 0
        for i, mass in enumerate(masses):
            cumulative += mass
            if point < cumulative:
                index = i
                break
        selected.append(remaining.pop(index))
    return selected


def _select_by_filter(pool: Sequence[Question], count: int, selected_weights, rng) -> List[Question]:
    allowed = set(selected_weights)
    restricted = [q for q in pool if q.weight in allowed]
    if not restricted:
        logger.warning(
            "weight_filter_empty %s",
            json.dumps({"selected_weights": sorted(allowed), "pool_size": len(pool)}, ensure_ascii=True),
        )
        restricted = list(pool)
    return weighted_sample(restricted, count, rng)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _select_by_ratio(pool: Sequence[Question], count: int, weight_ratios: Dict[int, float], rng) -> List[Question]:
    buckets: Dict[int, List[Question]] = {}
    for q in pool:
        buckets.setdefault(q.weight, []).append(q)

    selected: List[Question] = []
    # Larger shares are served first; equal shares go to the lower weight.
    for weight, ratio in sorted(weight_ratios.items(), key=lambda kv: (-kv[1], kv[0])):
        target = _round_half_up(count * ratio / 100)
        if target <= 0:
            continue
        bucket = buckets.get(weight) or []
        if not bucket:
            logger.warning("weight_bucket_empty %s", json.dumps({"weight": weight, "target": target}, ensure_ascii=True))
            continue
        selected.extend(weighted_sample(bucket, target, rng))

    if len(selected) < count:
        chosen = {q.id for q in selected}
        rest = [q for q in pool if q.id not in chosen]
        selected.extend(weighted_sample(rest, count - len(selected), rng))

    rng.shuffle(selected)
    return selected[:count]
