import logging
import random
from collections import Counter

from examengine import sampling
from examengine.schemas import FilterSelection, Question, RatioSelection


def _q(qid, weight=5, category="THEORY"):
    return Question(id=qid, weight=weight, category=category)


def _mixed_pool(n=10):
    return [_q(i, weight=(i % 10) + 1) for i in range(1, n + 1)]


def test_inverse_weight_maps_one_to_ten():
    assert sampling.inverse_weight(1) == 10
    assert sampling.inverse_weight(10) == 1
    assert sampling.inverse_weight(5) == 6


def test_invalid_weights_count_as_mid_priority():
    assert Question(id=1, weight=0).weight == 5
    assert Question(id=2, weight=11).weight == 5
    assert Question(id=3, weight="heavy").weight == 5
    assert Question(id=4, weight=None).weight == 5
    assert Question(id=5, weight="3").weight == 3


def test_size_bound_for_unweighted_configs():
    pool = _mixed_pool(10)
    rng = random.Random(1)
    for cfg in (FilterSelection(), RatioSelection(weight_based_enabled=False, weight_ratios={1: 100})):
        for n in range(0, 14):
            picked = sampling.select(pool, n, cfg, rng)
            assert len(picked) == min(n, len(pool))
            assert len({q.id for q in picked}) == len(picked)


def test_weighted_draws_never_repeat_or_overshoot():
    pool = _mixed_pool(30)
    rng = random.Random(2)
    configs = [
        FilterSelection(weight_based_enabled=True),
        FilterSelection(weight_based_enabled=True, selected_weights={1, 2, 3}),
        RatioSelection(weight_ratios={1: 40, 5: 40, 10: 20}),
    ]
    for cfg in configs:
        for n in (1, 5, 12, 29):
            picked = sampling.select(pool, n, cfg, rng)
            assert len(picked) <= n
            assert len({q.id for q in picked}) == len(picked)


def test_count_covering_pool_returns_everything():
    pool = _mixed_pool(4)
    picked = sampling.select(pool, 10, FilterSelection(weight_based_enabled=True, selected_weights={1}))
    assert [q.id for q in picked] == [q.id for q in pool]


def test_empty_pool_and_non_positive_count():
    assert sampling.select([], 5, FilterSelection()) == []
    assert sampling.select(_mixed_pool(3), 0, FilterSelection()) == []
    assert sampling.select(_mixed_pool(3), -2, FilterSelection()) == []


def test_filter_keeps_only_selected_weights():
    pool = [_q(i, weight=1 if i <= 5 else 8) for i in range(1, 21)]
    cfg = FilterSelection(weight_based_enabled=True, selected_weights={8})
    picked = sampling.select(pool, 6, cfg, random.Random(3))
    assert len(picked) == 6
    assert all(q.weight == 8 for q in picked)


def test_filter_without_matches_falls_back_to_whole_pool(caplog):
    pool = [_q(i, weight=5) for i in range(1, 11)]
    cfg = FilterSelection(weight_based_enabled=True, selected_weights={1})
    with caplog.at_level(logging.WARNING, logger="examengine.sampling"):
        picked = sampling.select(pool, 3, cfg, random.Random(4))
    assert len(picked) == 3
    assert any("weight_filter_empty" in r.getMessage() for r in caplog.records)


def test_inverse_weight_law_over_many_draws():
    pool = [_q(1, weight=1), _q(2, weight=10)]
    cfg = FilterSelection(weight_based_enabled=True, selected_weights={1, 10})
    rng = random.Random(1234)
    counts = Counter(sampling.select(pool, 1, cfg, rng)[0].id for _ in range(10000))
    ratio = counts[1] / counts[2]
    assert 8.5 < ratio < 11.8


def test_three_question_pool_prefers_low_weight():
    pool = [_q(1, weight=1), _q(2, weight=5), _q(3, weight=10)]
    cfg = FilterSelection(weight_based_enabled=True, selected_weights={1, 5, 10})
    rng = random.Random(42)
    counts = Counter(sampling.select(pool, 1, cfg, rng)[0].id for _ in range(1000))
    assert counts[1] > counts[2] > counts[3] > 0
    assert 6 < counts[1] / counts[3] < 18


def test_ratio_allocates_per_bucket():
    pool = [_q(i, weight=1) for i in range(1, 21)] + [_q(i, weight=10) for i in range(21, 41)]
    cfg = RatioSelection(weight_ratios={1: 70, 10: 30})
    picked = sampling.select(pool, 10, cfg, random.Random(5))
    weights = Counter(q.weight for q in picked)
    assert weights == {1: 7, 10: 3}


def test_ratio_fills_shortfall_from_rest_of_pool(caplog):
    pool = [_q(1, weight=1), _q(2, weight=1)] + [_q(i, weight=6) for i in range(3, 13)]
    cfg = RatioSelection(weight_ratios={1: 50, 3: 50})
    with caplog.at_level(logging.WARNING, logger="examengine.sampling"):
        picked = sampling.select(pool, 6, cfg, random.Random(6))
    assert len(picked) == 6
    assert {1, 2} <= {q.id for q in picked}
    assert any("weight_bucket_empty" in r.getMessage() for r in caplog.records)


def test_ratio_rounding_overshoot_is_truncated():
    pool = [_q(i, weight=1) for i in range(1, 6)] + [_q(i, weight=2) for i in range(6, 11)]
    cfg = RatioSelection(weight_ratios={1: 50, 2: 50})
    picked = sampling.select(pool, 5, cfg, random.Random(7))
    assert len(picked) == 5
    assert len({q.id for q in picked}) == 5
