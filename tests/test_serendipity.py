"""Tests for serendipity injection."""

from __future__ import annotations

import random

import pytest

from discovery_engine.search import SerendipityInjector


@pytest.fixture
def ranked(make_scored):
    head = [make_scored(f"top-{i}", 0.9 - i * 0.02, category="coffee") for i in range(10)]
    tail = [
        make_scored(f"tail-{i}", 0.5 - i * 0.02, category=("tea" if i % 2 else "coffee"))
        for i in range(10)
    ]
    return head + tail


def _injector(seed: int = 7, **overrides) -> SerendipityInjector:
    options = {"factor": 0.3, "score_threshold": 0.1, "limit": 10}
    options.update(overrides)
    return SerendipityInjector(rng=random.Random(seed), **options)


def test_zero_factor_leaves_order_untouched(ranked) -> None:
    assert _injector(factor=0.0).apply(ranked) == ranked


def test_promotes_low_ranked_items_into_window(ranked) -> None:
    items = _injector().apply(ranked)

    promoted = [item for item in items if item.serendipitous]
    assert len(promoted) == 3
    assert all(item.candidate.id.startswith("tail-") for item in promoted)
    assert all(items.index(item) < 10 for item in promoted)
    assert sorted(item.candidate.id for item in items) == sorted(
        item.candidate.id for item in ranked
    )


def test_top_result_is_never_displaced(ranked) -> None:
    for seed in range(25):
        items = _injector(seed=seed).apply(ranked)
        assert items[0].candidate.id == "top-0"


def test_same_seed_gives_same_output(ranked) -> None:
    first = [item.candidate.id for item in _injector(seed=3).apply(ranked)]
    second = [item.candidate.id for item in _injector(seed=3).apply(ranked)]

    assert first == second


def test_items_below_threshold_are_never_promoted(make_scored) -> None:
    items = [make_scored(f"top-{i}", 0.9) for i in range(5)]
    items += [make_scored(f"weak-{i}", 0.05) for i in range(5)]

    result = _injector(limit=5, score_threshold=0.1).apply(items)

    assert result == items


def test_short_lists_draw_from_their_bottom_half(make_scored) -> None:
    items = [make_scored(f"p{i}", 0.9 - i * 0.1, category=f"c{i}") for i in range(4)]

    result = _injector(factor=0.1, limit=10).apply(items)

    promoted = [item for item in result if item.serendipitous]
    assert len(promoted) == 1
    assert promoted[0].candidate.id in {"p2", "p3"}
    assert result[0].candidate.id == "p0"


def test_held_back_items_are_never_promoted(make_scored) -> None:
    items = [make_scored(f"top-{i}", 0.9, category=f"c{i}") for i in range(3)]
    items += [make_scored("compliant", 0.4, category="c9")]
    items += [make_scored(f"held-{i}", 0.5, held_back=True, category="c0") for i in range(4)]

    for seed in range(20):
        result = _injector(seed=seed, factor=1.0, limit=3).apply(items)

        promoted = [item.candidate.id for item in result if item.serendipitous]
        assert promoted == ["compliant"]
        assert [item.candidate.id for item in result[4:]] == [f"held-{i}" for i in range(4)]
