"""Tests for the trending retrieval path."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from discovery_engine.search import MultiQueryRetriever
from discovery_engine.trending import TRENDING_FALLBACK_SOURCE, TRENDING_QUERIES, TrendingSource

from .conftest import NOW, FakeBackend, FakeEmbedder, FakeStore, point, record


def _deadline() -> float:
    return asyncio.get_running_loop().time() + 5.0


@pytest.mark.asyncio
async def test_trending_fans_out_seed_queries_over_posts() -> None:
    embedder = FakeEmbedder()
    backend = FakeBackend(
        embedder,
        {
            ("posts", TRENDING_QUERIES[0]): [point(0.8, record("p1", hours_ago=3))],
            ("posts", TRENDING_QUERIES[2]): [point(0.7, record("p2", hours_ago=24 * 20))],
        },
    )
    source = TrendingSource(MultiQueryRetriever(backend, FakeStore(), embedder))

    result = await source.retrieve(
        time_range="week", limit=10, score_threshold=0.1, now=NOW, deadline=_deadline()
    )

    assert result.search_type == "vector"
    assert len(result.lists) == len(TRENDING_QUERIES)
    assert [c.id for c in result.lists[0]] == ["p1"]
    # Outside the one-week window.
    assert result.lists[2] == []
    assert {call["collection"] for call in backend.calls} == {"posts"}
    assert all(
        call["filter"]["created_after"] == NOW - timedelta(days=7) for call in backend.calls
    )


@pytest.mark.asyncio
async def test_trending_falls_back_to_engagement_order() -> None:
    embedder = FakeEmbedder()
    store = FakeStore(
        {
            "post": [
                record("quiet", vote_count=1),
                record("busy", comment_count=10, vote_count=3),
                record("old", comment_count=50, hours_ago=24 * 3),
            ]
        }
    )
    source = TrendingSource(MultiQueryRetriever(FakeBackend(embedder, ready=False), store, embedder))

    result = await source.retrieve(
        time_range="day", limit=10, score_threshold=0.1, now=NOW, deadline=_deadline()
    )

    assert result.search_type == "fallback"
    (posts,) = result.lists
    assert [c.id for c in posts] == ["busy", "quiet"]
    assert all(c.raw_score == 0.8 for c in posts)
    assert posts[0].sources == (TRENDING_FALLBACK_SOURCE,)


@pytest.mark.asyncio
async def test_engagement_fallback_respects_score_threshold() -> None:
    embedder = FakeEmbedder()
    store = FakeStore({"post": [record("busy", comment_count=10)]})
    source = TrendingSource(MultiQueryRetriever(FakeBackend(embedder, ready=False), store, embedder))

    result = await source.retrieve(
        time_range="day", limit=10, score_threshold=0.9, now=NOW, deadline=_deadline()
    )

    assert result.search_type == "fallback"
    assert result.lists == [[]]
    assert store.calls == []
