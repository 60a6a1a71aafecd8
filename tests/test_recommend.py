"""Tests for profile building and recommendation retrieval."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from discovery_engine.backends import SearchPoint
from discovery_engine.recommend import (
    COLLABORATIVE_SOURCE,
    CONTENT_SOURCE,
    FALLBACK_SOURCE,
    ProfileRetriever,
    UserProfile,
    build_profile,
    explain_recommendation,
)
from discovery_engine.search import MultiQueryRetriever

from .conftest import NOW, FakeBackend, FakeEmbedder, FakeStore, point, record

INTEREST_TEXT = "espresso Coffee Tea"


def _interaction(user_id: str, content_id: str, kind: str, days_ago: float = 0.0) -> dict:
    return {
        "user_id": user_id,
        "content_id": content_id,
        "kind": kind,
        "created_at": NOW - timedelta(days=days_ago),
        "category_id": None,
    }


@pytest.fixture
def store() -> FakeStore:
    posts = [
        record("p1", category_id="coffee", category_name="Coffee", author_id="bob"),
        record("p2", category_id="coffee", category_name="Coffee", author_id="bob"),
        record("p3", category_id="tea", category_name="Tea", author_id="cat"),
        record("p4", category_id="coffee", category_name="Coffee", author_id="dan", hours_ago=2),
        record("p5", category_id="baking", category_name="Baking", author_id="eve", hours_ago=3),
        record("own", category_id="coffee", category_name="Coffee", author_id="u1", hours_ago=0.5),
    ]
    users = [{"id": "u1", "metadata": {"interests": ["espresso"]}}]
    interactions = [
        _interaction("u1", "p1", "like"),
        _interaction("u1", "p2", "comment", days_ago=1),
        _interaction("u1", "p3", "view", days_ago=2),
        _interaction("u2", "p4", "bookmark"),
        _interaction("u2", "p5", "like", days_ago=1),
        _interaction("u2", "p1", "like", days_ago=2),
    ]
    return FakeStore({"post": posts, "user": users}, interactions)


def _profiles(store: FakeStore, backend: FakeBackend) -> ProfileRetriever:
    return ProfileRetriever(MultiQueryRetriever(backend, store, backend.embedder))


def _deadline() -> float:
    return asyncio.get_running_loop().time() + 5.0


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def test_build_profile_weights_interactions_with_decay() -> None:
    interactions = [
        _interaction("u1", "p1", "like"),
        _interaction("u1", "p2", "bookmark", days_ago=1),
        _interaction("u1", "p3", "view"),
    ]
    content = [
        {"id": "p1", "category_id": "coffee", "category_name": "Coffee"},
        {"id": "p2", "category_id": "coffee"},
        {"id": "p3", "category_id": "tea"},
    ]

    profile = build_profile(
        "u1", interactions, content_records=content, time_decay_factor=0.5, now=NOW
    )

    assert profile is not None
    assert profile.category_weights["coffee"] == pytest.approx(0.5 + 1.0 * 0.5)
    assert profile.category_weights["tea"] == pytest.approx(0.1)
    assert profile.top_categories() == ["coffee", "tea"]
    assert profile.seen_ids == frozenset({"p1", "p2", "p3"})
    assert profile.interest_text() == "Coffee tea"


def test_build_profile_without_history_or_interests_is_none() -> None:
    assert build_profile("u1", [], now=NOW) is None


def test_build_profile_from_declared_interests_only() -> None:
    profile = build_profile("u1", [], user_record={"interests": "espresso, latte art"}, now=NOW)

    assert profile is not None
    assert profile.interests == ("espresso", "latte art")
    assert profile.interaction_count == 0


def test_load_profile_reads_interactions_users_and_posts(store: FakeStore) -> None:
    profiles = _profiles(store, FakeBackend(FakeEmbedder()))

    profile = profiles.load_profile("u1", time_decay_factor=0.95, now=NOW)

    assert profile is not None
    assert profile.interaction_count == 3
    assert profile.interests == ("espresso",)
    assert profile.interest_text() == INTEREST_TEXT


# ---------------------------------------------------------------------------
# Reasons
# ---------------------------------------------------------------------------


def test_explain_recommendation_variants(make_candidate) -> None:
    profile = UserProfile(
        user_id="u1",
        interaction_count=3,
        category_weights={"coffee": 1.0},
        category_names={"coffee": "Coffee"},
        interests=("espresso",),
    )

    in_category = make_candidate("a", category="coffee", sources=(CONTENT_SOURCE,))
    collaborative = make_candidate("b", category="tea", sources=(COLLABORATIVE_SOURCE,))
    by_interest = make_candidate("c", category="tea", sources=(CONTENT_SOURCE,))
    fallback = make_candidate("d", sources=(FALLBACK_SOURCE,))

    assert explain_recommendation(in_category, profile) == "Similar to your recent activity in Coffee"
    assert explain_recommendation(collaborative, profile) == "Users with similar interests engaged with this"
    assert explain_recommendation(by_interest, profile) == "Matches your interests in espresso"
    assert explain_recommendation(fallback, profile) == "Recent from the community"
    assert explain_recommendation(by_interest, None) == "Recent from the community"


# ---------------------------------------------------------------------------
# Retrieval paths
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_hybrid_runs_both_paths(store: FakeStore) -> None:
    embedder = FakeEmbedder()
    backend = FakeBackend(
        embedder,
        {
            ("users", INTEREST_TEXT): [
                point(0.9, {"id": "u1"}),
                SearchPoint(id="u2", score=0.8, payload={"id": "u2"}),
            ],
            ("posts", INTEREST_TEXT): [
                point(0.7, record("p5", category_id="baking")),
                point(0.6, record("p1", category_id="coffee")),
                point(0.5, record("own", author_id="u1")),
            ],
        },
    )
    profiles = _profiles(store, backend)
    profile = profiles.load_profile("u1", time_decay_factor=0.95, now=NOW)

    result = await profiles.retrieve(
        "u1", profile, algorithm="hybrid", limit=10, score_threshold=0.1, deadline=_deadline()
    )

    assert result.search_type == "personalized"
    assert result.algorithms == [COLLABORATIVE_SOURCE, CONTENT_SOURCE]
    collaborative, content = result.lists
    # p1 was already seen by u1; neighbour u2's bookmark ranks above their like.
    assert [(c.id, c.raw_score) for c in collaborative] == [("p4", 0.8), ("p5", 0.4)]
    assert [c.id for c in content] == ["p5"]
    assert all(c.sources == (CONTENT_SOURCE,) for c in content)


@pytest.mark.asyncio
async def test_collaborative_needs_enough_history(store: FakeStore) -> None:
    embedder = FakeEmbedder()
    backend = FakeBackend(
        embedder,
        {("posts", "espresso"): [point(0.7, record("p5"))]},
    )
    profiles = _profiles(store, backend)
    profile = build_profile("u1", [], user_record={"interests": ["espresso"]}, now=NOW)

    result = await profiles.retrieve(
        "u1", profile, algorithm="hybrid", limit=10, score_threshold=0.1, deadline=_deadline()
    )

    assert result.lists[0] == []
    assert [c.id for c in result.lists[1]] == ["p5"]
    assert result.algorithms == [CONTENT_SOURCE]
    assert all(call["collection"] != "users" for call in backend.calls)


@pytest.mark.asyncio
async def test_content_only_algorithm_skips_collaborative(store: FakeStore) -> None:
    embedder = FakeEmbedder()
    backend = FakeBackend(embedder, {("posts", INTEREST_TEXT): [point(0.7, record("p5"))]})
    profiles = _profiles(store, backend)
    profile = profiles.load_profile("u1", time_decay_factor=0.95, now=NOW)

    result = await profiles.retrieve(
        "u1", profile, algorithm="content", limit=10, score_threshold=0.1, deadline=_deadline()
    )

    assert len(result.lists) == 1
    assert result.algorithms == [CONTENT_SOURCE]


@pytest.mark.asyncio
async def test_unknown_user_gets_recent_posts(store: FakeStore) -> None:
    profiles = _profiles(store, FakeBackend(FakeEmbedder()))

    result = await profiles.retrieve(
        "stranger", None, algorithm="hybrid", limit=2, score_threshold=0.1, deadline=_deadline()
    )

    assert result.search_type == "fallback"
    assert result.algorithms == ["fallback"]
    (recent,) = result.lists
    assert [c.id for c in recent] == ["own", "p1", "p2", "p3"]
    assert [c.raw_score for c in recent] == pytest.approx([0.5, 0.49, 0.48, 0.47])
    assert all(c.sources == (FALLBACK_SOURCE,) for c in recent)


@pytest.mark.asyncio
async def test_not_ready_backend_falls_back_excluding_seen_and_own(store: FakeStore) -> None:
    backend = FakeBackend(FakeEmbedder(), ready=False)
    profiles = _profiles(store, backend)
    profile = profiles.load_profile("u1", time_decay_factor=0.95, now=NOW)

    result = await profiles.retrieve(
        "u1", profile, algorithm="hybrid", limit=10, score_threshold=0.1, deadline=_deadline()
    )

    assert result.search_type == "fallback"
    assert "similarity:not-ready" in result.failures
    assert [c.id for c in result.lists[0]] == ["p4", "p5"]


@pytest.mark.asyncio
async def test_recent_posts_fallback_respects_score_threshold(store: FakeStore) -> None:
    profiles = _profiles(store, FakeBackend(FakeEmbedder()))

    result = await profiles.retrieve(
        "stranger", None, algorithm="hybrid", limit=5, score_threshold=0.475, deadline=_deadline()
    )

    (recent,) = result.lists
    assert [c.id for c in recent] == ["own", "p1", "p2"]
    assert all(c.raw_score >= 0.475 for c in recent)
