"""
Profile-driven recommendation retrieval.

A user's interactions become a profile (category preferences, interests,
already-seen content). The profile feeds two retrieval paths:

- collaborative: users with similar interests and what they engaged with;
- content: posts close to the user's own interests.

``hybrid`` runs both concurrently. When neither yields anything, recent posts
are returned so the caller still gets a list.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Mapping, Sequence

from .backends import INTERACTION_KIND, MetadataStore, collection_for
from .models import Algorithm, Candidate
from .search.retrieval import (
    MultiQueryRetriever,
    RetrievalResult,
    candidate_from_record,
    normalize_scores,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

INTERACTION_WEIGHTS: dict[str, float] = {
    "view": 0.1,
    "like": 0.5,
    "comment": 0.8,
    "bookmark": 1.0,
}
POSITIVE_KINDS = ("like", "comment", "bookmark")
MIN_COLLABORATIVE_INTERACTIONS = 3
HYBRID_SHARES: dict[str, float] = {"collaborative": 0.6, "content": 0.4}
SIMILAR_USER_LIMIT = 10
NEIGHBOUR_INTERACTION_LIMIT = 20
PROFILE_INTERACTION_LIMIT = 200

COLLABORATIVE_SOURCE = "collaborative_filtering"
CONTENT_SOURCE = "content_based"
FALLBACK_SOURCE = "recent_fallback"


@dataclass(frozen=True)
class UserProfile:
    """What the engine knows about a user for one request."""

    user_id: str
    interaction_count: int
    seen_ids: frozenset[str] = frozenset()
    category_weights: dict[str, float] = field(default_factory=dict)
    category_names: dict[str, str] = field(default_factory=dict)
    interests: tuple[str, ...] = ()

    def top_categories(self, count: int = 3) -> list[str]:
        ranked = sorted(self.category_weights.items(), key=lambda item: (-item[1], item[0]))
        return [category for category, _ in ranked[:count]]

    def interest_text(self) -> str:
        names = [self.category_names.get(category, category) for category in self.top_categories()]
        return " ".join(dict.fromkeys([*self.interests, *names]))


def build_profile(
    user_id: str,
    interactions: Sequence[Mapping[str, Any]],
    *,
    content_records: Sequence[Mapping[str, Any]] = (),
    user_record: Mapping[str, Any] | None = None,
    time_decay_factor: float = 0.95,
    now: datetime | None = None,
) -> UserProfile | None:
    """Fold raw interaction rows into a profile; None when there is nothing to use."""
    now = now or datetime.now(timezone.utc)
    interests = _interests_of(user_record)
    if not interactions and not interests:
        return None

    categories_by_content: dict[str, str] = {}
    category_names: dict[str, str] = {}
    for record in content_records:
        category_id = record.get("category_id")
        if not category_id:
            continue
        categories_by_content[str(record.get("id"))] = str(category_id)
        if record.get("category_name"):
            category_names[str(category_id)] = str(record["category_name"])

    weights: defaultdict[str, float] = defaultdict(float)
    seen: set[str] = set()
    for row in interactions:
        content_id = str(row.get("content_id") or "")
        if not content_id:
            continue
        seen.add(content_id)
        category = row.get("category_id") or categories_by_content.get(content_id)
        if not category:
            continue
        weight = INTERACTION_WEIGHTS.get(str(row.get("kind")), 0.0)
        created_at = parse_timestamp(row.get("created_at"))
        if created_at is not None:
            days = max((now - created_at).total_seconds() / 86400.0, 0.0)
            weight *= time_decay_factor**days
        weights[str(category)] += weight

    return UserProfile(
        user_id=user_id,
        interaction_count=len(interactions),
        seen_ids=frozenset(seen),
        category_weights=dict(weights),
        category_names=category_names,
        interests=interests,
    )


def _interests_of(user_record: Mapping[str, Any] | None) -> tuple[str, ...]:
    if not user_record:
        return ()
    raw = user_record.get("interests")
    metadata = user_record.get("metadata")
    if raw is None and isinstance(metadata, Mapping):
        raw = metadata.get("interests")
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        return ()
    return tuple(dict.fromkeys(str(item).strip() for item in raw if str(item).strip()))


def explain_recommendation(candidate: Candidate, profile: UserProfile | None) -> str:
    if FALLBACK_SOURCE in candidate.sources or profile is None:
        return "Recent from the community"
    if candidate.category and candidate.category in profile.top_categories():
        name = profile.category_names.get(candidate.category, candidate.category_name)
        return f"Similar to your recent activity in {name}"
    if COLLABORATIVE_SOURCE in candidate.sources:
        return "Users with similar interests engaged with this"
    if profile.interests:
        return f"Matches your interests in {', '.join(profile.interests[:3])}"
    return "Related to content you engaged with"


class ProfileRetriever:
    """Load a user's profile and run the recommendation retrieval paths."""

    def __init__(self, retriever: MultiQueryRetriever) -> None:
        self.retriever = retriever

    @property
    def store(self) -> MetadataStore:
        return self.retriever.metadata_store

    def load_profile(
        self,
        user_id: str,
        *,
        time_decay_factor: float,
        now: datetime,
    ) -> UserProfile | None:
        """Blocking profile load; run it off the event loop."""
        interactions = self.store.find_many(
            INTERACTION_KIND, {"user_id": user_id}, limit=PROFILE_INTERACTION_LIMIT
        )
        users = self.store.find_many("user", {"ids": [user_id]}, limit=1)
        content_ids = list(dict.fromkeys(str(row["content_id"]) for row in interactions))
        content_records = (
            self.store.find_many("post", {"ids": content_ids}, limit=len(content_ids))
            if content_ids
            else []
        )
        return build_profile(
            user_id,
            interactions,
            content_records=content_records,
            user_record=users[0] if users else None,
            time_decay_factor=time_decay_factor,
            now=now,
        )

    async def retrieve(
        self,
        user_id: str,
        profile: UserProfile | None,
        *,
        algorithm: Algorithm,
        limit: int,
        score_threshold: float,
        deadline: float | None = None,
    ) -> RetrievalResult:
        if profile is not None and profile.interest_text():
            ready = await self.retriever.is_ready(deadline=deadline)
            if ready:
                result = await self._personalized(
                    profile,
                    algorithm=algorithm,
                    limit=limit,
                    score_threshold=score_threshold,
                    deadline=deadline,
                )
                if any(result.lists):
                    return result
                failures = result.failures
            else:
                failures = ["similarity:not-ready"]
        else:
            failures = []

        logger.info("Falling back to recent posts for user %s", user_id)
        seen = sorted(profile.seen_ids) if profile else []
        lists, fallback_failures = await self.retriever.fan_out(
            [FALLBACK_SOURCE],
            [partial(self._recent_posts, user_id, seen, limit * 2, score_threshold)],
            deadline=deadline,
        )
        return RetrievalResult(
            lists=lists,
            search_type="fallback",
            failures=failures + fallback_failures,
            algorithms=["fallback"],
        )

    async def _personalized(
        self,
        profile: UserProfile,
        *,
        algorithm: Algorithm,
        limit: int,
        score_threshold: float,
        deadline: float | None,
    ) -> RetrievalResult:
        paths: list[tuple[str, Callable[[], list[Candidate]]]] = []
        if algorithm in ("collaborative", "hybrid"):
            share = HYBRID_SHARES["collaborative"] if algorithm == "hybrid" else 1.0
            paths.append(
                (
                    COLLABORATIVE_SOURCE,
                    partial(self._collaborative, profile, _path_limit(limit, share), score_threshold),
                )
            )
        if algorithm in ("content", "hybrid"):
            share = HYBRID_SHARES["content"] if algorithm == "hybrid" else 1.0
            paths.append(
                (
                    CONTENT_SOURCE,
                    partial(self._content_based, profile, _path_limit(limit, share), score_threshold),
                )
            )
        labels = [label for label, _ in paths]
        lists, failures = await self.retriever.fan_out(
            labels, [job for _, job in paths], deadline=deadline
        )
        used = [label for label, items in zip(labels, lists) if items]
        return RetrievalResult(
            lists=lists,
            search_type="personalized",
            failures=failures,
            algorithms=used,
        )

    def _collaborative(
        self, profile: UserProfile, limit: int, score_threshold: float
    ) -> list[Candidate]:
        if profile.interaction_count < MIN_COLLABORATIVE_INTERACTIONS:
            logger.debug(
                "User %s has %d interactions, too few for collaborative filtering",
                profile.user_id,
                profile.interaction_count,
            )
            return []
        vector = self.retriever.embed_query(profile.interest_text())
        neighbours = self.retriever.backend.search(
            collection=collection_for("user"),
            query_vector=vector,
            limit=SIMILAR_USER_LIMIT,
            filter={"exclude_ids": [profile.user_id]},
        )

        scores: dict[str, float] = {}
        similarities = normalize_scores([point.score for point in neighbours])
        for point, similarity in zip(neighbours, similarities):
            neighbour_id = str(point.payload.get("id") or point.id)
            if neighbour_id == profile.user_id:
                continue
            engaged = self.store.find_many(
                INTERACTION_KIND,
                {"user_id": neighbour_id, "kinds": list(POSITIVE_KINDS)},
                limit=NEIGHBOUR_INTERACTION_LIMIT,
            )
            for position, row in enumerate(engaged):
                content_id = str(row["content_id"])
                if content_id in profile.seen_ids:
                    continue
                score = similarity / (position + 1)
                scores[content_id] = max(scores.get(content_id, 0.0), score)

        ranked_ids = sorted(scores, key=lambda item: (-scores[item], item))[:limit]
        if not ranked_ids:
            return []
        records = self.store.find_many(
            "post",
            {"ids": ranked_ids, "exclude_author_id": profile.user_id},
            limit=len(ranked_ids),
        )
        return self._to_candidates(
            records,
            {record_id: scores[record_id] for record_id in ranked_ids},
            COLLABORATIVE_SOURCE,
            score_threshold,
        )

    def _content_based(
        self, profile: UserProfile, limit: int, score_threshold: float
    ) -> list[Candidate]:
        vector = self.retriever.embed_query(profile.interest_text())
        points = self.retriever.backend.search(
            collection=collection_for("post"),
            query_vector=vector,
            limit=limit,
            filter={
                "exclude_author_id": profile.user_id,
                "exclude_ids": sorted(profile.seen_ids),
            },
        )
        scores = normalize_scores([point.score for point in points])
        candidates: list[Candidate] = []
        for point, score in zip(points, scores):
            if score < score_threshold:
                continue
            candidate = candidate_from_record(
                point.payload,
                content_type="post",
                score=score,
                source=CONTENT_SOURCE,
                fallback_id=point.id,
            )
            if candidate is not None and candidate.id not in profile.seen_ids:
                candidates.append(candidate)
        return candidates

    def _recent_posts(
        self, user_id: str, seen: list[str], limit: int, score_threshold: float
    ) -> list[Candidate]:
        records = self.store.find_many(
            "post",
            {"exclude_author_id": user_id, "exclude_ids": seen},
            limit=limit,
        )
        candidates: list[Candidate] = []
        for index, record in enumerate(records):
            score = max(0.5 - index * 0.01, 0.0)
            if score < score_threshold:
                break
            candidate = candidate_from_record(
                record,
                content_type="post",
                score=score,
                source=FALLBACK_SOURCE,
            )
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    @staticmethod
    def _to_candidates(
        records: Sequence[Mapping[str, Any]],
        scores: Mapping[str, float],
        source: str,
        score_threshold: float,
    ) -> list[Candidate]:
        candidates: list[Candidate] = []
        for record in records:
            score = scores.get(str(record.get("id")), 0.0)
            if score < score_threshold:
                continue
            candidate = candidate_from_record(
                record, content_type="post", score=score, source=source
            )
            if candidate is not None:
                candidates.append(candidate)
        return candidates


def _path_limit(limit: int, share: float) -> int:
    # Over-fetch so diversity and serendipity have something to work with.
    return max(math.ceil(limit * share), 1) * 2
