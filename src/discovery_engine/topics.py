"""
Topic clusters over recent posts.

Every seed topic is searched as one similarity query inside the time
window. A seed becomes a cluster once at least ``min_posts`` posts match it;
clusters are ranked by mean match score times post count.

Without similarity search the seed keywords are matched against the
metadata store instead, and a post's score is the share of the seed's
keywords it contains.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Sequence

from .models import Candidate, ExpandedQuery, RetrievalFilters, SearchType, TimeRange
from .search.filters import build_backend_filter
from .search.retrieval import MultiQueryRetriever, candidate_from_record

logger = logging.getLogger(__name__)

CLUSTER_POST_LIMIT = 50


@dataclass(frozen=True)
class TopicSeed:
    name: str
    keywords: tuple[str, ...]
    query: str

    @property
    def id(self) -> str:
        return re.sub(r"[^a-z0-9]+", "-", self.name.lower()).strip("-")


TOPIC_SEEDS: tuple[TopicSeed, ...] = (
    TopicSeed(
        "Artificial Intelligence & Machine Learning",
        ("artificial intelligence", "machine learning", "neural network", "deep learning"),
        "artificial intelligence machine learning neural networks deep learning algorithms",
    ),
    TopicSeed(
        "Neuroscience & Cognitive Science",
        ("neuroscience", "brain", "cognitive", "memory", "consciousness"),
        "neuroscience brain cognitive science memory consciousness psychology",
    ),
    TopicSeed(
        "Quantum Computing & Physics",
        ("quantum", "physics", "qubit", "superposition"),
        "quantum computing physics quantum mechanics qubits superposition entanglement",
    ),
    TopicSeed(
        "Healthcare & Medical Innovation",
        ("healthcare", "medical", "medicine", "treatment", "diagnosis"),
        "healthcare medical innovation medicine treatment diagnosis therapy",
    ),
    TopicSeed(
        "Climate & Environment",
        ("climate", "environment", "sustainability", "renewable", "carbon"),
        "climate change environment sustainability renewable energy carbon",
    ),
    TopicSeed(
        "Biotechnology & Genetics",
        ("biotechnology", "genetics", "dna", "crispr", "genomics"),
        "biotechnology genetics DNA gene editing CRISPR genomics",
    ),
    TopicSeed(
        "Space & Astronomy",
        ("space", "astronomy", "astrophysics", "planet", "galaxy"),
        "space exploration astronomy astrophysics planets stars galaxies",
    ),
    TopicSeed(
        "Technology & Innovation",
        ("technology", "innovation", "startup", "software"),
        "technology innovation startup digital transformation software",
    ),
    TopicSeed(
        "Education & Learning",
        ("education", "learning", "teaching", "university"),
        "education learning teaching knowledge sharing academic study",
    ),
    TopicSeed(
        "Philosophy & Ethics",
        ("philosophy", "ethics", "morality", "meaning"),
        "philosophy ethics morality existence meaning society",
    ),
)


@dataclass(frozen=True)
class TopicCluster:
    id: str
    name: str
    description: str
    post_ids: tuple[str, ...]
    keywords: tuple[str, ...]
    score: float
    engagement: int = 0

    @property
    def post_count(self) -> int:
        return len(self.post_ids)

    @property
    def weight(self) -> float:
        return self.score * self.post_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "post_ids": list(self.post_ids),
            "post_count": self.post_count,
            "keywords": list(self.keywords),
            "score": self.score,
            "engagement": self.engagement,
        }


@dataclass
class TopicsResponse:
    clusters: list[TopicCluster]
    search_type: SearchType
    degraded: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "search_type": self.search_type,
            "degraded": list(self.degraded),
            "topics": [cluster.to_dict() for cluster in self.clusters],
        }


def build_cluster(seed: TopicSeed, posts: Sequence[Candidate]) -> TopicCluster:
    count = len(posts)
    return TopicCluster(
        id=seed.id,
        name=seed.name,
        description=f"{count} recent posts about {', '.join(seed.keywords[:3])}",
        post_ids=tuple(post.id for post in posts),
        keywords=seed.keywords,
        score=round(sum(post.raw_score for post in posts) / count, 6),
        engagement=sum(post.comment_count + post.vote_count for post in posts),
    )


class TopicClusterer:
    """Group recent posts under a fixed set of seed topics."""

    def __init__(
        self,
        retriever: MultiQueryRetriever,
        seeds: Sequence[TopicSeed] = TOPIC_SEEDS,
    ) -> None:
        self.retriever = retriever
        self.seeds = tuple(seeds)

    async def discover(
        self,
        *,
        time_range: TimeRange,
        limit: int,
        min_posts: int,
        now: datetime,
        score_threshold: float = 0.0,
        deadline: float | None = None,
    ) -> TopicsResponse:
        filters = RetrievalFilters(time_range=time_range)
        search_type: SearchType
        if await self.retriever.is_ready(deadline=deadline):
            search_type = "vector"
            jobs = [
                partial(self._similar_posts, seed, filters, score_threshold, now)
                for seed in self.seeds
            ]
        else:
            logger.warning("Similarity backend not ready, clustering topics by keyword")
            search_type = "fallback"
            jobs = [
                partial(self._keyword_posts, seed, filters, score_threshold, now)
                for seed in self.seeds
            ]

        lists, failures = await self.retriever.fan_out(
            [f"topic:{seed.id}" for seed in self.seeds], jobs, deadline=deadline
        )
        clusters = [
            build_cluster(seed, posts)
            for seed, posts in zip(self.seeds, lists)
            if posts and len(posts) >= min_posts
        ]
        clusters.sort(key=lambda cluster: (-cluster.weight, cluster.id))
        logger.debug(
            "Found %d topic clusters (%s) from %d seeds",
            len(clusters),
            search_type,
            len(self.seeds),
        )
        return TopicsResponse(
            clusters=clusters[:limit], search_type=search_type, degraded=failures
        )

    def _similar_posts(
        self,
        seed: TopicSeed,
        filters: RetrievalFilters,
        score_threshold: float,
        now: datetime,
    ) -> list[Candidate]:
        return self.retriever.vector_search(
            ExpandedQuery(text=seed.query, role="primary"),
            ("post",),
            filters,
            score_threshold,
            now,
            limit=CLUSTER_POST_LIMIT,
        )

    def _keyword_posts(
        self,
        seed: TopicSeed,
        filters: RetrievalFilters,
        score_threshold: float,
        now: datetime,
    ) -> list[Candidate]:
        base_filter = build_backend_filter(filters, content_type="post", now=now)
        records: dict[str, dict[str, Any]] = {}
        matched: dict[str, int] = {}
        for keyword in seed.keywords:
            rows = self.retriever.metadata_store.find_many(
                "post", {**base_filter, "contains": keyword}, limit=CLUSTER_POST_LIMIT
            )
            for row in rows:
                post_id = str(row.get("id") or "")
                if not post_id:
                    continue
                records.setdefault(post_id, row)
                matched[post_id] = matched.get(post_id, 0) + 1

        posts: list[Candidate] = []
        for post_id, row in records.items():
            score = matched[post_id] / len(seed.keywords)
            if score < score_threshold:
                continue
            candidate = candidate_from_record(
                row, content_type="post", score=score, source=f"topic:{seed.id}"
            )
            if candidate is not None:
                posts.append(candidate)
        posts.sort(key=lambda post: (-post.raw_score, post.id))
        return posts[:CLUSTER_POST_LIMIT]
