"""
Trending retrieval path.
"""

from __future__ import annotations

import logging
from datetime import datetime
from functools import partial

from .models import Candidate, ExpandedQuery, RetrievalFilters, TimeRange
from .search.filters import time_range_cutoff
from .search.retrieval import MultiQueryRetriever, RetrievalResult, candidate_from_record

logger = logging.getLogger(__name__)

TRENDING_QUERIES = (
    "trending popular viral content",
    "hot discussions engaging posts",
    "breaking news latest updates",
    "popular community favorites",
)
TRENDING_FALLBACK_SOURCE = "trending_fallback"
_FALLBACK_SCORE = 0.8


class TrendingSource:
    """Collect recent, widely engaged posts inside a time window."""

    def __init__(self, retriever: MultiQueryRetriever) -> None:
        self.retriever = retriever

    async def retrieve(
        self,
        *,
        time_range: TimeRange,
        limit: int,
        score_threshold: float,
        now: datetime,
        deadline: float | None = None,
    ) -> RetrievalResult:
        if await self.retriever.is_ready(deadline=deadline):
            return await self.retriever.retrieve(
                [ExpandedQuery(text=text, role="primary") for text in TRENDING_QUERIES],
                content_types=("post",),
                filters=RetrievalFilters(time_range=time_range),
                score_threshold=score_threshold,
                deadline=deadline,
                now=now,
                ready=True,
            )

        logger.warning("Similarity backend not ready, ranking trending posts by engagement")
        lists, failures = await self.retriever.fan_out(
            [TRENDING_FALLBACK_SOURCE],
            [partial(self._engaging_posts, time_range, now, limit * 3, score_threshold)],
            deadline=deadline,
        )
        return RetrievalResult(lists=lists, search_type="fallback", failures=failures)

    def _engaging_posts(
        self, time_range: TimeRange, now: datetime, limit: int, score_threshold: float
    ) -> list[Candidate]:
        if _FALLBACK_SCORE < score_threshold:
            return []
        store_filter: dict[str, object] = {"order_by": "engagement"}
        cutoff = time_range_cutoff(time_range, now=now)
        if cutoff is not None:
            store_filter["created_after"] = cutoff
        records = self.retriever.metadata_store.find_many("post", store_filter, limit=limit)
        candidates: list[Candidate] = []
        for record in records:
            candidate = candidate_from_record(
                record,
                content_type="post",
                score=_FALLBACK_SCORE,
                source=TRENDING_FALLBACK_SOURCE,
            )
            if candidate is not None:
                candidates.append(candidate)
        return candidates
