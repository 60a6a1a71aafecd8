"""
Concurrent multi-query retrieval.

Each expanded query runs in its own worker thread with its own timeout. A
worker that fails or times out leaves an empty slot; the batch never fails
because of one query.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Mapping, Sequence

from ..backends import MetadataStore, SearchPoint, SimilarityBackend, collection_for
from ..embeddings import Embedder
from ..errors import BackendUnavailableError
from ..models import (
    CROSS_MODAL_TYPES,
    DEFAULT_SEARCH_TYPES,
    Candidate,
    ContentType,
    ExpandedQuery,
    RetrievalFilters,
    SearchType,
    clamp_unit,
)
from .filters import build_backend_filter

logger = logging.getLogger(__name__)

# Keyword matches carry no similarity, so each type gets a fixed base score.
FALLBACK_BASE_SCORES: dict[str, float] = {
    "post": 0.8,
    "comment": 0.75,
    "category": 0.7,
    "user": 0.6,
    "document": 0.65,
    "image": 0.65,
}

_RECORD_FIELDS = ("title", "body", "category_name", "comment_count", "vote_count")


@dataclass(frozen=True)
class RetrievalResult:
    """Per-query candidate lists, in the order the queries were given."""

    lists: list[list[Candidate]]
    search_type: SearchType
    failures: list[str] = field(default_factory=list)
    algorithms: list[str] = field(default_factory=list)


def normalize_scores(scores: Sequence[float]) -> list[float]:
    """Map one backend response into [0, 1].

    Scores already inside the range are kept. Otherwise the response is
    min-max scaled.
    """
    values = [0.0 if math.isnan(score) else float(score) for score in scores]
    if all(0.0 <= value <= 1.0 for value in values):
        return values
    low, high = min(values), max(values)
    if high == low:
        return [1.0 for _ in values]
    return [(value - low) / (high - low) for value in values]


def parse_timestamp(value: Any) -> datetime | None:
    """Best-effort conversion of a payload timestamp to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def candidate_from_record(
    record: Mapping[str, Any],
    *,
    content_type: ContentType,
    score: float,
    source: str,
    fallback_id: str | None = None,
) -> Candidate | None:
    """Build a Candidate from a store record; None when it has no usable id."""
    candidate_id = _optional_str(record.get("id")) or fallback_id
    if not candidate_id:
        logger.warning("Dropping %s record without an id from %s", content_type, source)
        return None
    metadata: dict[str, Any] = {}
    extra = record.get("metadata")
    if isinstance(extra, Mapping):
        metadata.update(extra)
    for name in _RECORD_FIELDS:
        if record.get(name) is not None:
            metadata[name] = record[name]
    return Candidate(
        id=candidate_id,
        content_type=content_type,
        raw_score=clamp_unit(score),
        sources=(source,),
        timestamp=parse_timestamp(record.get("created_at")),
        category=_optional_str(record.get("category_id")),
        author_id=_optional_str(record.get("author_id")),
        metadata=metadata,
    )


def _by_score(candidates: list[Candidate]) -> list[Candidate]:
    return sorted(candidates, key=lambda item: (-item.raw_score, item.content_type, item.id))


class MultiQueryRetriever:
    """Fan expanded queries out to the similarity backend or the keyword fallback."""

    def __init__(
        self,
        backend: SimilarityBackend,
        metadata_store: MetadataStore,
        embedder: Embedder | None,
        *,
        query_timeout: float = 2.0,
        per_query_limit: int = 20,
        max_workers: int = 7,
    ) -> None:
        self.backend = backend
        self.metadata_store = metadata_store
        self.embedder = embedder
        self.query_timeout = query_timeout
        self.per_query_limit = per_query_limit
        self.max_workers = max_workers

    async def is_ready(self, *, deadline: float | None = None) -> bool:
        """Check the similarity backend; any failure counts as not ready."""
        if self.embedder is None:
            return False
        timeout = self._budget(deadline)
        if timeout <= 0:
            return False
        try:
            return bool(
                await asyncio.wait_for(asyncio.to_thread(self.backend.is_ready), timeout)
            )
        except Exception as exc:
            logger.warning("Similarity backend readiness check failed: %r", exc)
            return False

    async def retrieve(
        self,
        queries: Sequence[ExpandedQuery],
        *,
        content_types: Sequence[ContentType] = DEFAULT_SEARCH_TYPES,
        filters: RetrievalFilters | None = None,
        score_threshold: float = 0.0,
        deadline: float | None = None,
        now: datetime | None = None,
        ready: bool | None = None,
    ) -> RetrievalResult:
        """Retrieve candidates for every query; *ready* skips the readiness check."""
        if len(queries) > self.max_workers:
            logger.warning(
                "Dropping %d queries beyond the %d worker bound",
                len(queries) - self.max_workers,
                self.max_workers,
            )
            queries = list(queries)[: self.max_workers]
        now = now or datetime.now(timezone.utc)

        jobs: list[Callable[[], list[Candidate]] | None]
        if ready is None:
            ready = await self.is_ready(deadline=deadline)
        if ready:
            search_type: SearchType = "vector"
            jobs = [
                partial(
                    self.vector_search,
                    query,
                    self._types_for(query, content_types),
                    filters,
                    score_threshold,
                    now,
                )
                for query in queries
            ]
        else:
            logger.warning("Similarity backend not ready, using keyword fallback")
            search_type = "fallback"
            # Expansion and cross-modal queries mean nothing without similarity search.
            jobs = [
                partial(
                    self._keyword_search,
                    query,
                    content_types,
                    filters,
                    score_threshold,
                    now,
                )
                if query.role == "primary"
                else None
                for query in queries
            ]

        lists, failures = await self.fan_out(
            [query.label for query in queries], jobs, deadline=deadline
        )
        logger.debug(
            "Retrieved %s candidates per query (%s)",
            [len(items) for items in lists],
            search_type,
        )
        return RetrievalResult(lists=lists, search_type=search_type, failures=failures)

    async def fan_out(
        self,
        labels: Sequence[str],
        jobs: Sequence[Callable[[], list[Candidate]] | None],
        *,
        deadline: float | None = None,
    ) -> tuple[list[list[Candidate]], list[str]]:
        """Run blocking jobs concurrently, one result slot per job."""
        slots: list[list[Candidate]] = [[] for _ in jobs]
        failures: list[str] = []
        tasks: dict[asyncio.Task[list[Candidate]], int] = {}
        for index, job in enumerate(jobs):
            if job is not None:
                tasks[asyncio.create_task(self._run_worker(job))] = index
        if not tasks:
            return slots, failures

        remaining = None
        if deadline is not None:
            remaining = max(deadline - asyncio.get_running_loop().time(), 0.0)
        _, pending = await asyncio.wait(tasks, timeout=remaining)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Request deadline hit with %d retrieval workers pending", len(pending))

        for task, index in tasks.items():
            if task in pending:
                failures.append(f"deadline:{labels[index]}")
                continue
            exc = task.exception()
            if exc is not None:
                logger.warning("Retrieval for %r failed: %r", labels[index], exc)
                failures.append(f"retrieval:{labels[index]}")
                continue
            slots[index] = task.result()
        return slots, failures

    async def _run_worker(self, job: Callable[[], list[Candidate]]) -> list[Candidate]:
        return await asyncio.wait_for(asyncio.to_thread(job), timeout=self.query_timeout)

    def _budget(self, deadline: float | None) -> float:
        if deadline is None:
            return self.query_timeout
        return min(self.query_timeout, deadline - asyncio.get_running_loop().time())

    @staticmethod
    def _types_for(
        query: ExpandedQuery, content_types: Sequence[ContentType]
    ) -> tuple[ContentType, ...]:
        if query.role != "cross-modal":
            return tuple(content_types)
        return tuple(dict.fromkeys([*content_types, *CROSS_MODAL_TYPES]))

    def embed_query(self, text: str) -> list[float]:
        if self.embedder is None:
            raise BackendUnavailableError("no embedder configured for similarity search")
        return self.embedder.embed(text, "query")

    def vector_search(
        self,
        query: ExpandedQuery,
        content_types: Sequence[ContentType],
        filters: RetrievalFilters | None,
        score_threshold: float,
        now: datetime,
        limit: int | None = None,
    ) -> list[Candidate]:
        """Blocking similarity search for one query across *content_types*."""
        vector = self.embed_query(query.text)
        candidates: list[Candidate] = []
        for content_type in content_types:
            backend_filter = build_backend_filter(filters, content_type=content_type, now=now)
            points = self.backend.search(
                collection=collection_for(content_type),
                query_vector=vector,
                limit=limit or self.per_query_limit,
                filter=backend_filter or None,
            )
            candidates.extend(
                self._points_to_candidates(points, content_type, query.label, score_threshold)
            )
        return _by_score(candidates)

    @staticmethod
    def _points_to_candidates(
        points: Sequence[SearchPoint],
        content_type: ContentType,
        source: str,
        score_threshold: float,
    ) -> list[Candidate]:
        candidates: list[Candidate] = []
        scores = normalize_scores([point.score for point in points])
        for point, score in zip(points, scores):
            if score < score_threshold:
                continue
            candidate = candidate_from_record(
                point.payload or {},
                content_type=content_type,
                score=score,
                source=source,
                fallback_id=point.id,
            )
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    def _keyword_search(
        self,
        query: ExpandedQuery,
        content_types: Sequence[ContentType],
        filters: RetrievalFilters | None,
        score_threshold: float,
        now: datetime,
    ) -> list[Candidate]:
        candidates: list[Candidate] = []
        for content_type in content_types:
            base_score = FALLBACK_BASE_SCORES.get(content_type, 0.65)
            if base_score < score_threshold:
                continue
            store_filter = build_backend_filter(filters, content_type=content_type, now=now)
            store_filter["contains"] = query.text
            records = self.metadata_store.find_many(
                content_type, store_filter, limit=self.per_query_limit
            )
            for record in records:
                candidate = candidate_from_record(
                    record,
                    content_type=content_type,
                    score=base_score,
                    source=query.label,
                )
                if candidate is not None:
                    candidates.append(candidate)
        return _by_score(candidates)
