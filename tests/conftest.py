"""Shared fakes for the discovery engine tests."""

from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from google.genai.types import (
    Candidate as GenAICandidate,
    Content,
    GenerateContentResponse,
    HttpOptions,
    Part,
)

from discovery_engine.backends import INTERACTION_KIND, SearchPoint
from discovery_engine.models import Candidate, ScoredCandidate

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


# ---------------------------------------------------------------------------
# GenAI client mocks
# ---------------------------------------------------------------------------


class MockModels:
    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        self.payload = payload or {}
        self.calls: list[dict[str, Any]] = []

    async def generate_content(self, *args, **kwargs) -> GenerateContentResponse:
        self.calls.append(kwargs)
        return GenerateContentResponse(
            candidates=[
                GenAICandidate(
                    content=Content(
                        role="model",
                        parts=[Part.from_text(text=json.dumps(self.payload))],
                    )
                )
            ]
        )


class MockAio:
    def __init__(self, models: MockModels) -> None:
        self.models = models


class MockGenAIClient:
    def __init__(
        self,
        api_key: str = "",
        http_options: HttpOptions | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.aio = MockAio(MockModels(payload))


# ---------------------------------------------------------------------------
# Engine collaborators
# ---------------------------------------------------------------------------


class FakeEmbedder:
    """Encodes each distinct text as a one-element vector holding its index."""

    def __init__(self) -> None:
        self.texts: list[str] = []

    def embed(self, text: str, role: str = "query") -> list[float]:
        if text not in self.texts:
            self.texts.append(text)
        return [float(self.texts.index(text))]

    def text_for(self, vector: list[float]) -> str:
        return self.texts[int(vector[0])]


class FakeBackend:
    """Similarity backend answering from a (collection, query text) table."""

    def __init__(
        self,
        embedder: FakeEmbedder,
        hits: dict[tuple[str, str], list[SearchPoint]] | None = None,
        *,
        ready: bool = True,
        slow: dict[str, float] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.embedder = embedder
        self.hits = hits or {}
        self.ready = ready
        self.slow = slow or {}
        self.failing = failing or set()
        self.calls: list[dict[str, Any]] = []

    def is_ready(self) -> bool:
        return self.ready

    def search(
        self,
        *,
        collection: str,
        query_vector: list[float],
        limit: int,
        filter: dict[str, Any] | None = None,
    ) -> list[SearchPoint]:
        text = self.embedder.text_for(query_vector)
        self.calls.append({"collection": collection, "text": text, "filter": filter})
        if text in self.slow:
            time.sleep(self.slow[text])
        if text in self.failing:
            raise ConnectionError(f"backend unavailable for {text!r}")
        points = [
            point
            for point in self.hits.get((collection, text), [])
            if _payload_matches(point.payload, point.id, filter or {})
        ]
        return points[:limit]


class FakeStore:
    """In-memory MetadataStore over plain record dicts."""

    def __init__(
        self,
        records: dict[str, list[dict[str, Any]]] | None = None,
        interactions: list[dict[str, Any]] | None = None,
        *,
        failing: bool = False,
    ) -> None:
        self.records = records or {}
        self.interactions = interactions or []
        self.failing = failing
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def find_many(
        self,
        content_type: str,
        filter: dict[str, Any] | None = None,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        filter = dict(filter or {})
        self.calls.append((content_type, filter))
        if self.failing:
            raise ConnectionError("metadata store unavailable")
        if content_type == INTERACTION_KIND:
            rows = [
                row
                for row in self.interactions
                if ("user_id" not in filter or row["user_id"] == filter["user_id"])
                and ("kinds" not in filter or row["kind"] in filter["kinds"])
            ]
            rows.sort(key=lambda row: row.get("created_at") or NOW, reverse=True)
            return rows[offset : offset + limit]

        order_by = filter.pop("order_by", "recent")
        rows = [
            record
            for record in self.records.get(content_type, [])
            if _payload_matches(record, record.get("id"), filter)
        ]
        if order_by == "engagement":
            rows.sort(
                key=lambda r: (r.get("comment_count", 0) * 2 + r.get("vote_count", 0)),
                reverse=True,
            )
        else:
            rows.sort(key=lambda r: r.get("created_at") or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return rows[offset : offset + limit]


def _payload_matches(payload: dict[str, Any], point_id: Any, filter: dict[str, Any]) -> bool:
    record_id = str(payload.get("id") or point_id)
    if "ids" in filter and record_id not in filter["ids"]:
        return False
    if record_id in filter.get("exclude_ids", []):
        return False
    if "exclude_author_id" in filter and payload.get("author_id") == filter["exclude_author_id"]:
        return False
    if "author_id" in filter and payload.get("author_id") != filter["author_id"]:
        return False
    if "category_id" in filter and payload.get("category_id") != filter["category_id"]:
        return False
    if "created_after" in filter:
        created_at = payload.get("created_at")
        if created_at is None or created_at < filter["created_after"]:
            return False
    if "contains" in filter:
        needle = str(filter["contains"]).lower()
        haystack = f"{payload.get('title', '')} {payload.get('body', '')}".lower()
        if needle not in haystack:
            return False
    return True


class FakeLanguageService:
    """Scripted LanguageService; an Exception payload is raised instead of returned."""

    def __init__(
        self,
        expansion: Any = None,
        ranking: Any = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self.expansion = expansion if expansion is not None else {}
        self.ranking = ranking if ranking is not None else {}
        self.delay = delay
        self.expand_calls: list[str] = []
        self.rerank_calls: list[list[Any]] = []

    async def expand_query(self, query, context):
        self.expand_calls.append(query)
        return await self._answer(self.expansion)

    async def rerank(self, query, candidates, context):
        self.rerank_calls.append(list(candidates))
        return await self._answer(self.ranking)

    async def _answer(self, value: Any) -> Any:
        if self.delay:
            import asyncio

            await asyncio.sleep(self.delay)
        if isinstance(value, Exception):
            raise value
        return value


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def record(
    record_id: str,
    *,
    title: str = "",
    body: str = "",
    category_id: str | None = None,
    category_name: str | None = None,
    author_id: str | None = None,
    hours_ago: float | None = 1.0,
    comment_count: int = 0,
    vote_count: int = 0,
) -> dict[str, Any]:
    return {
        "id": record_id,
        "title": title or f"Title {record_id}",
        "body": body,
        "category_id": category_id,
        "category_name": category_name,
        "author_id": author_id,
        "created_at": NOW - timedelta(hours=hours_ago) if hours_ago is not None else None,
        "comment_count": comment_count,
        "vote_count": vote_count,
    }


def point(score: float, payload: dict[str, Any]) -> SearchPoint:
    return SearchPoint(id=payload["id"], score=score, payload=payload)


@pytest.fixture
def make_candidate() -> Callable[..., Candidate]:
    def _make(
        candidate_id: str,
        score: float = 0.5,
        *,
        content_type: str = "post",
        sources: tuple[str, ...] = ("primary:q",),
        category: str | None = None,
        author_id: str | None = None,
        hours_ago: float | None = None,
        **metadata: Any,
    ) -> Candidate:
        timestamp = NOW - timedelta(hours=hours_ago) if hours_ago is not None else None
        return Candidate(
            id=candidate_id,
            content_type=content_type,
            raw_score=score,
            sources=sources,
            timestamp=timestamp,
            category=category,
            author_id=author_id,
            metadata=metadata,
        )

    return _make


@pytest.fixture
def make_scored(make_candidate) -> Callable[..., ScoredCandidate]:
    def _make(candidate_id: str, score: float = 0.5, *, held_back: bool = False, **kwargs: Any) -> ScoredCandidate:
        return ScoredCandidate(
            candidate=make_candidate(candidate_id, score, **kwargs),
            score=score,
            held_back=held_back,
        )

    return _make
