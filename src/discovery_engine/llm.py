"""
Text-understanding service used for query expansion and reranking.

Responses are untrusted JSON. ``ExpansionPayload`` and ``RerankPayload``
parse them leniently: a malformed field becomes empty, an unparseable
document raises ``ValueError``.
"""

from __future__ import annotations

import json
import math
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from google.genai import Client as GenAIClient
from google.genai.types import HttpOptions
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import QueryContext


_DEFAULT_MODEL = "gemini-2.0-flash"

EXPANSION_PROMPT = """
You are a search query expert. Generate enhanced search queries for better vector search results.

Original Query: "{query}"
Search Mode: {search_mode}
User Interests: {interests}
Previous Queries: {previous}

Respond with a JSON object containing:
1. enhancedQueries: 3-5 improved versions of the original query with better semantic richness
2. semanticExpansions: 3-5 queries that expand the meaning to related concepts
3. crossModalQueries: 3-5 queries aimed at images, documents and other media about the topic
4. reasoning: a brief explanation of the enhancement strategy

Prefer domain terminology over generic words. Return only valid JSON.
"""

RERANK_PROMPT = """
Analyze and rerank the following search results for the query "{query}".

User Interests: {interests}

Results to rank:
{results}

Respond with a JSON object containing:
- rankedIds: array of result IDs in the best order
- qualityScores: object mapping result ID to a quality score between 0 and 1
- reasoning: a brief explanation of the ranking

Consider relevance to the query, content quality, user interests and information value.
Return only valid JSON.
"""


@dataclass(frozen=True)
class RerankItem:
    """Candidate summary sent to the reranking service."""

    id: str
    title: str
    score: float
    excerpt: str


class LanguageService(Protocol):
    """Operations the engine consumes from a text-understanding service."""

    async def expand_query(self, query: str, context: QueryContext) -> str | Mapping[str, Any]:
        """Return a raw expansion payload for *query*."""

    async def rerank(
        self, query: str, candidates: list[RerankItem], context: QueryContext
    ) -> str | Mapping[str, Any]:
        """Return a raw rerank payload for *candidates*."""


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    items: list[str] = []
    for item in value:
        if isinstance(item, (str, int)) and not isinstance(item, bool):
            text = str(item).strip()
            if text:
                items.append(text)
    return items


class ExpansionPayload(BaseModel):
    """Expected shape of a query expansion response."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enhanced_queries: list[str] = Field(default_factory=list, alias="enhancedQueries")
    semantic_expansions: list[str] = Field(
        default_factory=list, alias="semanticExpansions"
    )
    cross_modal_queries: list[str] = Field(
        default_factory=list, alias="crossModalQueries"
    )
    reasoning: str = ""

    @field_validator(
        "enhanced_queries", "semantic_expansions", "cross_modal_queries", mode="before"
    )
    @classmethod
    def _coerce_queries(cls, value: Any) -> list[str]:
        return _string_list(value)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _coerce_reasoning(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""


class RerankPayload(BaseModel):
    """Expected shape of a rerank response."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ranked_ids: list[str] = Field(default_factory=list, alias="rankedIds")
    quality_scores: dict[str, float] = Field(
        default_factory=dict, alias="qualityScores"
    )
    reasoning: str = ""

    @field_validator("ranked_ids", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> list[str]:
        return _string_list(value)

    @field_validator("quality_scores", mode="before")
    @classmethod
    def _coerce_scores(cls, value: Any) -> dict[str, float]:
        if not isinstance(value, Mapping):
            return {}
        scores: dict[str, float] = {}
        for key, raw in value.items():
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                continue
            if math.isnan(raw):
                continue
            scores[str(key)] = min(max(float(raw), 0.0), 1.0)
        return scores

    @field_validator("reasoning", mode="before")
    @classmethod
    def _coerce_reasoning(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""


PayloadT = TypeVar("PayloadT", bound=BaseModel)


def parse_payload(model: type[PayloadT], raw: str | bytes | Mapping[str, Any]) -> PayloadT:
    """Validate an untrusted service response against *model*."""
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Response is not valid JSON: {exc}") from exc
    else:
        data = raw
    if not isinstance(data, Mapping):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return model.model_validate(dict(data))


def build_expansion_prompt(query: str, context: QueryContext) -> str:
    return EXPANSION_PROMPT.format(
        query=query,
        search_mode=context.search_mode,
        interests=", ".join(context.user_interests) or "None specified",
        previous=", ".join(context.previous_queries[-3:]) or "None",
    )


def build_rerank_prompt(
    query: str, candidates: list[RerankItem], context: QueryContext
) -> str:
    lines = [
        f"{index}. ID: {item.id} | Title: {item.title or 'No title'} | "
        f"Score: {item.score:.3f} | Content: {item.excerpt}"
        for index, item in enumerate(candidates, start=1)
    ]
    return RERANK_PROMPT.format(
        query=query,
        interests=", ".join(context.user_interests) or "General",
        results="\n".join(lines),
    )


class GeminiLanguageService:
    """LanguageService backed by Google GenAI structured JSON output."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model or os.getenv("DISCOVERY_LLM_MODEL", _DEFAULT_MODEL)
        if client is not None:
            self._client = client
            return
        if api_key is None:
            api_key = os.getenv("GOOGLE_API_KEY")
        if api_key is None:
            raise ValueError(
                "GOOGLE_API_KEY not found within the current environment: please export it or provide it to the class constructor."
            )
        self._client = GenAIClient(
            api_key=api_key, http_options=HttpOptions(api_version="v1beta")
        )

    async def expand_query(self, query: str, context: QueryContext) -> str:
        return await self._generate(
            build_expansion_prompt(query, context), ExpansionPayload
        )

    async def rerank(
        self, query: str, candidates: list[RerankItem], context: QueryContext
    ) -> str:
        return await self._generate(
            build_rerank_prompt(query, candidates, context), RerankPayload
        )

    async def _generate(self, prompt: str, schema: type[BaseModel]) -> str:
        response = await self._client.aio.models.generate_content(
            model=self.model,
            contents=prompt,
            config={
                "response_mime_type": "application/json",
                "response_json_schema": schema.model_json_schema(),
            },
        )
        if response.text is None:
            raise ValueError("Language service returned an empty response")
        return response.text
