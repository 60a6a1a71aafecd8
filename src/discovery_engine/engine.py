"""
Public entry points for query search, recommendation, trending and topics.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from .backends import MetadataStore, SimilarityBackend
from .config import EngineSettings
from .embeddings import Embedder
from .errors import InvalidRequestError
from .llm import LanguageService
from .models import (
    CONTENT_TYPES,
    DEFAULT_SEARCH_TYPES,
    ContentType,
    DiscoveryResponse,
    QueryContext,
    RankingConfig,
    RetrievalFilters,
    TimeRange,
    parse_ranking_config,
)
from .orchestrator import DiscoveryStartEvent, DiscoveryWorkflow
from .search import MultiQueryRetriever, QueryExpander, Reranker
from .topics import TOPIC_SEEDS, TopicClusterer, TopicsResponse

logger = logging.getLogger(__name__)

_TIME_RANGES = ("day", "week", "month", "year", "all")


class DiscoveryEngine:
    """
    Wires the injected backends into a DiscoveryWorkflow.

    Example:
        >>> engine = DiscoveryEngine(store, store, embedder=EmbeddingProvider())
        >>> response = await engine.search("home espresso setups")
        >>> [result.id for result in response.results]
    """

    def __init__(
        self,
        backend: SimilarityBackend,
        metadata_store: MetadataStore,
        embedder: Embedder | None = None,
        language_service: LanguageService | None = None,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.retriever = MultiQueryRetriever(
            backend,
            metadata_store,
            embedder,
            query_timeout=self.settings.query_timeout,
            per_query_limit=self.settings.per_query_limit,
            max_workers=self.settings.max_workers,
        )
        self.expander = QueryExpander(
            language_service,
            max_queries=self.settings.max_expansions,
            max_cross_modal=self.settings.max_cross_modal,
            timeout=self.settings.llm_timeout,
        )
        self.reranker = Reranker(language_service, timeout=self.settings.llm_timeout)
        self.clock = clock

    def _workflow(self) -> DiscoveryWorkflow:
        # Headroom past the request deadline for the final in-memory stages.
        return DiscoveryWorkflow(
            expander=self.expander,
            retriever=self.retriever,
            reranker=self.reranker,
            settings=self.settings,
            clock=self.clock,
            timeout=self.settings.request_timeout + self.settings.llm_timeout + 5.0,
        )

    def start_search(
        self,
        query: str,
        config: RankingConfig | Mapping[str, Any] | None = None,
        *,
        context: QueryContext | None = None,
        filters: RetrievalFilters | None = None,
        content_types: Sequence[ContentType] | None = None,
    ):
        """Start a search and return the handler, for callers that stream progress."""
        query = (query or "").strip()
        if not query:
            raise InvalidRequestError("query must not be empty")
        types = list(content_types or DEFAULT_SEARCH_TYPES)
        unknown = [kind for kind in types if kind not in CONTENT_TYPES]
        if unknown:
            raise InvalidRequestError(f"Unknown content types: {', '.join(unknown)}")
        start = DiscoveryStartEvent(
            mode="search",
            query=query,
            config=parse_ranking_config(config),
            query_context=context or QueryContext(),
            filters=filters or RetrievalFilters(),
            content_types=types,
        )
        logger.info("Searching for %r over %s", query, types)
        return self._workflow().run(start_event=start)

    def start_recommend(
        self,
        user_id: str,
        config: RankingConfig | Mapping[str, Any] | None = None,
    ):
        user_id = (user_id or "").strip()
        if not user_id:
            raise InvalidRequestError("user_id must not be empty")
        start = DiscoveryStartEvent(
            mode="recommend",
            user_id=user_id,
            config=parse_ranking_config(config),
        )
        logger.info("Recommending for user %s", user_id)
        return self._workflow().run(start_event=start)

    def start_trending(
        self,
        config: RankingConfig | Mapping[str, Any] | None = None,
        *,
        time_range: TimeRange = "week",
    ):
        if time_range not in _TIME_RANGES:
            raise InvalidRequestError(f"Unknown time range: {time_range}")
        start = DiscoveryStartEvent(
            mode="trending",
            time_range=time_range,
            config=parse_ranking_config(config),
        )
        logger.info("Collecting trending content for the last %s", time_range)
        return self._workflow().run(start_event=start)

    async def search(
        self,
        query: str,
        config: RankingConfig | Mapping[str, Any] | None = None,
        *,
        context: QueryContext | None = None,
        filters: RetrievalFilters | None = None,
        content_types: Sequence[ContentType] | None = None,
    ) -> DiscoveryResponse:
        handler = self.start_search(
            query, config, context=context, filters=filters, content_types=content_types
        )
        result = await handler
        return result.response

    async def recommend(
        self,
        user_id: str,
        config: RankingConfig | Mapping[str, Any] | None = None,
    ) -> DiscoveryResponse:
        result = await self.start_recommend(user_id, config)
        return result.response

    async def trending(
        self,
        config: RankingConfig | Mapping[str, Any] | None = None,
        *,
        time_range: TimeRange = "week",
    ) -> DiscoveryResponse:
        result = await self.start_trending(config, time_range=time_range)
        return result.response

    async def topics(
        self,
        *,
        time_range: TimeRange = "month",
        limit: int = 10,
        min_posts: int = 3,
    ) -> TopicsResponse:
        """Group recent posts into the seed topics that have enough of them."""
        if time_range not in _TIME_RANGES:
            raise InvalidRequestError(f"Unknown time range: {time_range}")
        if not 1 <= limit <= 100:
            raise InvalidRequestError(f"limit must be between 1 and 100, got {limit}")
        if min_posts < 1:
            raise InvalidRequestError(f"min_posts must be at least 1, got {min_posts}")
        deadline = asyncio.get_running_loop().time() + self.settings.request_timeout
        now = self.clock() if self.clock else datetime.now(timezone.utc)
        logger.info("Clustering topics over the last %s", time_range)
        return await TopicClusterer(self.retriever, TOPIC_SEEDS).discover(
            time_range=time_range,
            limit=limit,
            min_posts=min_posts,
            now=now,
            deadline=deadline,
        )
