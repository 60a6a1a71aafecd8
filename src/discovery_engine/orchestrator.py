"""
Discovery pipeline as a workflow.

Expanding -> Retrieving -> Fusing -> Filtering -> Scoring -> Reranking -> Done

Expanding and Reranking degrade to identity/no-op results. Retrieval degrades
per sub-query. Fusing, Filtering and Scoring are in-memory computations, so
any exception they raise propagates to the caller.
"""

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Callable, Literal

from pydantic import BaseModel, Field
from workflows import Context, Workflow, step
from workflows.events import Event, StartEvent, StopEvent

from .config import EngineSettings
from .errors import InvariantViolationError
from .models import (
    DEFAULT_SEARCH_TYPES,
    Candidate,
    ContentType,
    DiscoveryResponse,
    ExpandedQuery,
    QueryContext,
    RankedResult,
    RankingConfig,
    RetrievalFilters,
    ScoredCandidate,
    TimeRange,
)
from .recommend import ProfileRetriever, UserProfile, explain_recommendation
from .search.diversity import DiversityFilter
from .search.expansion import QueryExpander, identity_expansion
from .search.fusion import fuse_candidates
from .search.rerank import Reranker
from .search.retrieval import MultiQueryRetriever, RetrievalResult
from .search.scoring import (
    RecencyEngagementScorer,
    TrendingScorer,
    by_recency,
    reorder_within_tiers,
)
from .search.serendipity import SerendipityInjector
from .trending import TrendingSource

logger = logging.getLogger(__name__)

Mode = Literal["search", "recommend", "trending"]

_RECOMMENDATION_RERANK_QUERY = "content this user is most likely to enjoy"


class DiscoveryState(BaseModel):
    mode: Mode = "search"
    query: str = ""
    user_id: str = ""
    config: RankingConfig = Field(default_factory=RankingConfig)
    query_context: QueryContext = Field(default_factory=QueryContext)
    filters: RetrievalFilters = Field(default_factory=RetrievalFilters)
    deadline: float = 0.0
    now: datetime | None = None
    profile: UserProfile | None = None
    search_type: str = "vector"
    queries: list[ExpandedQuery] = Field(default_factory=list)
    expansion_applied: bool = False
    expansion_reasoning: str = ""
    diversity_applied: bool = False
    serendipity_applied: bool = False
    algorithms_used: list[str] = Field(default_factory=list)
    degraded: list[str] = Field(default_factory=list)
    timings_ms: dict[str, float] = Field(default_factory=dict)


class DiscoveryStartEvent(StartEvent):
    mode: Mode
    config: RankingConfig = Field(default_factory=RankingConfig)
    query: str = ""
    user_id: str = ""
    query_context: QueryContext = Field(default_factory=QueryContext)
    filters: RetrievalFilters = Field(default_factory=RetrievalFilters)
    content_types: list[ContentType] = Field(
        default_factory=lambda: list(DEFAULT_SEARCH_TYPES)
    )
    time_range: TimeRange = "week"


class ProgressEvent(Event):
    stage: str
    detail: str


class QueryReceivedEvent(Event):
    query: str
    content_types: list[ContentType]


class QueriesExpandedEvent(Event):
    queries: list[ExpandedQuery]
    content_types: list[ContentType]


class ProfileRequestedEvent(Event):
    user_id: str


class TrendingRequestedEvent(Event):
    time_range: TimeRange


class CandidatesRetrievedEvent(Event):
    lists: list[list[Candidate]]


class CandidatesFusedEvent(Event):
    candidates: list[Candidate]


class CandidatesFilteredEvent(Event):
    scored: list[ScoredCandidate]


class CandidatesScoredEvent(Event):
    scored: list[ScoredCandidate]


class DiscoveryEndEvent(StopEvent):
    response: DiscoveryResponse


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def explain_search(candidate: Candidate, query: str) -> str:
    roles = {source.split(":", 1)[0] for source in candidate.sources}
    if "primary" in roles:
        return f"Strong match for '{query}'"
    count = len(candidate.sources)
    noun = "query" if count == 1 else "queries"
    return f"Related to '{query}' via {count} expanded {noun}"


def explain_trending(candidate: Candidate) -> str:
    name = candidate.category_name
    return f"Trending in {name}" if name else "Trending now"


class DiscoveryWorkflow(Workflow):
    """Query search, recommendation and trending over injected collaborators."""

    def __init__(
        self,
        *,
        expander: QueryExpander,
        retriever: MultiQueryRetriever,
        reranker: Reranker,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.expander = expander
        self.retriever = retriever
        self.profiles = ProfileRetriever(retriever)
        self.trending = TrendingSource(retriever)
        self.reranker = reranker
        self.settings = settings or EngineSettings()
        self.clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Setup and Expanding
    # ------------------------------------------------------------------

    @step
    async def start_request(
        self, ev: DiscoveryStartEvent, ctx: Context[DiscoveryState]
    ) -> QueryReceivedEvent | ProfileRequestedEvent | TrendingRequestedEvent:
        loop = asyncio.get_running_loop()
        async with ctx.store.edit_state() as state:
            state.mode = ev.mode
            state.query = ev.query
            state.user_id = ev.user_id
            state.config = ev.config
            state.query_context = ev.query_context
            state.filters = ev.filters
            state.deadline = loop.time() + self.settings.request_timeout
            state.now = self.clock()
        if ev.mode == "recommend":
            return ProfileRequestedEvent(user_id=ev.user_id)
        if ev.mode == "trending":
            return TrendingRequestedEvent(time_range=ev.time_range)
        return QueryReceivedEvent(query=ev.query, content_types=list(ev.content_types))

    @step
    async def expand_query(
        self, ev: QueryReceivedEvent, ctx: Context[DiscoveryState]
    ) -> QueriesExpandedEvent:
        state = await ctx.store.get_state()
        config = state.config
        started = _now()
        if config.enable_query_expansion:
            expansion = await self.expander.expand(
                ev.query,
                state.query_context,
                include_semantic=config.enable_semantic_expansion,
                include_cross_modal=config.enable_cross_modal,
                timeout=_remaining(state.deadline),
            )
        else:
            expansion = identity_expansion(ev.query)

        async with ctx.store.edit_state() as state:
            state.queries = list(expansion.queries)
            state.expansion_applied = expansion.applied
            state.expansion_reasoning = expansion.reasoning
            if expansion.failed:
                state.degraded.append("expansion")
            state.timings_ms["expansion"] = _elapsed_ms(started)
        ctx.write_event_to_stream(
            ProgressEvent(
                stage="expanding",
                detail=f"{len(expansion.queries)} queries",
            )
        )
        return QueriesExpandedEvent(
            queries=list(expansion.queries), content_types=ev.content_types
        )

    # ------------------------------------------------------------------
    # Retrieving
    # ------------------------------------------------------------------

    @step
    async def retrieve_for_query(
        self, ev: QueriesExpandedEvent, ctx: Context[DiscoveryState]
    ) -> CandidatesRetrievedEvent:
        state = await ctx.store.get_state()
        started = _now()
        result = await self.retriever.retrieve(
            ev.queries,
            content_types=ev.content_types,
            filters=state.filters,
            score_threshold=state.config.score_threshold,
            deadline=state.deadline,
            now=state.now,
        )
        algorithms = ["semantic_search" if result.search_type == "vector" else "keyword_fallback"]
        return await self._retrieved(ctx, result, algorithms, started)

    @step
    async def retrieve_for_user(
        self, ev: ProfileRequestedEvent, ctx: Context[DiscoveryState]
    ) -> CandidatesRetrievedEvent:
        state = await ctx.store.get_state()
        config = state.config
        started = _now()
        profile: UserProfile | None = None
        degraded: list[str] = []
        budget = min(self.retriever.query_timeout, _remaining(state.deadline))
        if budget > 0:
            try:
                profile = await asyncio.wait_for(
                    asyncio.to_thread(
                        self.profiles.load_profile,
                        ev.user_id,
                        time_decay_factor=config.time_decay_factor,
                        now=state.now or self.clock(),
                    ),
                    timeout=budget,
                )
            except Exception as exc:
                logger.warning("Could not load profile for user %s: %r", ev.user_id, exc)
                degraded.append("profile")
        else:
            degraded.append("deadline:profile")

        result = await self.profiles.retrieve(
            ev.user_id,
            profile,
            algorithm=config.algorithm,
            limit=config.limit,
            score_threshold=config.score_threshold,
            deadline=state.deadline,
        )
        async with ctx.store.edit_state() as state:
            state.profile = profile
            state.degraded.extend(degraded)
        return await self._retrieved(ctx, result, result.algorithms, started)

    @step
    async def retrieve_trending(
        self, ev: TrendingRequestedEvent, ctx: Context[DiscoveryState]
    ) -> CandidatesRetrievedEvent:
        state = await ctx.store.get_state()
        started = _now()
        result = await self.trending.retrieve(
            time_range=ev.time_range,
            limit=state.config.limit,
            score_threshold=state.config.score_threshold,
            now=state.now or self.clock(),
            deadline=state.deadline,
        )
        algorithms = ["trending" if result.search_type == "vector" else "engagement_fallback"]
        return await self._retrieved(ctx, result, algorithms, started)

    async def _retrieved(
        self,
        ctx: Context[DiscoveryState],
        result: RetrievalResult,
        algorithms: list[str],
        started: float,
    ) -> CandidatesRetrievedEvent:
        async with ctx.store.edit_state() as state:
            state.search_type = result.search_type
            state.algorithms_used = list(algorithms)
            state.degraded.extend(result.failures)
            state.timings_ms["retrieval"] = _elapsed_ms(started)
        total = sum(len(items) for items in result.lists)
        ctx.write_event_to_stream(
            ProgressEvent(
                stage="retrieving",
                detail=f"{total} candidates from {len(result.lists)} paths ({result.search_type})",
            )
        )
        return CandidatesRetrievedEvent(lists=result.lists)

    # ------------------------------------------------------------------
    # Fusing, Filtering, Scoring
    # ------------------------------------------------------------------

    @step
    async def fuse(
        self, ev: CandidatesRetrievedEvent, ctx: Context[DiscoveryState]
    ) -> CandidatesFusedEvent:
        started = _now()
        fused = fuse_candidates(ev.lists)
        async with ctx.store.edit_state() as state:
            state.timings_ms["fusion"] = _elapsed_ms(started)
        logger.debug("Fused %d candidates", len(fused))
        return CandidatesFusedEvent(candidates=fused)

    @step
    async def filter_diversity(
        self, ev: CandidatesFusedEvent, ctx: Context[DiscoveryState]
    ) -> CandidatesFilteredEvent:
        state = await ctx.store.get_state()
        config = state.config
        started = _now()
        diversity = DiversityFilter(
            config.diversity_threshold,
            limit=config.limit,
            keys=config.diversity_keys,
        )
        items = diversity.apply(ev.candidates, enforce=config.enable_diversity_filtering)
        async with ctx.store.edit_state() as state:
            state.diversity_applied = config.enable_diversity_filtering
            state.timings_ms["diversity"] = _elapsed_ms(started)
        return CandidatesFilteredEvent(scored=items)

    @step
    async def score(
        self, ev: CandidatesFilteredEvent, ctx: Context[DiscoveryState]
    ) -> CandidatesScoredEvent:
        state = await ctx.store.get_state()
        config = state.config
        now = state.now or self.clock()
        started = _now()
        items = list(ev.scored)

        if state.mode == "trending":
            items = TrendingScorer(
                relevance_weight=config.trending_relevance_weight,
                engagement_calibration=config.engagement_calibration,
                now=now,
            ).apply(items)
        elif _recency_enabled(config, state.mode):
            items = RecencyEngagementScorer(
                time_decay_factor=config.time_decay_factor,
                engagement_weight=config.engagement_weight,
                engagement_calibration=config.engagement_calibration,
                now=now,
            ).apply(items)
        if state.mode == "search" and state.filters.sort == "new":
            items = reorder_within_tiers(items, by_recency)

        serendipity_applied = False
        if config.enable_serendipity and config.serendipity_factor > 0:
            injector = SerendipityInjector(
                factor=config.serendipity_factor,
                score_threshold=config.score_threshold,
                limit=config.limit,
                rng=random.Random(config.seed),
            )
            items = injector.apply(items)
            serendipity_applied = any(item.serendipitous for item in items)

        async with ctx.store.edit_state() as state:
            state.serendipity_applied = serendipity_applied
            state.timings_ms["scoring"] = _elapsed_ms(started)
        return CandidatesScoredEvent(scored=items)

    # ------------------------------------------------------------------
    # Reranking and Done
    # ------------------------------------------------------------------

    @step
    async def rerank(
        self, ev: CandidatesScoredEvent, ctx: Context[DiscoveryState]
    ) -> DiscoveryEndEvent:
        state = await ctx.store.get_state()
        config = state.config
        items = list(ev.scored)
        reranking_applied = False
        degraded: list[str] = []
        if config.enable_reranking and items:
            started = _now()
            context = state.query_context
            if state.profile is not None and not context.user_interests:
                context = context.model_copy(
                    update={"user_interests": state.profile.interests}
                )
            outcome = await self.reranker.rerank(
                state.query or _RECOMMENDATION_RERANK_QUERY,
                items,
                top_n=config.rerank_top_n,
                context=context,
                timeout=_remaining(state.deadline),
            )
            items = outcome.items
            reranking_applied = outcome.applied
            if outcome.failed:
                degraded.append("rerank")
            async with ctx.store.edit_state() as state:
                state.timings_ms["rerank"] = _elapsed_ms(started)

        state = await ctx.store.get_state()
        results = [
            self._to_ranked(item, rank, state)
            for rank, item in enumerate(items[: config.limit], start=1)
        ]
        response = DiscoveryResponse(
            results=results,
            search_type=state.search_type,
            queries=list(state.queries),
            expansion_applied=state.expansion_applied,
            expansion_reasoning=state.expansion_reasoning,
            reranking_applied=reranking_applied,
            diversity_applied=state.diversity_applied,
            serendipity_applied=state.serendipity_applied,
            algorithms_used=list(state.algorithms_used),
            degraded=[*state.degraded, *degraded],
            timings_ms=dict(state.timings_ms),
        )
        return DiscoveryEndEvent(response=response)

    def _to_ranked(
        self, item: ScoredCandidate, rank: int, state: DiscoveryState
    ) -> RankedResult:
        if not 0.0 <= item.score <= 1.0:
            raise InvariantViolationError(
                f"final score {item.score} of {item.candidate.ref} is outside [0, 1]"
            )
        candidate = item.candidate
        if item.serendipitous:
            name = candidate.category_name
            reason = f"Something different in {name}" if name else "Something different"
        elif state.mode == "recommend":
            reason = explain_recommendation(candidate, state.profile)
        elif state.mode == "trending":
            reason = explain_trending(candidate)
        else:
            reason = explain_search(candidate, state.query)
        return RankedResult(
            candidate=candidate,
            final_score=item.score,
            diversity_score=item.diversity_score,
            rank=rank,
            reason=reason,
            serendipitous=item.serendipitous,
            rerank_quality_score=item.quality_score,
        )


def _recency_enabled(config: RankingConfig, mode: Mode) -> bool:
    if config.recency_scoring == "auto":
        return mode != "search"
    return config.recency_scoring == "on"


def _now() -> float:
    return asyncio.get_running_loop().time()


def _remaining(deadline: float) -> float:
    return deadline - _now()


def _elapsed_ms(started: float) -> float:
    return round((_now() - started) * 1000.0, 3)
