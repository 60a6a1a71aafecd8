"""
Value types shared by every stage of the discovery pipeline.

Candidates are validated once, when a retrieval path builds them. Later
stages trust them and only produce new values.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidRequestError, InvariantViolationError

ContentType: TypeAlias = Literal[
    "post", "comment", "category", "user", "document", "image"
]
QueryRole: TypeAlias = Literal["primary", "semantic-expansion", "cross-modal"]
Algorithm: TypeAlias = Literal["collaborative", "content", "hybrid"]
SearchMode: TypeAlias = Literal["broad", "specific", "creative"]
TimeRange: TypeAlias = Literal["day", "week", "month", "year", "all"]
SortOrder: TypeAlias = Literal["relevance", "new"]
DiversityKey: TypeAlias = Literal["category", "author"]
RecencyScoring: TypeAlias = Literal["auto", "on", "off"]
SearchType: TypeAlias = Literal["vector", "fallback", "personalized"]

CONTENT_TYPES: tuple[ContentType, ...] = (
    "post",
    "comment",
    "category",
    "user",
    "document",
    "image",
)
DEFAULT_SEARCH_TYPES: tuple[ContentType, ...] = ("post", "comment", "category")
CROSS_MODAL_TYPES: tuple[ContentType, ...] = ("document", "image")


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]; NaN becomes 0."""
    if math.isnan(value):
        return 0.0
    return min(max(float(value), 0.0), 1.0)


@dataclass(frozen=True)
class Candidate:
    """A single retrieved content item before final ranking."""

    id: str
    content_type: ContentType
    raw_score: float
    sources: tuple[str, ...]
    timestamp: datetime | None = None
    category: str | None = None
    author_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise InvariantViolationError("candidate id must not be empty")
        if self.content_type not in CONTENT_TYPES:
            raise InvariantViolationError(
                f"unknown content type {self.content_type!r} for candidate {self.id}"
            )
        if not self.sources:
            raise InvariantViolationError(f"candidate {self.ref} has no sources")
        if math.isnan(self.raw_score) or not 0.0 <= self.raw_score <= 1.0:
            raise InvariantViolationError(
                f"candidate {self.ref} has raw score {self.raw_score} outside [0, 1]"
            )

    @property
    def key(self) -> tuple[str, str]:
        return (self.content_type, self.id)

    @property
    def ref(self) -> str:
        return f"{self.content_type}:{self.id}"

    @property
    def title(self) -> str:
        return str(self.metadata.get("title") or "")

    @property
    def body(self) -> str:
        return str(self.metadata.get("body") or "")

    @property
    def category_name(self) -> str | None:
        name = self.metadata.get("category_name")
        return str(name) if name else self.category

    @property
    def comment_count(self) -> int:
        return _as_count(self.metadata.get("comment_count"))

    @property
    def vote_count(self) -> int:
        return _as_count(self.metadata.get("vote_count"))


def _as_count(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class ExpandedQuery:
    """One retrieval query derived from the caller's input."""

    text: str
    role: QueryRole

    @property
    def label(self) -> str:
        return f"{self.role}:{self.text}"


@dataclass(frozen=True)
class ScoredCandidate:
    """A fused candidate moving through the ranking passes."""

    candidate: Candidate
    score: float
    diversity_score: float = 1.0
    held_back: bool = False
    serendipitous: bool = False
    quality_score: float | None = None


@dataclass(frozen=True)
class RankedResult:
    """Final, ranked output item."""

    candidate: Candidate
    final_score: float
    diversity_score: float
    rank: int
    reason: str
    serendipitous: bool = False
    rerank_quality_score: float | None = None

    @property
    def id(self) -> str:
        return self.candidate.id

    @property
    def content_type(self) -> ContentType:
        return self.candidate.content_type

    @property
    def sources(self) -> tuple[str, ...]:
        return self.candidate.sources

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        candidate = payload.pop("candidate")
        timestamp = candidate.get("timestamp")
        candidate["timestamp"] = timestamp.isoformat() if timestamp else None
        candidate["sources"] = list(candidate["sources"])
        candidate["metadata"] = dict(candidate["metadata"])
        return {**candidate, **payload}


@dataclass(frozen=True)
class DiscoveryResponse:
    """Ranked results plus the flags callers use to report confidence."""

    results: list[RankedResult]
    search_type: SearchType
    queries: list[ExpandedQuery] = field(default_factory=list)
    expansion_applied: bool = False
    expansion_reasoning: str = ""
    reranking_applied: bool = False
    diversity_applied: bool = False
    serendipity_applied: bool = False
    algorithms_used: list[str] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)
    timings_ms: dict[str, float] = field(default_factory=dict)


class QueryContext(BaseModel):
    """Caller context sent along with expansion and rerank requests."""

    model_config = ConfigDict(frozen=True)

    previous_queries: tuple[str, ...] = ()
    user_interests: tuple[str, ...] = ()
    search_mode: SearchMode = "broad"


class RetrievalFilters(BaseModel):
    """Optional restrictions applied by the retrieval paths."""

    model_config = ConfigDict(frozen=True)

    category_id: str | None = None
    time_range: TimeRange = "all"
    sort: SortOrder = "relevance"


class RankingConfig(BaseModel):
    """Per-request ranking tunables."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    score_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    diversity_threshold: float = Field(default=0.3, gt=0.0, le=1.0)
    time_decay_factor: float = Field(default=0.95, gt=0.0, le=1.0)
    enable_diversity_filtering: bool = True
    enable_serendipity: bool = True
    serendipity_factor: float = Field(default=0.1, ge=0.0, le=1.0)
    limit: int = Field(default=10, ge=1, le=100)
    algorithm: Algorithm = "hybrid"

    engagement_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    engagement_calibration: float = Field(default=10.0, gt=0.0)
    trending_relevance_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    recency_scoring: RecencyScoring = "auto"
    diversity_keys: tuple[DiversityKey, ...] = Field(
        default=("category",), min_length=1
    )
    enable_query_expansion: bool = True
    enable_semantic_expansion: bool = True
    enable_cross_modal: bool = True
    enable_reranking: bool = False
    rerank_top_n: int = Field(default=10, ge=1, le=20)
    seed: int | None = None


def parse_ranking_config(
    options: RankingConfig | Mapping[str, Any] | None = None,
) -> RankingConfig:
    """Build a RankingConfig, reporting bad values as InvalidRequestError."""
    if options is None:
        return RankingConfig()
    if isinstance(options, RankingConfig):
        return options
    try:
        return RankingConfig.model_validate(dict(options))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise InvalidRequestError(f"Invalid ranking config: {problems}") from exc
