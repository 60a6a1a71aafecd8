"""Ranking pipeline stages."""

from .diversity import DiversityFilter
from .expansion import ExpansionResult, QueryExpander, identity_expansion
from .filters import build_backend_filter, time_range_cutoff
from .fusion import fuse_candidates, score_order
from .rerank import Reranker, RerankOutcome, apply_ranking
from .retrieval import (
    FALLBACK_BASE_SCORES,
    MultiQueryRetriever,
    RetrievalResult,
    candidate_from_record,
    normalize_scores,
)
from .scoring import (
    RecencyEngagementScorer,
    TrendingScorer,
    engagement_rate,
    normalized_engagement,
    time_decay,
    trending_score,
)
from .serendipity import SerendipityInjector

__all__ = [
    "DiversityFilter",
    "ExpansionResult",
    "QueryExpander",
    "identity_expansion",
    "build_backend_filter",
    "time_range_cutoff",
    "fuse_candidates",
    "score_order",
    "Reranker",
    "RerankOutcome",
    "apply_ranking",
    "FALLBACK_BASE_SCORES",
    "MultiQueryRetriever",
    "RetrievalResult",
    "candidate_from_record",
    "normalize_scores",
    "RecencyEngagementScorer",
    "TrendingScorer",
    "engagement_rate",
    "normalized_engagement",
    "time_decay",
    "trending_score",
    "SerendipityInjector",
]
