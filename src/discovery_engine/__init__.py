"""
Discovery Engine - content search, recommendation, trending and topics for community platforms.

This package expands a query into several retrieval queries with Google
Gemini, retrieves candidates concurrently from a similarity backend (or a
keyword fallback), then fuses, diversifies, scores and optionally reranks
them into a short ranked list.

Example usage:
    >>> from discovery_engine import DiscoveryEngine, DuckDBContentStore
    >>> store = DuckDBContentStore("content.duckdb")
    >>> engine = DiscoveryEngine(store, store)
    >>> response = await engine.search("budget mechanical keyboards")
"""

from .backends import DuckDBContentStore, MetadataStore, SimilarityBackend
from .config import EngineSettings
from .embeddings import EmbeddingProvider
from .engine import DiscoveryEngine
from .errors import (
    BackendUnavailableError,
    DiscoveryError,
    InvalidRequestError,
    InvariantViolationError,
)
from .llm import GeminiLanguageService, LanguageService
from .models import (
    Candidate,
    DiscoveryResponse,
    ExpandedQuery,
    QueryContext,
    RankedResult,
    RankingConfig,
    RetrievalFilters,
)
from .orchestrator import DiscoveryEndEvent, DiscoveryStartEvent, DiscoveryWorkflow
from .topics import TOPIC_SEEDS, TopicCluster, TopicSeed, TopicsResponse

__all__ = [
    # Engine
    "DiscoveryEngine",
    "DiscoveryWorkflow",
    "DiscoveryStartEvent",
    "DiscoveryEndEvent",
    "EngineSettings",
    # Collaborators
    "DuckDBContentStore",
    "MetadataStore",
    "SimilarityBackend",
    "EmbeddingProvider",
    "GeminiLanguageService",
    "LanguageService",
    # Models
    "Candidate",
    "DiscoveryResponse",
    "ExpandedQuery",
    "QueryContext",
    "RankedResult",
    "RankingConfig",
    "RetrievalFilters",
    # Topics
    "TOPIC_SEEDS",
    "TopicCluster",
    "TopicSeed",
    "TopicsResponse",
    # Errors
    "DiscoveryError",
    "InvalidRequestError",
    "InvariantViolationError",
    "BackendUnavailableError",
]
