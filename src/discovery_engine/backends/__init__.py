"""External store interfaces and the bundled DuckDB adapter."""

from .base import (
    COLLECTIONS,
    INTERACTION_KIND,
    ContentRecord,
    InteractionRecord,
    MetadataStore,
    SearchPoint,
    SimilarityBackend,
    collection_for,
)
from .duckdb import DuckDBContentStore

__all__ = [
    "COLLECTIONS",
    "INTERACTION_KIND",
    "ContentRecord",
    "DuckDBContentStore",
    "InteractionRecord",
    "MetadataStore",
    "SearchPoint",
    "SimilarityBackend",
    "collection_for",
]
