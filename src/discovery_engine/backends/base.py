"""
Interfaces of the external stores the engine reads from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

INTERACTION_KIND = "interaction"

COLLECTIONS: dict[str, str] = {
    "post": "posts",
    "comment": "comments",
    "category": "categories",
    "user": "users",
    "document": "documents",
    "image": "images",
}


def collection_for(content_type: str) -> str:
    """Return the similarity collection holding *content_type* vectors."""
    try:
        return COLLECTIONS[content_type]
    except KeyError as exc:
        raise ValueError(f"No collection for content type: {content_type}") from exc


@dataclass(frozen=True)
class SearchPoint:
    """A nearest-neighbour hit from a similarity backend."""

    id: str
    score: float
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContentRecord:
    """A content row as stored by the metadata store."""

    id: str
    content_type: str
    title: str = ""
    body: str = ""
    category_id: str | None = None
    category_name: str | None = None
    author_id: str | None = None
    created_at: datetime | None = None
    comment_count: int = 0
    vote_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InteractionRecord:
    """One user action on a content item."""

    user_id: str
    content_id: str
    kind: str
    created_at: datetime | None = None
    category_id: str | None = None


class SimilarityBackend(Protocol):
    """Nearest-neighbour search over stored embeddings."""

    def is_ready(self) -> bool:
        """Return True when the backend can answer searches."""

    def search(
        self,
        *,
        collection: str,
        query_vector: list[float],
        limit: int,
        filter: dict[str, Any] | None = None,
    ) -> list[SearchPoint]:
        """Return the closest points in *collection*, best first."""


class MetadataStore(Protocol):
    """Record lookup used for keyword fallback, profiles and enrichment."""

    def find_many(
        self,
        content_type: str,
        filter: dict[str, Any] | None = None,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Return records of *content_type* matching *filter*."""
