"""
Retrieval filter helpers.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from ..models import RetrievalFilters, TimeRange

TIME_RANGE_WINDOWS: dict[str, timedelta] = {
    "day": timedelta(hours=24),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}

# Content types that carry a creation time and a category.
TIMESTAMPED_TYPES = frozenset({"post", "comment", "document", "image"})
CATEGORIZED_TYPES = frozenset({"post", "comment"})


def time_range_cutoff(time_range: TimeRange, *, now: datetime) -> datetime | None:
    """Return the earliest creation time inside *time_range*, or None for ``all``."""
    window = TIME_RANGE_WINDOWS.get(time_range)
    if window is None:
        return None
    return now - window


def build_backend_filter(
    filters: RetrievalFilters | None,
    *,
    content_type: str,
    now: datetime,
) -> dict[str, Any]:
    """Translate request filters into the store filter for one content type."""
    if filters is None:
        return {}
    backend_filter: dict[str, Any] = {}
    if filters.category_id and content_type in CATEGORIZED_TYPES:
        backend_filter["category_id"] = filters.category_id
    if content_type in TIMESTAMPED_TYPES:
        cutoff = time_range_cutoff(filters.time_range, now=now)
        if cutoff is not None:
            backend_filter["created_after"] = cutoff
    return backend_filter
