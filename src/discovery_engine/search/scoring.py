"""
Recency, engagement and trending adjustments.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Sequence

from ..models import Candidate, ScoredCandidate, clamp_unit

_SECONDS_PER_HOUR = 3600.0


def hours_since(timestamp: datetime, *, now: datetime) -> float:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return max((now - timestamp).total_seconds() / _SECONDS_PER_HOUR, 0.0)


def time_decay(timestamp: datetime, *, factor: float, now: datetime) -> float:
    """Exponential decay: ``factor ** hours since timestamp``."""
    return factor ** hours_since(timestamp, now=now)


def engagement_rate(
    comments: int, votes: int, *, created_at: datetime, now: datetime
) -> float:
    """Weighted interactions per hour; comments count double."""
    return (comments * 2 + votes) / max(hours_since(created_at, now=now), 1.0)


def normalized_engagement(
    candidate: Candidate, *, calibration: float, now: datetime
) -> float:
    if candidate.timestamp is None:
        return 0.0
    rate = engagement_rate(
        candidate.comment_count,
        candidate.vote_count,
        created_at=candidate.timestamp,
        now=now,
    )
    return min(rate / calibration, 1.0)


def trending_score(relevance: float, engagement: float, *, relevance_weight: float) -> float:
    return clamp_unit(relevance * relevance_weight + engagement * (1.0 - relevance_weight))


def reorder_within_tiers(
    items: Sequence[ScoredCandidate],
    key: Callable[[ScoredCandidate], tuple],
) -> list[ScoredCandidate]:
    """Sort admitted and held-back items separately, admitted first."""
    return sorted(items, key=lambda item: (item.held_back, key(item)))


def by_score(item: ScoredCandidate) -> tuple:
    return (-item.score,)


def by_recency(item: ScoredCandidate) -> tuple:
    timestamp = item.candidate.timestamp
    if timestamp is None:
        return (1, 0.0, -item.score)
    return (0, -timestamp.timestamp(), -item.score)


class RecencyEngagementScorer:
    """``score * decay(t) + weight * engagement``, clamped to [0, 1]."""

    def __init__(
        self,
        *,
        time_decay_factor: float,
        engagement_weight: float,
        engagement_calibration: float,
        now: datetime,
    ) -> None:
        self.time_decay_factor = time_decay_factor
        self.engagement_weight = engagement_weight
        self.engagement_calibration = engagement_calibration
        self.now = now

    def score(self, item: ScoredCandidate) -> ScoredCandidate:
        timestamp = item.candidate.timestamp
        if timestamp is None:
            return item
        decayed = item.score * time_decay(
            timestamp, factor=self.time_decay_factor, now=self.now
        )
        engagement = normalized_engagement(
            item.candidate, calibration=self.engagement_calibration, now=self.now
        )
        return replace(item, score=clamp_unit(decayed + self.engagement_weight * engagement))

    def apply(self, items: Sequence[ScoredCandidate]) -> list[ScoredCandidate]:
        return reorder_within_tiers([self.score(item) for item in items], by_score)


class TrendingScorer:
    """Blend relevance with engagement for the trending path."""

    def __init__(
        self,
        *,
        relevance_weight: float,
        engagement_calibration: float,
        now: datetime,
    ) -> None:
        self.relevance_weight = relevance_weight
        self.engagement_calibration = engagement_calibration
        self.now = now

    def score(self, item: ScoredCandidate) -> ScoredCandidate:
        engagement = normalized_engagement(
            item.candidate, calibration=self.engagement_calibration, now=self.now
        )
        return replace(
            item,
            score=trending_score(
                item.score, engagement, relevance_weight=self.relevance_weight
            ),
        )

    def apply(self, items: Sequence[ScoredCandidate]) -> list[ScoredCandidate]:
        return reorder_within_tiers([self.score(item) for item in items], by_score)
