"""
Serendipity injection.

The only stage allowed to use randomness. The random source is passed in so
a seeded ``random.Random`` gives repeatable output.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import replace
from typing import Sequence

from ..models import ScoredCandidate

logger = logging.getLogger(__name__)

_NOVEL_WEIGHT = 2.0
_FAMILIAR_WEIGHT = 1.0


class SerendipityInjector:
    """Promote a few low-ranked, above-threshold items into the result window."""

    def __init__(
        self,
        *,
        factor: float,
        score_threshold: float,
        limit: int,
        rng: random.Random,
    ) -> None:
        if not 0.0 <= factor <= 1.0:
            raise ValueError("serendipity factor must be in [0, 1]")
        self.factor = factor
        self.score_threshold = score_threshold
        self.limit = limit
        self.rng = rng

    def apply(self, items: Sequence[ScoredCandidate]) -> list[ScoredCandidate]:
        order = list(items)
        window = min(self.limit, len(order))
        if self.factor <= 0.0 or window < 2:
            return order

        # Low rank means outside the window; short lists use their bottom half.
        # Held-back items are never eligible; the diversity cap must survive.
        pool_start = window if len(order) > window else max(1, (len(order) + 1) // 2)
        pool = [
            index
            for index in range(pool_start, len(order))
            if order[index].score >= self.score_threshold and not order[index].held_back
        ]
        # Promoted items land in positions 1..pool_start-1, so rank 1 stays put.
        count = min(len(pool), math.ceil(self.factor * window), pool_start - 1)
        if count <= 0:
            return order

        familiar = {
            item.candidate.category for item in order[:pool_start] if item.candidate.category
        }
        chosen = self._sample(order, pool, count, familiar)
        positions = sorted(self.rng.sample(range(1, pool_start), count))

        promoted = [
            replace(order[index], serendipitous=True) for index in chosen
        ]
        taken = set(chosen)
        remaining = [item for index, item in enumerate(order) if index not in taken]
        for position, item, index in zip(positions, promoted, chosen):
            remaining.insert(position, item)
            logger.debug(
                "Promoted %s from position %d to %d",
                item.candidate.ref,
                index + 1,
                position + 1,
            )
        return remaining

    def _sample(
        self,
        order: list[ScoredCandidate],
        pool: list[int],
        count: int,
        familiar: set[str],
    ) -> list[int]:
        remaining = list(pool)
        chosen: list[int] = []
        for _ in range(count):
            weights = [
                _FAMILIAR_WEIGHT
                if order[index].candidate.category in familiar
                else _NOVEL_WEIGHT
                for index in remaining
            ]
            pick = self.rng.choices(range(len(remaining)), weights=weights, k=1)[0]
            chosen.append(remaining.pop(pick))
        return chosen
