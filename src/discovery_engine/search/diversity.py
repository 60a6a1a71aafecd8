"""
Per-cluster caps on the ranked list.
"""

from __future__ import annotations

import math
from collections import Counter
from typing import Sequence

from ..models import Candidate, DiversityKey, ScoredCandidate, clamp_unit


class DiversityFilter:
    """Bound how many results one category (or author) may take.

    Candidates are walked in score order. A candidate whose clusters are all
    under the cap is admitted; otherwise it is held back. Held-back
    candidates follow every admitted one, still in score order, so they only
    reach the final list when nothing compliant is left to fill it.

    The cap is ``max(1, floor(threshold * limit))`` admissions per cluster,
    i.e. a cluster's share of the first ``limit`` results stays at or below
    ``threshold`` while compliant candidates remain.
    """

    def __init__(
        self,
        threshold: float,
        *,
        limit: int,
        keys: Sequence[DiversityKey] = ("category",),
    ) -> None:
        if not 0.0 < threshold <= 1.0:
            raise ValueError("diversity threshold must be in (0, 1]")
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.threshold = threshold
        self.limit = limit
        self.keys = tuple(keys)
        self.cap = max(1, math.floor(threshold * limit + 1e-9))

    def apply(
        self, candidates: Sequence[Candidate], *, enforce: bool = True
    ) -> list[ScoredCandidate]:
        """Return candidates in admission order with diversity scores.

        With ``enforce=False`` nothing is held back; scores are still recorded.
        """
        counts: Counter[tuple[str, str]] = Counter()
        admitted: list[ScoredCandidate] = []
        held: list[Candidate] = []

        for candidate in candidates:
            clusters = self.clusters(candidate)
            if enforce and any(counts[cluster] >= self.cap for cluster in clusters):
                held.append(candidate)
                continue
            admitted.append(self._admit(candidate, clusters, counts, len(admitted)))

        selected = len(admitted)
        for candidate in held:
            clusters = self.clusters(candidate)
            admitted.append(
                self._admit(candidate, clusters, counts, selected, held_back=True)
            )
            selected += 1
        return admitted

    def clusters(self, candidate: Candidate) -> list[tuple[str, str]]:
        values: list[tuple[str, str]] = []
        for key in self.keys:
            value = candidate.category if key == "category" else candidate.author_id
            if value:
                values.append((key, value))
        return values

    @staticmethod
    def _admit(
        candidate: Candidate,
        clusters: list[tuple[str, str]],
        counts: Counter[tuple[str, str]],
        admitted_so_far: int,
        *,
        held_back: bool = False,
    ) -> ScoredCandidate:
        if clusters and admitted_so_far:
            overlap = max(counts[cluster] for cluster in clusters)
            diversity = clamp_unit(1.0 - overlap / admitted_so_far)
        else:
            diversity = 1.0
        for cluster in clusters:
            counts[cluster] += 1
        return ScoredCandidate(
            candidate=candidate,
            score=candidate.raw_score,
            diversity_score=diversity,
            held_back=held_back,
        )
