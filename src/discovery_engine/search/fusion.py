"""
Fusion of per-query candidate lists.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from ..errors import InvariantViolationError
from ..models import Candidate

_ROLE_ORDER = {"primary": 0, "semantic-expansion": 1, "cross-modal": 2}


def score_order(candidate: Candidate) -> tuple[float, str, str]:
    """Sort key: best score first, then a stable identity order."""
    return (-candidate.raw_score, candidate.content_type, candidate.id)


def _source_order(label: str) -> tuple[int, str]:
    role = label.split(":", 1)[0]
    return (_ROLE_ORDER.get(role, len(_ROLE_ORDER)), label)


def _representative_order(candidate: Candidate) -> tuple:
    # Total order over occurrences, so ties pick the same record every time.
    return (
        candidate.raw_score,
        tuple(sorted(candidate.sources)),
        candidate.timestamp.isoformat() if candidate.timestamp else "",
        candidate.category or "",
        candidate.author_id or "",
        repr(sorted(candidate.metadata.items(), key=lambda item: str(item[0]))),
    )


def fuse_candidates(lists: Iterable[Iterable[Candidate]]) -> list[Candidate]:
    """Merge candidate lists keyed by (content type, id).

    The fused score is the maximum observed score and ``sources`` is the
    union of every contributing source. The result depends only on the
    multiset of inputs, never on list or arrival order.
    """
    groups: dict[tuple[str, str], list[Candidate]] = {}
    for candidates in lists:
        for candidate in candidates:
            groups.setdefault(candidate.key, []).append(candidate)

    fused: list[Candidate] = []
    for key, group in groups.items():
        best = max(group, key=_representative_order)
        sources = tuple(
            sorted({source for item in group for source in item.sources}, key=_source_order)
        )
        if not sources:
            raise InvariantViolationError(f"fused candidate {key} has no sources")
        fused.append(
            replace(
                best,
                raw_score=max(item.raw_score for item in group),
                sources=sources,
            )
        )
    return sorted(fused, key=score_order)
