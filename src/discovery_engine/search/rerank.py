"""
Best-effort reranking through the text-understanding service.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Sequence

from ..llm import LanguageService, RerankItem, RerankPayload, parse_payload
from ..models import QueryContext, ScoredCandidate

logger = logging.getLogger(__name__)

MAX_RERANK_CANDIDATES = 20
_EXCERPT_CHARS = 200


@dataclass(frozen=True)
class RerankOutcome:
    """Reranked items and whether the service's order was used."""

    items: list[ScoredCandidate]
    applied: bool
    reasoning: str = ""
    failed: bool = False


def summarize(item: ScoredCandidate, *, excerpt_chars: int = _EXCERPT_CHARS) -> RerankItem:
    candidate = item.candidate
    excerpt = candidate.body[:excerpt_chars]
    if len(candidate.body) > excerpt_chars:
        excerpt += "..."
    return RerankItem(
        id=candidate.ref,
        title=candidate.title,
        score=round(item.score, 3),
        excerpt=excerpt,
    )


def apply_ranking(
    items: Sequence[ScoredCandidate], payload: RerankPayload
) -> list[ScoredCandidate]:
    """Reorder *items* by the service's ids.

    Unknown ids are ignored and so are repeats. Items the service left out
    follow in their original order.
    """
    by_ref = {item.candidate.ref: item for item in items}
    bare_ids: dict[str, list[str]] = {}
    for item in items:
        bare_ids.setdefault(item.candidate.id, []).append(item.candidate.ref)

    ordered: list[ScoredCandidate] = []
    placed: set[str] = set()
    for ranked_id in payload.ranked_ids:
        ref = ranked_id if ranked_id in by_ref else None
        if ref is None and len(bare_ids.get(ranked_id, [])) == 1:
            ref = bare_ids[ranked_id][0]
        if ref is None or ref in placed:
            continue
        placed.add(ref)
        ordered.append(by_ref[ref])
    ordered.extend(item for item in items if item.candidate.ref not in placed)

    annotated: list[ScoredCandidate] = []
    for item in ordered:
        ref = item.candidate.ref
        quality = payload.quality_scores.get(ref, payload.quality_scores.get(item.candidate.id))
        annotated.append(replace(item, quality_score=item.score if quality is None else quality))
    return annotated


class Reranker:
    """Ask the language service to reorder the top candidates."""

    def __init__(
        self,
        service: LanguageService | None,
        *,
        timeout: float = 4.0,
        excerpt_chars: int = _EXCERPT_CHARS,
    ) -> None:
        self.service = service
        self.timeout = timeout
        self.excerpt_chars = excerpt_chars

    async def rerank(
        self,
        query: str,
        items: Sequence[ScoredCandidate],
        *,
        top_n: int = 10,
        context: QueryContext | None = None,
        timeout: float | None = None,
    ) -> RerankOutcome:
        count = min(top_n, MAX_RERANK_CANDIDATES, len(items))
        if self.service is None or count == 0:
            return RerankOutcome(items=list(items), applied=False)

        budget = self.timeout if timeout is None else min(self.timeout, timeout)
        if budget <= 0:
            logger.warning("No time left to rerank results for %r", query)
            return RerankOutcome(items=list(items), applied=False, failed=True)

        head, tail = list(items[:count]), list(items[count:])
        summaries = [summarize(item, excerpt_chars=self.excerpt_chars) for item in head]
        try:
            raw = await asyncio.wait_for(
                self.service.rerank(query, summaries, context or QueryContext()),
                timeout=budget,
            )
            payload = parse_payload(RerankPayload, raw)
        except Exception as exc:
            logger.warning("Reranking failed, keeping the original order: %r", exc)
            return RerankOutcome(items=list(items), applied=False, failed=True)

        return RerankOutcome(
            items=apply_ranking(head, payload) + tail,
            applied=True,
            reasoning=payload.reasoning,
        )
