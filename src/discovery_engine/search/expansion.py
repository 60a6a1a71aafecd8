"""
Query expansion through the text-understanding service.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..llm import ExpansionPayload, LanguageService, parse_payload
from ..models import ExpandedQuery, QueryContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpansionResult:
    """Queries to retrieve with, primary first."""

    queries: list[ExpandedQuery]
    applied: bool = False
    reasoning: str = ""
    failed: bool = False


def identity_expansion(query: str, *, failed: bool = False) -> ExpansionResult:
    return ExpansionResult(
        queries=[ExpandedQuery(text=query, role="primary")], failed=failed
    )


class QueryExpander:
    """Turn one query into a bounded set of retrieval queries."""

    def __init__(
        self,
        service: LanguageService | None,
        *,
        max_queries: int = 5,
        max_cross_modal: int = 2,
        timeout: float = 4.0,
    ) -> None:
        if max_queries < 1:
            raise ValueError("max_queries must be at least 1")
        self.service = service
        self.max_queries = max_queries
        self.max_cross_modal = max(max_cross_modal, 0)
        self.timeout = timeout

    async def expand(
        self,
        query: str,
        context: QueryContext | None = None,
        *,
        include_semantic: bool = True,
        include_cross_modal: bool = True,
        timeout: float | None = None,
    ) -> ExpansionResult:
        if self.service is None or not (include_semantic or include_cross_modal):
            return identity_expansion(query)

        budget = self.timeout if timeout is None else min(self.timeout, timeout)
        if budget <= 0:
            logger.warning("No time left for query expansion of %r", query)
            return identity_expansion(query, failed=True)

        try:
            raw = await asyncio.wait_for(
                self.service.expand_query(query, context or QueryContext()),
                timeout=budget,
            )
            payload = parse_payload(ExpansionPayload, raw)
        except Exception as exc:
            logger.warning("Query expansion failed, using the original query: %r", exc)
            return identity_expansion(query, failed=True)

        queries = self.build_queries(
            query,
            payload,
            include_semantic=include_semantic,
            include_cross_modal=include_cross_modal,
        )
        logger.debug("Expanded %r into %d queries", query, len(queries))
        return ExpansionResult(
            queries=queries,
            applied=len(queries) > 1,
            reasoning=payload.reasoning,
        )

    def build_queries(
        self,
        query: str,
        payload: ExpansionPayload,
        *,
        include_semantic: bool = True,
        include_cross_modal: bool = True,
    ) -> list[ExpandedQuery]:
        queries = [ExpandedQuery(text=query, role="primary")]
        seen = {_normalize(query)}

        if include_semantic:
            for text in [*payload.enhanced_queries, *payload.semantic_expansions]:
                if len(queries) >= self.max_queries:
                    break
                key = _normalize(text)
                if key in seen:
                    continue
                seen.add(key)
                queries.append(ExpandedQuery(text=text, role="semantic-expansion"))

        if include_cross_modal:
            cross_modal = 0
            for text in payload.cross_modal_queries:
                if cross_modal >= self.max_cross_modal:
                    break
                key = _normalize(text)
                if key in seen:
                    continue
                seen.add(key)
                queries.append(ExpandedQuery(text=text, role="cross-modal"))
                cross_modal += 1
        return queries


def _normalize(text: str) -> str:
    return " ".join(text.casefold().split())
