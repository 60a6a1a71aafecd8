"""
Embedding provider for similarity retrieval.

Wraps the Google GenAI embedding API. Queries and stored documents use
different task types, so callers say which role a text plays.
"""

from __future__ import annotations

import os
from typing import Any, Literal, Protocol, TypeAlias

from google.genai import Client as GenAIClient


EmbeddingRole: TypeAlias = Literal["query", "document"]

_DEFAULT_MODEL = "gemini-embedding-001"
_DEFAULT_DIM = 768
_DEFAULT_BATCH_SIZE = 50
_TASK_TYPES: dict[str, str] = {
    "query": "RETRIEVAL_QUERY",
    "document": "RETRIEVAL_DOCUMENT",
}


class Embedder(Protocol):
    """Anything that turns text into a vector."""

    def embed(self, text: str, role: EmbeddingRole = "query") -> list[float]:
        """Embed a single text for the given role."""


class EmbeddingProvider:
    """Generate text embeddings via Google GenAI."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        dim: int | None = None,
        batch_size: int | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model or os.getenv("DISCOVERY_EMBEDDING_MODEL", _DEFAULT_MODEL)
        self.dim = dim or int(os.getenv("DISCOVERY_EMBEDDING_DIM", str(_DEFAULT_DIM)))
        self.batch_size = batch_size or int(
            os.getenv("DISCOVERY_EMBEDDING_BATCH_SIZE", str(_DEFAULT_BATCH_SIZE))
        )

        if client is not None:
            self._client = client
        else:
            resolved_key = api_key or os.getenv("GOOGLE_API_KEY")
            if resolved_key is None:
                raise ValueError(
                    "GOOGLE_API_KEY not found. "
                    "Provide api_key or set the environment variable."
                )
            self._client = GenAIClient(api_key=resolved_key)

    def embed(self, text: str, role: EmbeddingRole = "query") -> list[float]:
        """Embed one text as a retrieval query or a stored document."""
        return self.embed_texts([text], role=role)[0]

    def embed_texts(
        self,
        texts: list[str],
        *,
        role: EmbeddingRole = "document",
    ) -> list[list[float]]:
        """Embed a list of texts in batches.

        Returns a list of embedding vectors in the same order as *texts*.
        """
        if role not in _TASK_TYPES:
            raise ValueError(f"Unknown embedding role: {role}")
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            result = self._client.models.embed_content(
                model=self.model,
                contents=batch,
                config={
                    "task_type": _TASK_TYPES[role],
                    "output_dimensionality": self.dim,
                },
            )
            for emb in result.embeddings:
                vectors.append(list(emb.values))
        return vectors
