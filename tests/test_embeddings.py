"""Tests for the embedding provider."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import pytest

from discovery_engine.embeddings import EmbeddingProvider


# ---------------------------------------------------------------------------
# Mock helpers
# ---------------------------------------------------------------------------


@dataclass
class _FakeEmbedding:
    values: list[float]


@dataclass
class _FakeEmbedResult:
    embeddings: list[_FakeEmbedding]


class _FakeModels:
    """Records calls and returns deterministic embeddings."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def embed_content(
        self, *, model: str, contents: list[str], config: dict
    ) -> _FakeEmbedResult:
        self.calls.append({"model": model, "contents": contents, "config": config})
        dim = config.get("output_dimensionality", 768)
        return _FakeEmbedResult(
            embeddings=[
                _FakeEmbedding(values=[float(i)] * dim) for i in range(len(contents))
            ]
        )


class _FakeClient:
    def __init__(self) -> None:
        self.models = _FakeModels()


# ---------------------------------------------------------------------------
# Unit tests (mock-based, no API key needed)
# ---------------------------------------------------------------------------


def test_embed_texts_uses_document_task_type() -> None:
    client = _FakeClient()
    provider = EmbeddingProvider(client=client, dim=4)

    embeddings = provider.embed_texts(["a post body", "a comment"])

    assert len(embeddings) == 2
    assert len(embeddings[0]) == 4
    assert client.models.calls[0]["config"]["task_type"] == "RETRIEVAL_DOCUMENT"


def test_embed_defaults_to_query_task_type() -> None:
    client = _FakeClient()
    provider = EmbeddingProvider(client=client, dim=4)

    result = provider.embed("budget keyboards")

    assert len(result) == 4
    assert client.models.calls[0]["config"]["task_type"] == "RETRIEVAL_QUERY"


def test_embed_document_role() -> None:
    client = _FakeClient()
    provider = EmbeddingProvider(client=client, dim=4)

    provider.embed("stored text", "document")

    assert client.models.calls[0]["config"]["task_type"] == "RETRIEVAL_DOCUMENT"


def test_unknown_role_is_rejected() -> None:
    provider = EmbeddingProvider(client=_FakeClient(), dim=4)
    with pytest.raises(ValueError):
        provider.embed_texts(["x"], role="image")


def test_embed_texts_batching() -> None:
    client = _FakeClient()
    provider = EmbeddingProvider(client=client, dim=4, batch_size=3)

    embeddings = provider.embed_texts([f"text_{i}" for i in range(7)])

    assert len(embeddings) == 7
    assert [len(call["contents"]) for call in client.models.calls] == [3, 3, 1]


def test_env_overrides(monkeypatch) -> None:
    client = _FakeClient()
    monkeypatch.setenv("DISCOVERY_EMBEDDING_MODEL", "custom-model-001")
    monkeypatch.setenv("DISCOVERY_EMBEDDING_DIM", "256")
    monkeypatch.setenv("DISCOVERY_EMBEDDING_BATCH_SIZE", "10")

    provider = EmbeddingProvider(client=client)

    assert provider.model == "custom-model-001"
    assert provider.dim == 256
    assert provider.batch_size == 10

    provider.embed_texts(["test"])
    call = client.models.calls[0]
    assert call["model"] == "custom-model-001"
    assert call["config"]["output_dimensionality"] == 256


def test_missing_api_key_raises(monkeypatch) -> None:
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    with pytest.raises(ValueError, match="GOOGLE_API_KEY"):
        EmbeddingProvider(api_key=None, client=None)


# ---------------------------------------------------------------------------
# Real API integration test (skipped unless GOOGLE_API_KEY is set)
# ---------------------------------------------------------------------------


@pytest.mark.skipif(
    not os.getenv("GOOGLE_API_KEY"),
    reason="GOOGLE_API_KEY not set, skipping real embedding test",
)
def test_real_embedding_api() -> None:
    provider = EmbeddingProvider(dim=128)

    embeddings = provider.embed_texts(["Dialing in a new grinder.", "Tea ceremony basics."])

    assert len(embeddings) == 2
    assert len(embeddings[0]) == 128
    assert len(provider.embed("grinder settings")) == 128
