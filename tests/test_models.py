"""Tests for value types, request configs and settings."""

from __future__ import annotations

import math
import os
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from discovery_engine.config import EngineSettings, resolve_db_path
from discovery_engine.errors import InvalidRequestError, InvariantViolationError
from discovery_engine.models import (
    Candidate,
    ExpandedQuery,
    QueryContext,
    RankedResult,
    RankingConfig,
    clamp_unit,
    parse_ranking_config,
)


# ---------------------------------------------------------------------------
# Candidate
# ---------------------------------------------------------------------------


def test_candidate_rejects_empty_sources() -> None:
    with pytest.raises(InvariantViolationError):
        Candidate(id="p1", content_type="post", raw_score=0.5, sources=())


@pytest.mark.parametrize("score", [-0.1, 1.5, math.nan])
def test_candidate_rejects_scores_outside_unit_interval(score: float) -> None:
    with pytest.raises(InvariantViolationError):
        Candidate(id="p1", content_type="post", raw_score=score, sources=("primary:q",))


def test_candidate_rejects_empty_id_and_unknown_type() -> None:
    with pytest.raises(InvariantViolationError):
        Candidate(id="", content_type="post", raw_score=0.5, sources=("primary:q",))
    with pytest.raises(InvariantViolationError):
        Candidate(id="x", content_type="video", raw_score=0.5, sources=("primary:q",))


def test_candidate_metadata_accessors(make_candidate) -> None:
    candidate = make_candidate(
        "p1",
        category="c1",
        title="Espresso at home",
        body="Grind finer.",
        comment_count="4",
        vote_count=None,
    )

    assert candidate.ref == "post:p1"
    assert candidate.key == ("post", "p1")
    assert candidate.title == "Espresso at home"
    assert candidate.body == "Grind finer."
    assert candidate.comment_count == 4
    assert candidate.vote_count == 0
    assert candidate.category_name == "c1"


def test_expanded_query_label_includes_role() -> None:
    query = ExpandedQuery(text="coffee grinders", role="semantic-expansion")
    assert query.label == "semantic-expansion:coffee grinders"


def test_clamp_unit_handles_nan_and_bounds() -> None:
    assert clamp_unit(math.nan) == 0.0
    assert clamp_unit(-3.0) == 0.0
    assert clamp_unit(2.0) == 1.0
    assert clamp_unit(0.25) == 0.25


def test_ranked_result_to_dict_is_json_friendly(make_candidate) -> None:
    candidate = make_candidate("p1", 0.7, category="c1", hours_ago=2, title="Hello")
    result = RankedResult(
        candidate=candidate,
        final_score=0.7,
        diversity_score=1.0,
        rank=1,
        reason="Strong match for 'hello'",
    )

    payload = result.to_dict()

    assert payload["id"] == "p1"
    assert payload["content_type"] == "post"
    assert payload["sources"] == ["primary:q"]
    assert payload["rank"] == 1
    assert payload["metadata"] == {"title": "Hello"}
    assert datetime.fromisoformat(payload["timestamp"]).tzinfo == timezone.utc


# ---------------------------------------------------------------------------
# RankingConfig
# ---------------------------------------------------------------------------


def test_ranking_config_defaults() -> None:
    config = RankingConfig()

    assert config.score_threshold == 0.1
    assert config.diversity_threshold == 0.3
    assert config.time_decay_factor == 0.95
    assert config.enable_diversity_filtering is True
    assert config.enable_serendipity is True
    assert config.serendipity_factor == 0.1
    assert config.limit == 10
    assert config.algorithm == "hybrid"
    assert config.enable_reranking is False


def test_parse_ranking_config_accepts_mappings() -> None:
    config = parse_ranking_config({"limit": 5, "algorithm": "content", "seed": 7})

    assert config.limit == 5
    assert config.algorithm == "content"
    assert config.seed == 7


@pytest.mark.parametrize(
    "options",
    [
        {"limit": 0},
        {"score_threshold": 1.5},
        {"diversity_threshold": 0.0},
        {"algorithm": "random"},
        {"unknown_option": True},
    ],
)
def test_parse_ranking_config_rejects_invalid_values(options: dict) -> None:
    with pytest.raises(InvalidRequestError):
        parse_ranking_config(options)


def test_query_context_defaults() -> None:
    context = QueryContext()
    assert context.search_mode == "broad"
    assert context.previous_queries == ()


# ---------------------------------------------------------------------------
# EngineSettings
# ---------------------------------------------------------------------------


def test_engine_settings_from_env() -> None:
    env = {
        "DISCOVERY_REQUEST_TIMEOUT": "3.5",
        "DISCOVERY_MAX_EXPANSIONS": "3",
        "DISCOVERY_MAX_CROSS_MODAL": "1",
    }
    with patch.dict(os.environ, env):
        settings = EngineSettings.from_env()

    assert settings.request_timeout == 3.5
    assert settings.max_expansions == 3
    assert settings.max_workers == 4


def test_engine_settings_rejects_non_positive_timeouts() -> None:
    with pytest.raises(ValueError):
        EngineSettings(query_timeout=0)


def test_resolve_db_path_prefers_override(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("DISCOVERY_DB_PATH", str(tmp_path / "env.duckdb"))

    assert resolve_db_path(str(tmp_path / "cli.duckdb")) == str((tmp_path / "cli.duckdb").resolve())
    assert resolve_db_path() == str((tmp_path / "env.duckdb").resolve())
