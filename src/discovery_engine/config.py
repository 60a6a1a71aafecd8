"""
Deployment settings for the discovery engine.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_DB_PATH = "~/.discovery_engine/content.duckdb"
ENV_DB_PATH = "DISCOVERY_DB_PATH"

_DEFAULT_REQUEST_TIMEOUT = 8.0
_DEFAULT_QUERY_TIMEOUT = 2.0
_DEFAULT_LLM_TIMEOUT = 4.0
_DEFAULT_MAX_EXPANSIONS = 5
_DEFAULT_MAX_CROSS_MODAL = 2
_DEFAULT_PER_QUERY_LIMIT = 20


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class EngineSettings:
    """Timeouts and fan-out bounds shared by every request."""

    request_timeout: float = _DEFAULT_REQUEST_TIMEOUT
    query_timeout: float = _DEFAULT_QUERY_TIMEOUT
    llm_timeout: float = _DEFAULT_LLM_TIMEOUT
    max_expansions: int = _DEFAULT_MAX_EXPANSIONS
    max_cross_modal: int = _DEFAULT_MAX_CROSS_MODAL
    per_query_limit: int = _DEFAULT_PER_QUERY_LIMIT

    def __post_init__(self) -> None:
        for name in ("request_timeout", "query_timeout", "llm_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_expansions < 1:
            raise ValueError("max_expansions must be at least 1")
        if self.max_cross_modal < 0:
            raise ValueError("max_cross_modal must not be negative")
        if self.per_query_limit < 1:
            raise ValueError("per_query_limit must be at least 1")

    @property
    def max_workers(self) -> int:
        """Upper bound on concurrent retrieval workers per request."""
        return self.max_expansions + self.max_cross_modal

    @classmethod
    def from_env(cls) -> EngineSettings:
        return cls(
            request_timeout=_env_float(
                "DISCOVERY_REQUEST_TIMEOUT", _DEFAULT_REQUEST_TIMEOUT
            ),
            query_timeout=_env_float("DISCOVERY_QUERY_TIMEOUT", _DEFAULT_QUERY_TIMEOUT),
            llm_timeout=_env_float("DISCOVERY_LLM_TIMEOUT", _DEFAULT_LLM_TIMEOUT),
            max_expansions=_env_int("DISCOVERY_MAX_EXPANSIONS", _DEFAULT_MAX_EXPANSIONS),
            max_cross_modal=_env_int(
                "DISCOVERY_MAX_CROSS_MODAL", _DEFAULT_MAX_CROSS_MODAL
            ),
            per_query_limit=_env_int(
                "DISCOVERY_PER_QUERY_LIMIT", _DEFAULT_PER_QUERY_LIMIT
            ),
        )


def resolve_db_path(override_path: str | None = None) -> str:
    """
    Resolve the DuckDB path from CLI override, env var, or default.

    Precedence:
    1) explicit override_path
    2) DISCOVERY_DB_PATH
    3) default path
    """
    raw_path = override_path or os.getenv(ENV_DB_PATH) or DEFAULT_DB_PATH
    resolved = Path(raw_path).expanduser().resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return str(resolved)
