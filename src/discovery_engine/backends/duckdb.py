"""
DuckDB adapter implementing both the similarity backend and the metadata store.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import duckdb

from ..errors import BackendUnavailableError
from .base import (
    COLLECTIONS,
    INTERACTION_KIND,
    ContentRecord,
    InteractionRecord,
    SearchPoint,
)

logger = logging.getLogger(__name__)

_CONTENT_TYPES_BY_COLLECTION = {name: kind for kind, name in COLLECTIONS.items()}
_CONTENT_COLUMNS = (
    "id",
    "content_type",
    "title",
    "body",
    "category_id",
    "category_name",
    "author_id",
    "created_at",
    "comment_count",
    "vote_count",
    "metadata_json",
)
_ORDERINGS = {
    "recent": "c.created_at DESC NULLS LAST, c.id",
    "engagement": "(c.comment_count * 2 + c.vote_count) DESC, c.created_at DESC NULLS LAST, c.id",
}


class DuckDBContentStore:
    """DuckDB-backed content, embedding and interaction storage."""

    def __init__(
        self,
        db_path: str,
        *,
        read_only: bool = False,
        initialize: bool = True,
    ) -> None:
        self.db_path = str(Path(db_path).expanduser().resolve())
        self.read_only = read_only
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = duckdb.connect(self.db_path, read_only=read_only)
        if initialize and not read_only:
            self.initialize()

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        self._conn.close()

    def initialize(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS content (
                id VARCHAR NOT NULL,
                content_type VARCHAR NOT NULL,
                title VARCHAR NOT NULL DEFAULT '',
                body VARCHAR NOT NULL DEFAULT '',
                category_id VARCHAR,
                category_name VARCHAR,
                author_id VARCHAR,
                created_at TIMESTAMP,
                comment_count INTEGER NOT NULL DEFAULT 0,
                vote_count INTEGER NOT NULL DEFAULT 0,
                metadata_json VARCHAR NOT NULL DEFAULT '{}',
                PRIMARY KEY (content_type, id)
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS embeddings (
                collection VARCHAR NOT NULL,
                id VARCHAR NOT NULL,
                embedding DOUBLE[] NOT NULL,
                PRIMARY KEY (collection, id)
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS interactions (
                user_id VARCHAR NOT NULL,
                content_id VARCHAR NOT NULL,
                kind VARCHAR NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                category_id VARCHAR
            );
            """
        )

    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        # Retrieval workers call in from several threads; each needs its own cursor.
        try:
            cursor = self._conn.cursor()
        except duckdb.Error as exc:
            raise BackendUnavailableError(f"DuckDB store unavailable: {exc}") from exc
        try:
            yield cursor
        finally:
            cursor.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_content(
        self, record: ContentRecord, embedding: list[float] | None = None
    ) -> None:
        """Insert or update a content row and, optionally, its vector."""
        collection = COLLECTIONS.get(record.content_type)
        if collection is None:
            raise ValueError(f"Unknown content type: {record.content_type}")
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO content (
                    id, content_type, title, body, category_id, category_name,
                    author_id, created_at, comment_count, vote_count, metadata_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (content_type, id) DO UPDATE SET
                    title = excluded.title,
                    body = excluded.body,
                    category_id = excluded.category_id,
                    category_name = excluded.category_name,
                    author_id = excluded.author_id,
                    created_at = excluded.created_at,
                    comment_count = excluded.comment_count,
                    vote_count = excluded.vote_count,
                    metadata_json = excluded.metadata_json
                """,
                [
                    record.id,
                    record.content_type,
                    record.title,
                    record.body,
                    record.category_id,
                    record.category_name,
                    record.author_id,
                    _naive_utc(record.created_at),
                    record.comment_count,
                    record.vote_count,
                    json.dumps(record.metadata, sort_keys=True),
                ],
            )
            if embedding is not None:
                cursor.execute(
                    """
                    INSERT INTO embeddings (collection, id, embedding)
                    VALUES (?, ?, ?)
                    ON CONFLICT (collection, id) DO UPDATE SET
                        embedding = excluded.embedding
                    """,
                    [collection, record.id, [float(value) for value in embedding]],
                )

    def add_interaction(self, interaction: InteractionRecord) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO interactions (user_id, content_id, kind, created_at, category_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    interaction.user_id,
                    interaction.content_id,
                    interaction.kind,
                    _naive_utc(interaction.created_at or datetime.now(timezone.utc)),
                    interaction.category_id,
                ],
            )

    # ------------------------------------------------------------------
    # SimilarityBackend
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        try:
            with self._cursor() as cursor:
                row = cursor.execute("SELECT count(*) FROM embeddings").fetchone()
        except (duckdb.Error, BackendUnavailableError) as exc:
            logger.warning("DuckDB readiness check failed: %s", exc)
            return False
        return row is not None and int(row[0]) > 0

    def search(
        self,
        *,
        collection: str,
        query_vector: list[float],
        limit: int,
        filter: dict[str, Any] | None = None,
    ) -> list[SearchPoint]:
        content_type = _CONTENT_TYPES_BY_COLLECTION.get(collection)
        if content_type is None:
            return []
        clauses, params = _content_filter_sql(filter or {})
        where = "".join(f" AND {clause}" for clause in clauses)
        columns = ", ".join(f"c.{name}" for name in _CONTENT_COLUMNS)
        sql = f"""
            SELECT {columns},
                   list_cosine_similarity(e.embedding, ?::DOUBLE[]) AS similarity
            FROM embeddings e
            JOIN content c ON c.id = e.id AND c.content_type = ?
            WHERE e.collection = ?{where}
            ORDER BY similarity DESC NULLS LAST, c.id
            LIMIT ?
        """
        with self._cursor() as cursor:
            rows = cursor.execute(
                sql,
                [[float(value) for value in query_vector], content_type, collection]
                + params
                + [max(limit, 1)],
            ).fetchall()

        points: list[SearchPoint] = []
        for row in rows:
            payload = _content_row_to_dict(row[: len(_CONTENT_COLUMNS)])
            similarity = row[len(_CONTENT_COLUMNS)]
            # cosine similarity lives in [-1, 1]
            score = 0.0 if similarity is None else (float(similarity) + 1.0) / 2.0
            points.append(SearchPoint(id=str(payload["id"]), score=score, payload=payload))
        return points

    # ------------------------------------------------------------------
    # MetadataStore
    # ------------------------------------------------------------------

    def find_many(
        self,
        content_type: str,
        filter: dict[str, Any] | None = None,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        filters = dict(filter or {})
        if content_type == INTERACTION_KIND:
            return self._find_interactions(filters, limit=limit, offset=offset)
        if content_type not in COLLECTIONS:
            raise ValueError(f"Unknown content type: {content_type}")

        order_key = filters.pop("order_by", "recent")
        if order_key not in _ORDERINGS:
            raise ValueError(f"Unknown ordering: {order_key}")
        clauses, params = _content_filter_sql(filters)
        where = "".join(f" AND {clause}" for clause in clauses)
        columns = ", ".join(f"c.{name}" for name in _CONTENT_COLUMNS)
        sql = f"""
            SELECT {columns}
            FROM content c
            WHERE c.content_type = ?{where}
            ORDER BY {_ORDERINGS[order_key]}
            LIMIT ? OFFSET ?
        """
        with self._cursor() as cursor:
            rows = cursor.execute(
                sql, [content_type] + params + [max(limit, 1), max(offset, 0)]
            ).fetchall()
        return [_content_row_to_dict(row) for row in rows]

    def _find_interactions(
        self, filters: dict[str, Any], *, limit: int, offset: int
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for key, value in filters.items():
            if key == "user_id":
                clauses.append("user_id = ?")
                params.append(value)
            elif key == "exclude_user_id":
                clauses.append("user_id <> ?")
                params.append(value)
            elif key == "kinds":
                clauses.append("list_contains(?::VARCHAR[], kind)")
                params.append([str(kind) for kind in value])
            elif key == "content_ids":
                clauses.append("list_contains(?::VARCHAR[], content_id)")
                params.append([str(item) for item in value])
            else:
                raise ValueError(f"Unsupported interaction filter: {key}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT user_id, content_id, kind, created_at, category_id
            FROM interactions
            {where}
            ORDER BY created_at DESC NULLS LAST, content_id
            LIMIT ? OFFSET ?
        """
        with self._cursor() as cursor:
            rows = cursor.execute(sql, params + [max(limit, 1), max(offset, 0)]).fetchall()
        return [
            {
                "user_id": str(row[0]),
                "content_id": str(row[1]),
                "kind": str(row[2]),
                "created_at": row[3],
                "category_id": row[4],
            }
            for row in rows
        ]


def _content_filter_sql(filters: dict[str, Any]) -> tuple[list[str], list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for key, value in filters.items():
        if value is None:
            continue
        if key == "category_id":
            clauses.append("c.category_id = ?")
            params.append(value)
        elif key == "created_after":
            clauses.append("c.created_at >= ?")
            params.append(_naive_utc(value))
        elif key == "author_id":
            clauses.append("c.author_id = ?")
            params.append(value)
        elif key == "exclude_author_id":
            clauses.append("(c.author_id IS NULL OR c.author_id <> ?)")
            params.append(value)
        elif key == "ids":
            clauses.append("list_contains(?::VARCHAR[], c.id)")
            params.append([str(item) for item in value])
        elif key == "exclude_ids":
            clauses.append("NOT list_contains(?::VARCHAR[], c.id)")
            params.append([str(item) for item in value])
        elif key == "contains":
            clauses.append(
                "(contains(lower(c.title), lower(?)) OR contains(lower(c.body), lower(?)))"
            )
            params.extend([value, value])
        else:
            raise ValueError(f"Unsupported content filter: {key}")
    return clauses, params


def _content_row_to_dict(row: tuple[Any, ...]) -> dict[str, Any]:
    record = dict(zip(_CONTENT_COLUMNS, row))
    raw_metadata = record.pop("metadata_json") or "{}"
    try:
        metadata = json.loads(raw_metadata)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed metadata for %s", record["id"])
        metadata = {}
    record["metadata"] = metadata if isinstance(metadata, dict) else {}
    record["id"] = str(record["id"])
    return record


def _naive_utc(value: datetime | None) -> datetime | None:
    # TIMESTAMP columns hold naive UTC.
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
