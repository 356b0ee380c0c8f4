from __future__ import annotations

import sqlite3
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from visibility_tracker.models import DateRange, QueryFilters

BRAND_TYPE_CLIENT = "client"
BRAND_TYPE_COMPETITOR = "competitor"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        client_url TEXT NOT NULL DEFAULT '',
        color TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS competitors (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES projects(id),
        name TEXT NOT NULL,
        domain TEXT NOT NULL DEFAULT '',
        region TEXT NOT NULL DEFAULT 'GLOBAL',
        is_active INTEGER NOT NULL DEFAULT 1,
        position INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS prompts (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES projects(id),
        text TEXT NOT NULL,
        region TEXT NOT NULL DEFAULT 'GLOBAL',
        topic_id TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_responses (
        id TEXT PRIMARY KEY,
        prompt_id TEXT NOT NULL REFERENCES prompts(id),
        platform TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS brand_mentions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id TEXT NOT NULL,
        ai_response_id TEXT NOT NULL REFERENCES ai_responses(id),
        brand_type TEXT NOT NULL CHECK (brand_type IN ('client', 'competitor')),
        competitor_id TEXT REFERENCES competitors(id),
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS citations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id TEXT NOT NULL,
        ai_response_id TEXT NOT NULL REFERENCES ai_responses(id),
        competitor_id TEXT REFERENCES competitors(id),
        domain TEXT NOT NULL,
        url TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS brand_evaluations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id TEXT NOT NULL,
        ai_response_id TEXT NOT NULL REFERENCES ai_responses(id),
        entity_type TEXT NOT NULL CHECK (entity_type IN ('client', 'competitor')),
        entity_name TEXT NOT NULL,
        competitor_id TEXT REFERENCES competitors(id),
        sentiment TEXT NOT NULL CHECK (sentiment IN ('positive', 'neutral', 'negative')),
        sentiment_rating REAL NOT NULL,
        confidence REAL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_mentions_project ON brand_mentions (project_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_citations_project ON citations (project_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_evaluations_project ON brand_evaluations (project_id, created_at)",
)

# Shared joins for every project-scoped fact table aliased as ``f``.
_FACT_JOINS = """
    JOIN ai_responses r ON r.id = f.ai_response_id
    JOIN prompts p ON p.id = r.prompt_id
    LEFT JOIN competitors c ON c.id = f.competitor_id
"""


def to_utc_iso(value: datetime | None = None) -> str:
    moment = value or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _placeholders(values: Sequence[object]) -> str:
    return ", ".join("?" for _ in values)


class AnalyticsStore(AbstractContextManager["AnalyticsStore"]):
    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # The poller runs reads on an executor thread; calls never overlap.
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self.conn:
            for statement in _SCHEMA:
                self.conn.execute(statement)

    def add_project(self, project_id: str, name: str, client_url: str = "", color: str | None = None) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO projects (id, name, client_url, color)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    client_url = excluded.client_url,
                    color = excluded.color
                """,
                (project_id, name, client_url, color),
            )

    def add_competitor(
        self,
        competitor_id: str,
        project_id: str,
        name: str,
        *,
        domain: str = "",
        region: str = "GLOBAL",
        is_active: bool = True,
    ) -> None:
        with self.conn:
            row = self.conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 AS next FROM competitors WHERE project_id = ?",
                (project_id,),
            ).fetchone()
            self.conn.execute(
                """
                INSERT INTO competitors (id, project_id, name, domain, region, is_active, position)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (competitor_id, project_id, name, domain, region.upper(), int(is_active), row["next"]),
            )

    def set_competitor_active(self, competitor_id: str, is_active: bool) -> None:
        with self.conn:
            self.conn.execute(
                "UPDATE competitors SET is_active = ? WHERE id = ?",
                (int(is_active), competitor_id),
            )

    def add_prompt(
        self,
        prompt_id: str,
        project_id: str,
        text: str,
        *,
        region: str = "GLOBAL",
        topic_id: str | None = None,
        is_active: bool = True,
    ) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO prompts (id, project_id, text, region, topic_id, is_active)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (prompt_id, project_id, text, region.upper(), topic_id, int(is_active)),
            )

    def add_ai_response(
        self,
        response_id: str,
        prompt_id: str,
        platform: str,
        created_at: datetime | None = None,
    ) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO ai_responses (id, prompt_id, platform, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (response_id, prompt_id, platform.lower(), to_utc_iso(created_at)),
            )

    def add_brand_mention(
        self,
        project_id: str,
        ai_response_id: str,
        *,
        competitor_id: str | None = None,
        created_at: datetime | None = None,
    ) -> int:
        brand_type = BRAND_TYPE_COMPETITOR if competitor_id else BRAND_TYPE_CLIENT
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO brand_mentions (project_id, ai_response_id, brand_type, competitor_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (project_id, ai_response_id, brand_type, competitor_id, to_utc_iso(created_at)),
            )
        return int(cursor.lastrowid)

    def add_citation(
        self,
        project_id: str,
        ai_response_id: str,
        domain: str,
        *,
        url: str = "",
        competitor_id: str | None = None,
        created_at: datetime | None = None,
    ) -> int:
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO citations (project_id, ai_response_id, competitor_id, domain, url, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    ai_response_id,
                    competitor_id,
                    domain.lower(),
                    url,
                    to_utc_iso(created_at),
                ),
            )
        return int(cursor.lastrowid)

    def add_evaluation(
        self,
        project_id: str,
        ai_response_id: str,
        entity_name: str,
        sentiment: str,
        rating: float,
        *,
        competitor_id: str | None = None,
        confidence: float | None = None,
        created_at: datetime | None = None,
    ) -> int:
        if not -1.0 <= rating <= 1.0:
            raise ValueError(f"sentiment rating must be within [-1, 1], got {rating}")
        entity_type = BRAND_TYPE_COMPETITOR if competitor_id else BRAND_TYPE_CLIENT
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO brand_evaluations (
                    project_id, ai_response_id, entity_type, entity_name, competitor_id,
                    sentiment, sentiment_rating, confidence, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    ai_response_id,
                    entity_type,
                    entity_name,
                    competitor_id,
                    sentiment,
                    rating,
                    confidence,
                    to_utc_iso(created_at),
                ),
            )
        return int(cursor.lastrowid)

    def get_project(self, project_id: str) -> sqlite3.Row | None:
        return self.conn.execute(
            "SELECT id, name, client_url, color FROM projects WHERE id = ?",
            (project_id,),
        ).fetchone()

    def active_competitors(self, project_id: str) -> list[sqlite3.Row]:
        return self.conn.execute(
            """
            SELECT id, name, domain, region FROM competitors
            WHERE project_id = ? AND is_active = 1
            ORDER BY position
            """,
            (project_id,),
        ).fetchall()

    def active_prompt_ids(self, project_id: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT id FROM prompts WHERE project_id = ? AND is_active = 1 ORDER BY rowid",
            (project_id,),
        ).fetchall()
        return [str(row["id"]) for row in rows]

    def response_platforms(self, prompt_ids: Sequence[str], platforms: Sequence[str]) -> list[sqlite3.Row]:
        if not prompt_ids or not platforms:
            return []
        return self.conn.execute(
            f"""
            SELECT id, prompt_id, platform FROM ai_responses
            WHERE prompt_id IN ({_placeholders(prompt_ids)})
              AND platform IN ({_placeholders(platforms)})
            """,
            (*prompt_ids, *platforms),
        ).fetchall()

    def mention_rows(
        self,
        project_id: str,
        filters: QueryFilters | None = None,
        *,
        platforms: Sequence[str] | None = None,
        active_prompts_only: bool = False,
    ) -> list[sqlite3.Row]:
        return self._fact_rows(
            "brand_mentions",
            "f.id, f.brand_type, f.competitor_id, f.created_at, r.platform, p.region AS prompt_region",
            project_id,
            filters,
            platforms=platforms,
            active_prompts_only=active_prompts_only,
        )

    def citation_rows(
        self,
        project_id: str,
        filters: QueryFilters | None = None,
        *,
        platforms: Sequence[str] | None = None,
    ) -> list[sqlite3.Row]:
        return self._fact_rows(
            "citations",
            "f.id, f.competitor_id, f.domain, f.url, f.created_at, r.platform",
            project_id,
            filters,
            platforms=platforms,
        )

    def evaluation_rows(self, project_id: str, filters: QueryFilters | None = None) -> list[sqlite3.Row]:
        return self._fact_rows(
            "brand_evaluations",
            """
            f.id, f.ai_response_id, f.entity_type, f.entity_name, f.competitor_id,
            f.sentiment, f.sentiment_rating, f.confidence, f.created_at, r.platform
            """,
            project_id,
            filters,
        )

    def _fact_rows(
        self,
        table: str,
        columns: str,
        project_id: str,
        filters: QueryFilters | None,
        *,
        platforms: Sequence[str] | None = None,
        active_prompts_only: bool = False,
    ) -> list[sqlite3.Row]:
        clauses = ["f.project_id = ?"]
        params: list[object] = [project_id]
        filters = filters or QueryFilters()

        if filters.date_range is not None:
            # Half-open [start, end): adjacent periods never share a row.
            clauses.extend(["f.created_at >= ?", "f.created_at < ?"])
            params.extend(_range_bounds(filters.date_range))
        if filters.platform:
            clauses.append("r.platform = ?")
            params.append(filters.platform)
        if filters.region:
            clauses.append("p.region = ?")
            params.append(filters.region)
        if filters.topic_id:
            clauses.append("p.topic_id = ?")
            params.append(filters.topic_id)
        if platforms:
            clauses.append(f"r.platform IN ({_placeholders(platforms)})")
            params.extend(platforms)
        if active_prompts_only:
            clauses.append("p.is_active = 1")

        # Competitor facts only count while the competitor is active.
        clauses.append("(f.competitor_id IS NULL OR c.is_active = 1)")

        sql = f"""
            SELECT {columns}, c.name AS competitor_name, c.region AS competitor_region
            FROM {table} f
            {_FACT_JOINS}
            WHERE {" AND ".join(clauses)}
            ORDER BY f.created_at, f.id
        """
        return self.conn.execute(sql, params).fetchall()

    def count_rows(self, table: str) -> int:
        if table not in {"projects", "prompts", "ai_responses", "brand_mentions", "citations", "brand_evaluations"}:
            raise ValueError(f"unknown table: {table}")
        row = self.conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()
        return int(row["c"]) if row else 0

    def close(self) -> None:
        self.conn.close()

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()


def _range_bounds(date_range: DateRange) -> tuple[str, str]:
    return to_utc_iso(date_range.start), to_utc_iso(date_range.end)
