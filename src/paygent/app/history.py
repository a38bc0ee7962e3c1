"""History log: bounded, newest-first store of pipeline run summaries.

Two backends share the ``HistoryStore`` protocol:
- ``InMemoryHistoryLog``: default; a bounded deque, lost on restart.
- ``PostgresHistoryLog``: used when ``PAYGENT_DATABASE_URL`` is set; trims to
  capacity on every insert so the table honours the same bound.
"""

from __future__ import annotations

import json
import threading
from collections import deque
from datetime import datetime
from typing import Any, Protocol

from .models import HistoryEntry, PipelineResult


class HistoryStore(Protocol):
    capacity: int

    def add_entry(self, entry: HistoryEntry) -> None: ...

    def get_recent(self, limit: int) -> list[HistoryEntry]: ...


def history_entry_from_result(result: PipelineResult) -> HistoryEntry:
    """Project a finished run onto the display/audit entry."""
    tx_hashes = [
        step.payment.tx_id
        for step in result.step_results
        if step.payment is not None and step.payment.tx_id
    ]
    return HistoryEntry(
        id=result.pipeline_id,
        query=result.query,
        step_count=len(result.plan.steps) if result.plan else len(result.step_results),
        total_cost=result.total_cost,
        duration_ms=result.duration_ms,
        status="success" if result.success else "failed",
        tx_hashes=tx_hashes,
        timestamp=result.completed_at,
        output=result.final_output,
        error=result.error,
    )


class InMemoryHistoryLog:
    def __init__(self, capacity: int = 50) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: deque[HistoryEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def add_entry(self, entry: HistoryEntry) -> None:
        with self._lock:
            # appendleft on a full deque drops the oldest entry from the right.
            self._entries.appendleft(entry)

    def get_recent(self, limit: int) -> list[HistoryEntry]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._entries)[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PostgresHistoryLog:
    """Thread-safe PostgreSQL-backed history log."""

    def __init__(self, database_url: str, *, capacity: int = 50) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.database_url = database_url
        self.capacity = capacity
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()
        self.migrate()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_history (
                    seq BIGSERIAL PRIMARY KEY,
                    pipeline_id TEXT NOT NULL,
                    query TEXT NOT NULL,
                    step_count INTEGER NOT NULL,
                    total_cost BIGINT NOT NULL,
                    duration_ms DOUBLE PRECISION NOT NULL,
                    status TEXT NOT NULL,
                    tx_hashes JSONB NOT NULL DEFAULT '[]'::jsonb,
                    output_json JSONB,
                    error TEXT,
                    finished_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.commit()

    def add_entry(self, entry: HistoryEntry) -> None:
        payload = entry.model_dump(mode="json")
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_history (
                    pipeline_id,
                    query,
                    step_count,
                    total_cost,
                    duration_ms,
                    status,
                    tx_hashes,
                    output_json,
                    error,
                    finished_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.query,
                    entry.step_count,
                    entry.total_cost,
                    entry.duration_ms,
                    entry.status,
                    self._json_wrapper(payload["tx_hashes"]),
                    self._json_wrapper(payload["output"]) if payload["output"] is not None else None,
                    entry.error,
                    entry.timestamp,
                ),
            )
            conn.execute(
                """
                DELETE FROM pipeline_history
                WHERE seq IN (
                    SELECT seq FROM pipeline_history ORDER BY seq DESC OFFSET %s
                )
                """,
                (self.capacity,),
            )
            conn.commit()

    def get_recent(self, limit: int) -> list[HistoryEntry]:
        if limit <= 0:
            return []
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pipeline_history ORDER BY seq DESC LIMIT %s",
                (min(limit, self.capacity),),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with an install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL history requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any) -> Any:
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @classmethod
    def _row_to_entry(cls, row: Any) -> HistoryEntry:
        finished_at = row["finished_at"]
        return HistoryEntry(
            id=row["pipeline_id"],
            query=row["query"],
            step_count=row["step_count"],
            total_cost=row["total_cost"],
            duration_ms=row["duration_ms"],
            status=row["status"],
            tx_hashes=cls._parse_json(row["tx_hashes"]) or [],
            timestamp=(
                finished_at if isinstance(finished_at, datetime) else datetime.fromisoformat(finished_at)
            ),
            output=cls._parse_json(row["output_json"]),
            error=row["error"],
        )
