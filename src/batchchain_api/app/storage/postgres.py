"""PostgreSQL storage backend for generation tasks.

Terms:
- Migration: creating/updating database tables before normal reads/writes.
- Conditional update: `UPDATE ... WHERE status = ANY(expected)`; zero rows
  touched means another writer moved the task first.
"""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from batchchain_api.app.models import ImageSize, Task, TaskStatus, status_aliases
from batchchain_api.app.storage.base import TaskStoreError


class PostgresTaskStore:
    """Thread-safe PostgreSQL-backed storage for Task records."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required table and indexes if they do not already exist."""
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS generation_tasks (
                    task_id UUID PRIMARY KEY,
                    batch_id TEXT NOT NULL,
                    batch_index INTEGER NOT NULL,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    reference_urls JSONB NOT NULL DEFAULT '[]'::jsonb,
                    size TEXT NOT NULL DEFAULT 'auto',
                    result_url TEXT,
                    error_message TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    UNIQUE (batch_id, batch_index)
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_generation_tasks_batch_id
                ON generation_tasks(batch_id, batch_index)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_generation_tasks_status
                ON generation_tasks(status)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_generation_tasks_updated_at
                ON generation_tasks(updated_at DESC)
                """)
            conn.commit()

    def create_batch(
        self,
        prompts: list[str],
        *,
        owner_id: str,
        reference_urls: list[str] | None = None,
        size: ImageSize = "auto",
        batch_id: str | None = None,
    ) -> list[Task]:
        """Insert one queued row per prompt and return them in batch order."""
        resolved_batch_id = batch_id or str(uuid.uuid4())
        now = datetime.now(tz=UTC)
        references = self._json_wrapper(list(reference_urls or []))
        with self._session() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(batch_index) + 1, 0) AS next_index "
                "FROM generation_tasks WHERE batch_id = %s",
                (resolved_batch_id,),
            ).fetchone()
            start_index = int(row["next_index"]) if row else 0
            for offset, prompt in enumerate(prompts):
                conn.execute(
                    """
                    INSERT INTO generation_tasks (
                        task_id,
                        batch_id,
                        batch_index,
                        owner_id,
                        status,
                        prompt,
                        reference_urls,
                        size,
                        result_url,
                        error_message,
                        attempts,
                        created_at,
                        updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        uuid.uuid4(),
                        resolved_batch_id,
                        start_index + offset,
                        owner_id,
                        "queued",
                        prompt,
                        references,
                        size,
                        None,
                        None,
                        0,
                        now,
                        now,
                    ),
                )
            conn.commit()
        created = [
            task
            for task in self.list_tasks(batch_id=resolved_batch_id)
            if task.batch_index >= start_index
        ]
        if len(created) != len(prompts):
            raise TaskStoreError(f"Failed to load created tasks for batch {resolved_batch_id}")
        return created

    def get_task(self, task_id: str) -> Task | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM generation_tasks WHERE task_id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(
        self,
        *,
        batch_id: str | None = None,
        statuses: tuple[str, ...] | None = None,
        updated_before: datetime | None = None,
    ) -> list[Task]:
        clauses: list[str] = []
        params: list[Any] = []
        if batch_id is not None:
            clauses.append("batch_id = %s")
            params.append(batch_id)
        if statuses:
            clauses.append("status = ANY(%s)")
            params.append(status_aliases(statuses))
        if updated_before is not None:
            clauses.append("updated_at < %s")
            params.append(updated_before)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT * FROM generation_tasks {where} ORDER BY batch_id, batch_index",
                tuple(params),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks(self, batch_id: str, *, status: TaskStatus | None = None) -> int:
        if status is None:
            query = "SELECT COUNT(*) AS n FROM generation_tasks WHERE batch_id = %s"
            params: tuple[Any, ...] = (batch_id,)
        else:
            query = (
                "SELECT COUNT(*) AS n FROM generation_tasks "
                "WHERE batch_id = %s AND status = ANY(%s)"
            )
            params = (batch_id, status_aliases((status,)))
        with self._session() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["n"]) if row else 0

    def transition(
        self,
        task_id: str,
        *,
        to_status: TaskStatus,
        expected_statuses: tuple[str, ...],
        result_url: str | None = None,
        error_message: str | None = None,
    ) -> Task | None:
        """Move a task to `to_status` only if it is still in one of `expected_statuses`."""
        updated_at = datetime.now(tz=UTC)
        with self._session() as conn:
            row = conn.execute(
                """
                UPDATE generation_tasks
                SET status = %s,
                    result_url = %s,
                    error_message = %s,
                    attempts = attempts + %s,
                    updated_at = %s
                WHERE task_id::text = %s
                  AND status = ANY(%s)
                RETURNING *
                """,
                (
                    to_status,
                    result_url,
                    error_message,
                    1 if to_status == "processing" else 0,
                    updated_at,
                    task_id,
                    status_aliases(expected_statuses),
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            if self.get_task(task_id) is None:
                raise KeyError(f"Task {task_id} does not exist")
            return None
        return self._row_to_task(row)

    @contextmanager
    def _session(self) -> Iterator[Any]:
        """Open a locked connection and surface driver errors as TaskStoreError."""
        try:
            with self._lock, self._connect() as conn:
                yield conn
        except self._psycopg.Error as exc:
            raise TaskStoreError(f"Task store operation failed: {exc}") from exc

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_list(raw: Any) -> list[str]:
        """Parse JSON-like value into a list of strings; fall back to empty list."""
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, list):
            return [str(item) for item in parsed]
        return []

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        """Parse datetime value from database driver output."""
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        """Map one DB row to the canonical Task Pydantic model."""
        return Task(
            task_id=str(row["task_id"]),
            batch_id=row["batch_id"],
            batch_index=row["batch_index"],
            owner_id=row["owner_id"],
            status=row["status"],
            prompt=row["prompt"],
            reference_urls=cls._parse_json_list(row["reference_urls"]),
            size=row["size"],
            result_url=row["result_url"],
            error_message=row["error_message"],
            attempts=row["attempts"],
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )
