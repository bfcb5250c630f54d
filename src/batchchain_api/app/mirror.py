"""Denormalized user-facing copies of task status.

The asset gallery keeps its own row per (batch_id, batch_index). Those rows
are a convenience copy: callers must log, never propagate, mirror failures.
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import UTC, datetime
from typing import Any, Protocol

from .models import TaskStatus

logger = logging.getLogger(__name__)

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StatusMirror(Protocol):
    def mirror(
        self,
        batch_id: str,
        batch_index: int,
        *,
        status: TaskStatus,
        result_url: str | None = None,
        error_message: str | None = None,
    ) -> int: ...


class NullStatusMirror:
    """Mirror used when no gallery table is attached."""

    def mirror(
        self,
        batch_id: str,
        batch_index: int,
        *,
        status: TaskStatus,
        result_url: str | None = None,
        error_message: str | None = None,
    ) -> int:
        return 0


class PostgresStatusMirror:
    """Update the gallery row that shares a task's (batch_id, batch_index)."""

    def __init__(self, database_url: str, *, table: str = "batch_assets") -> None:
        if not database_url:
            raise ValueError("database_url is required")
        if not _TABLE_NAME_RE.match(table):
            raise ValueError(f"Invalid mirror table name: {table!r}")
        self.database_url = database_url
        self.table = table
        self._lock = threading.Lock()
        self._psycopg = self._load_psycopg()

    def mirror(
        self,
        batch_id: str,
        batch_index: int,
        *,
        status: TaskStatus,
        result_url: str | None = None,
        error_message: str | None = None,
    ) -> int:
        with self._lock, self._psycopg.connect(self.database_url) as conn:
            cursor = conn.execute(
                f"""
                UPDATE {self.table}
                SET status = %s,
                    result_url = COALESCE(%s, result_url),
                    error_message = %s,
                    updated_at = %s
                WHERE batch_id = %s
                  AND batch_index = %s
                """,
                (
                    status,
                    result_url,
                    error_message,
                    datetime.now(tz=UTC),
                    batch_id,
                    batch_index,
                ),
            )
            conn.commit()
            return max(cursor.rowcount, 0)

    @staticmethod
    def _load_psycopg() -> Any:
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL mirror requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg


def mirror_quietly(
    mirror: StatusMirror,
    batch_id: str,
    batch_index: int,
    *,
    status: TaskStatus,
    result_url: str | None = None,
    error_message: str | None = None,
    log_prefix: str = "",
) -> int:
    """Apply a mirror update, logging instead of raising on failure."""
    try:
        touched = mirror.mirror(
            batch_id,
            batch_index,
            status=status,
            result_url=result_url,
            error_message=error_message,
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "%smirror_update event=failed batch_id=%s batch_index=%s status=%s reason=%s",
            log_prefix,
            batch_id,
            batch_index,
            status,
            exc,
        )
        return 0
    logger.info(
        "%smirror_update event=ok batch_id=%s batch_index=%s status=%s rows=%d",
        log_prefix,
        batch_id,
        batch_index,
        status,
        touched,
    )
    return touched
