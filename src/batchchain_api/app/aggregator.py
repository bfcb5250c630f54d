from __future__ import annotations

from .models import BatchStatus
from .storage import TaskStore


class BatchAggregator:
    """Read-only batch progress computed from task rows on every call."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def get_batch_status(self, batch_id: str) -> BatchStatus:
        total = self.store.count_tasks(batch_id)
        completed = self.store.count_tasks(batch_id, status="completed")
        failed = self.store.count_tasks(batch_id, status="failed")
        # Counts come from separate queries; clamp so a concurrent write never yields < 0.
        pending = max(total - completed - failed, 0)
        progress = round((completed + failed) / total, 4) if total else 0.0
        return BatchStatus(
            batch_id=batch_id,
            total=total,
            completed=completed,
            failed=failed,
            pending=pending,
            progress=progress,
            is_complete=total > 0 and pending == 0,
        )
