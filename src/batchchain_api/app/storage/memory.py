"""In-memory task store for local runs and tests."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import uuid4

from batchchain_api.app.models import ImageSize, Task, TaskStatus, normalize_status


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class InMemoryTaskStore:
    """Thread-safe dict-backed implementation of TaskStore.

    `clock` is injectable so callers can create rows "in the past" and let
    the watchdog find them stale.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = threading.Lock()
        self._clock = clock or _utc_now

    def migrate(self) -> None:
        return None

    def create_batch(
        self,
        prompts: list[str],
        *,
        owner_id: str,
        reference_urls: list[str] | None = None,
        size: ImageSize = "auto",
        batch_id: str | None = None,
    ) -> list[Task]:
        resolved_batch_id = batch_id or str(uuid4())
        now = self._clock()
        created: list[Task] = []
        with self._lock:
            taken = {
                task.batch_index for task in self._tasks.values() if task.batch_id == resolved_batch_id
            }
            start_index = max(taken) + 1 if taken else 0
            for offset, prompt in enumerate(prompts):
                task = Task(
                    task_id=str(uuid4()),
                    batch_id=resolved_batch_id,
                    batch_index=start_index + offset,
                    owner_id=owner_id,
                    status="queued",
                    prompt=prompt,
                    reference_urls=list(reference_urls or []),
                    size=size,
                    created_at=now,
                    updated_at=now,
                )
                self._tasks[task.task_id] = task
                created.append(task.model_copy(deep=True))
        return created

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(
        self,
        *,
        batch_id: str | None = None,
        statuses: tuple[str, ...] | None = None,
        updated_before: datetime | None = None,
    ) -> list[Task]:
        wanted = {normalize_status(status) for status in statuses} if statuses else None
        with self._lock:
            matches = [
                task.model_copy(deep=True)
                for task in self._tasks.values()
                if (batch_id is None or task.batch_id == batch_id)
                and (wanted is None or task.status in wanted)
                and (updated_before is None or task.updated_at < updated_before)
            ]
        return sorted(matches, key=lambda task: (task.batch_id, task.batch_index))

    def count_tasks(self, batch_id: str, *, status: TaskStatus | None = None) -> int:
        with self._lock:
            return sum(
                1
                for task in self._tasks.values()
                if task.batch_id == batch_id and (status is None or task.status == status)
            )

    def transition(
        self,
        task_id: str,
        *,
        to_status: TaskStatus,
        expected_statuses: tuple[str, ...],
        result_url: str | None = None,
        error_message: str | None = None,
    ) -> Task | None:
        expected = {normalize_status(status) for status in expected_statuses}
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            if current.status not in expected:
                return None
            updated = current.model_copy(
                update={
                    "status": to_status,
                    "result_url": result_url,
                    "error_message": error_message,
                    "attempts": current.attempts + (1 if to_status == "processing" else 0),
                    "updated_at": self._clock(),
                }
            )
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)
