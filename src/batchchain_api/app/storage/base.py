"""Storage interface for generation task records."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from batchchain_api.app.models import ImageSize, Task, TaskStatus


class TaskStoreError(RuntimeError):
    """Raised when the backing database cannot complete a task operation."""


class TaskStore(Protocol):
    def migrate(self) -> None: ...

    def create_batch(
        self,
        prompts: list[str],
        *,
        owner_id: str,
        reference_urls: list[str] | None = None,
        size: ImageSize = "auto",
        batch_id: str | None = None,
    ) -> list[Task]: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(
        self,
        *,
        batch_id: str | None = None,
        statuses: tuple[str, ...] | None = None,
        updated_before: datetime | None = None,
    ) -> list[Task]: ...

    def count_tasks(self, batch_id: str, *, status: TaskStatus | None = None) -> int: ...

    def transition(
        self,
        task_id: str,
        *,
        to_status: TaskStatus,
        expected_statuses: tuple[str, ...],
        result_url: str | None = None,
        error_message: str | None = None,
    ) -> Task | None: ...
