"""Pydantic models shared across API, executor, scheduler, watchdog, and storage.

Terms used in this file:
- Task: one unit of work producing one generated image from one prompt.
- Batch: the set of tasks created together from one request (same batch_id).
- Terminal status: `completed` or `failed`; a task never leaves these.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# Task lifecycle states used by storage + API responses.
TaskStatus = Literal["queued", "processing", "completed", "failed"]
ImageSize = Literal["square", "landscape", "portrait", "auto"]

TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed")
STARTABLE_STATUSES: tuple[str, ...] = ("queued",)

# Older producers wrote "pending" or "ready" for a task that has not started yet.
_STATUS_SYNONYMS = {
    "pending": "queued",
    "ready": "queued",
}


def normalize_status(raw: str) -> str:
    """Map historical synonyms onto the canonical status vocabulary."""
    value = raw.strip().lower()
    return _STATUS_SYNONYMS.get(value, value)


def is_terminal(status: str) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES


class Task(BaseModel):
    """Canonical task record shape returned by API/storage."""

    task_id: str
    batch_id: str
    batch_index: int = Field(ge=0)
    # Resolved identity of the requester; used for artifact paths.
    owner_id: str
    status: TaskStatus = "queued"
    prompt: str
    reference_urls: list[str] = Field(default_factory=list)
    size: ImageSize = "auto"
    result_url: str | None = None
    error_message: str | None = None
    # Incremented each time an invocation successfully claims the task.
    attempts: int = 0
    created_at: datetime
    updated_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return normalize_status(value)
        return value


class BatchStatus(BaseModel):
    """Live counts for one batch, computed on demand from task rows."""

    batch_id: str
    total: int
    completed: int
    failed: int
    pending: int
    progress: float
    is_complete: bool


class ExecutionResult(BaseModel):
    """Structured outcome of one executor invocation."""

    status: Literal["success", "skipped", "error"]
    success: bool
    task_id: str
    batch_id: str | None = None
    result_url: str | None = None
    error_message: str | None = None
    message: str = ""
    execution_id: str
    duration_s: float = 0.0
    references_used: int = 0


WatchdogAction = Literal[
    "marked_as_failed",
    "restarted",
    "update_failed",
    "restart_failed",
    "skipped",
]


class WatchdogDetail(BaseModel):
    """What the watchdog did (or tried to do) for one task."""

    task_id: str
    batch_id: str | None = None
    batch_index: int | None = None
    action: WatchdogAction
    reason: str = ""
    elapsed_minutes: float | None = None
    error: str | None = None


class WatchdogReport(BaseModel):
    """Summary returned by one watchdog scan."""

    status: Literal["success", "error"] = "success"
    message: str = ""
    tasks_checked: int = 0
    tasks_restarted: int = 0
    tasks_failed: int = 0
    processing_time_s: float = 0.0
    details: list[WatchdogDetail] = Field(default_factory=list)


class CreateBatchRequest(BaseModel):
    """Request body for POST /batches."""

    # One prompt per task; min_length enforces a non-empty batch at API boundary.
    prompts: list[str] = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    reference_urls: list[str] = Field(default_factory=list)
    size: ImageSize = "auto"

    @field_validator("prompts")
    @classmethod
    def _prompts_not_blank(cls, value: list[str]) -> list[str]:
        if any(not prompt.strip() for prompt in value):
            raise ValueError("prompts must not be blank")
        return value


class CreateBatchResponse(BaseModel):
    """Response body for POST /batches."""

    batch_id: str
    task_ids: list[str]
    dispatched_task_id: str | None = None


class ExecuteTaskRequest(BaseModel):
    """Optional body for POST /tasks/{task_id}/execute."""

    owner_id: str | None = None


class WatchdogScanRequest(BaseModel):
    """Request body for POST /watchdog/scan."""

    batch_id: str | None = None
    check_all: bool = False


def status_aliases(statuses: tuple[str, ...] | list[str]) -> list[str]:
    """Expand canonical statuses with the synonyms that may still sit in old rows."""
    expanded: list[str] = []
    for status in statuses:
        canonical = normalize_status(status)
        if canonical not in expanded:
            expanded.append(canonical)
        for alias, target in _STATUS_SYNONYMS.items():
            if target == canonical and alias not in expanded:
                expanded.append(alias)
    return expanded
