from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar
from uuid import uuid4

from .artifacts import ArtifactStorageError, ArtifactStore, artifact_path, ensure_bucket
from .mirror import NullStatusMirror, StatusMirror, mirror_quietly
from .models import STARTABLE_STATUSES, ExecutionResult, Task, is_terminal
from .provider import ImageProvider, ProviderError
from .references import ReferenceLoader
from .storage import TaskStore, TaskStoreError

if TYPE_CHECKING:
    from .scheduler import ChainScheduler

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationOutcome:
    result_url: str
    references_used: int
    download_s: float
    provider_s: float
    upload_s: float


class WorkExecutor:
    """Run one generation task to a terminal state and hand the batch back to the chain.

    Every call returns an ExecutionResult; nothing raised inside a run reaches
    the caller. Once the task has been claimed it always ends `completed` or
    `failed`, unless the process dies mid-run (the watchdog's job).
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        provider: ImageProvider | None,
        artifacts: ArtifactStore,
        references: ReferenceLoader | None = None,
        mirror: StatusMirror | None = None,
        scheduler: ChainScheduler | None = None,
        bucket: str = "images",
        retry_policy: dict[str, float | int] | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.artifacts = artifacts
        self.references = references or ReferenceLoader(artifacts=artifacts)
        self.mirror = mirror or NullStatusMirror()
        self.scheduler = scheduler
        self.bucket = bucket
        retry_policy = retry_policy or {}
        self.max_retries = int(retry_policy.get("max_retries", 0))
        self.backoff_s = float(retry_policy.get("backoff_s", 0.0))

    def execute(self, task_id: str, *, owner_id: str | None = None) -> ExecutionResult:
        execution_id = uuid4().hex[:8]
        started = time.perf_counter()
        try:
            return self._execute(task_id, owner_id=owner_id, execution_id=execution_id, started=started)
        except Exception as exc:  # noqa: BLE001
            logger.exception("[%s] task_execute event=crashed task_id=%s", execution_id, task_id)
            message = str(exc) or "An unexpected error occurred"
            return ExecutionResult(
                status="error",
                success=False,
                task_id=task_id,
                error_message=message,
                message=message,
                execution_id=execution_id,
                duration_s=_elapsed_s(started),
            )

    def _execute(
        self,
        task_id: str,
        *,
        owner_id: str | None,
        execution_id: str,
        started: float,
    ) -> ExecutionResult:
        prefix = f"[{execution_id}] "
        logger.info("%stask_execute event=start task_id=%s", prefix, task_id)

        try:
            task = self._with_retry(
                lambda: self.store.get_task(task_id),
                name=f"fetch task {task_id}",
                log_prefix=prefix,
            )
        except Exception as exc:  # noqa: BLE001
            return self._error_result(
                task_id, f"Failed to fetch task {task_id}: {exc}", execution_id, started
            )
        if task is None:
            return self._error_result(task_id, f"Task {task_id} not found", execution_id, started)

        if is_terminal(task.status):
            logger.info(
                "%stask_execute event=skip task_id=%s status=%s detail=already_terminal",
                prefix,
                task_id,
                task.status,
            )
            self._advance_quietly(task.batch_id, prefix)
            return self._skipped_result(task, f"Task {task_id} already {task.status}", execution_id, started)

        try:
            claimed = self._with_retry(
                lambda: self.store.transition(
                    task_id,
                    to_status="processing",
                    expected_statuses=STARTABLE_STATUSES,
                ),
                name=f"claim task {task_id}",
                log_prefix=prefix,
            )
        except Exception as exc:  # noqa: BLE001
            return self._error_result(
                task_id, f"Failed to mark task {task_id} processing: {exc}", execution_id, started
            )
        if claimed is None:
            return self._lost_claim(task, execution_id, started, prefix)

        resolved_owner = owner_id or claimed.owner_id
        logger.info(
            "%stask_execute event=claimed task_id=%s batch_id=%s batch_index=%d attempt=%d",
            prefix,
            task_id,
            claimed.batch_id,
            claimed.batch_index,
            claimed.attempts,
        )
        mirror_quietly(
            self.mirror,
            claimed.batch_id,
            claimed.batch_index,
            status="processing",
            log_prefix=prefix,
        )

        try:
            outcome = self._generate(claimed, owner_id=resolved_owner, log_prefix=prefix)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__
            logger.warning("%stask_execute event=failed task_id=%s reason=%s", prefix, task_id, message)
            finished = self._record_failure(claimed, message, prefix)
            result = ExecutionResult(
                status="error",
                success=False,
                task_id=task_id,
                batch_id=claimed.batch_id,
                error_message=message,
                message=message,
                execution_id=execution_id,
                duration_s=_elapsed_s(started),
            )
        else:
            result = self._record_completion(claimed, outcome, execution_id, started, prefix)
            finished = result.status == "success"

        # Only the run that wrote the terminal status hands the batch on; a run
        # the watchdog already failed out must not dispatch a second task.
        if finished:
            self._advance_quietly(claimed.batch_id, prefix)
        return result

    def _generate(self, task: Task, *, owner_id: str, log_prefix: str) -> GenerationOutcome:
        if self.provider is None:
            raise ProviderError("No image provider configured")

        download_started = time.perf_counter()
        references = self.references.load(task.reference_urls, log_prefix=log_prefix)
        download_s = _elapsed_s(download_started)

        provider_started = time.perf_counter()
        if references:
            mode = "edit"
            image = self.provider.edit(task.prompt, references, size=task.size)
        else:
            mode = "generate"
            image = self.provider.generate(task.prompt, size=task.size)
        provider_s = _elapsed_s(provider_started)
        if not image:
            raise ProviderError("Provider returned an empty image")
        logger.info(
            "%sprovider_call event=ok task_id=%s mode=%s references=%d duration_s=%.1f",
            log_prefix,
            task.task_id,
            mode,
            len(references),
            provider_s,
        )

        upload_started = time.perf_counter()
        ensure_bucket(self.artifacts, self.bucket)
        path = artifact_path(owner_id, task.task_id)
        result_url = self._with_retry(
            lambda: self.artifacts.upload(self.bucket, path, image, content_type="image/png"),
            name="upload generated image",
            log_prefix=log_prefix,
        )
        upload_s = _elapsed_s(upload_started)
        return GenerationOutcome(
            result_url=result_url,
            references_used=len(references),
            download_s=download_s,
            provider_s=provider_s,
            upload_s=upload_s,
        )

    def _record_completion(
        self,
        task: Task,
        outcome: GenerationOutcome,
        execution_id: str,
        started: float,
        prefix: str,
    ) -> ExecutionResult:
        try:
            completed = self._with_retry(
                lambda: self.store.transition(
                    task.task_id,
                    to_status="completed",
                    expected_statuses=("processing",),
                    result_url=outcome.result_url,
                ),
                name=f"complete task {task.task_id}",
                log_prefix=prefix,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("%stask_execute event=complete_write_failed task_id=%s", prefix, task.task_id)
            return self._error_result(
                task.task_id,
                f"Failed to record completion of task {task.task_id}: {exc}",
                execution_id,
                started,
                batch_id=task.batch_id,
            )
        if completed is None:
            # The watchdog failed this task out while the provider call was running.
            logger.warning(
                "%stask_execute event=result_discarded task_id=%s detail=no_longer_processing",
                prefix,
                task.task_id,
            )
            return self._error_result(
                task.task_id,
                f"Task {task.task_id} was no longer processing; result discarded",
                execution_id,
                started,
                batch_id=task.batch_id,
            )

        mirror_quietly(
            self.mirror,
            task.batch_id,
            task.batch_index,
            status="completed",
            result_url=outcome.result_url,
            log_prefix=prefix,
        )
        total_s = _elapsed_s(started)
        logger.info(
            "%stask_execute event=completed task_id=%s download_s=%.2f provider_s=%.2f "
            "upload_s=%.2f total_s=%.2f references=%d",
            prefix,
            task.task_id,
            outcome.download_s,
            outcome.provider_s,
            outcome.upload_s,
            total_s,
            outcome.references_used,
        )
        return ExecutionResult(
            status="success",
            success=True,
            task_id=task.task_id,
            batch_id=task.batch_id,
            result_url=outcome.result_url,
            message="Image generated successfully",
            execution_id=execution_id,
            duration_s=total_s,
            references_used=outcome.references_used,
        )

    def _record_failure(self, task: Task, message: str, prefix: str) -> bool:
        try:
            failed = self._with_retry(
                lambda: self.store.transition(
                    task.task_id,
                    to_status="failed",
                    expected_statuses=("processing",),
                    error_message=message,
                ),
                name=f"fail task {task.task_id}",
                log_prefix=prefix,
            )
        except Exception:  # noqa: BLE001
            # Row stays `processing`; the watchdog fails it out after the timeout.
            logger.exception("%stask_execute event=fail_write_failed task_id=%s", prefix, task.task_id)
            return False
        if failed is None:
            logger.warning(
                "%stask_execute event=fail_skipped task_id=%s detail=no_longer_processing",
                prefix,
                task.task_id,
            )
            return False
        mirror_quietly(
            self.mirror,
            task.batch_id,
            task.batch_index,
            status="failed",
            error_message=f"Error: {message}",
            log_prefix=prefix,
        )
        return True

    def _lost_claim(
        self,
        task: Task,
        execution_id: str,
        started: float,
        prefix: str,
    ) -> ExecutionResult:
        current = self.store.get_task(task.task_id) or task
        logger.info(
            "%stask_execute event=skip task_id=%s status=%s detail=claimed_elsewhere",
            prefix,
            task.task_id,
            current.status,
        )
        if is_terminal(current.status):
            self._advance_quietly(current.batch_id, prefix)
        return self._skipped_result(
            current, f"Task {task.task_id} already {current.status}", execution_id, started
        )

    def _advance_quietly(self, batch_id: str, prefix: str) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.advance(batch_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("%schain_advance event=failed batch_id=%s reason=%s", prefix, batch_id, exc)

    def _with_retry(self, operation: Callable[[], T], *, name: str, log_prefix: str = "") -> T:
        """Retry transient storage failures with exponential backoff."""
        for attempt in range(self.max_retries + 1):
            try:
                return operation()
            except (TaskStoreError, ArtifactStorageError) as exc:
                if attempt >= self.max_retries:
                    raise
                wait_s = self.backoff_s * (2**attempt)
                logger.warning(
                    "%sretry operation=%s attempt=%d/%d wait_s=%.2f reason=%s",
                    log_prefix,
                    name,
                    attempt + 1,
                    self.max_retries + 1,
                    wait_s,
                    exc,
                )
                if wait_s > 0:
                    time.sleep(wait_s)
        raise RuntimeError(f"{name} failed with unknown error")

    @staticmethod
    def _skipped_result(task: Task, message: str, execution_id: str, started: float) -> ExecutionResult:
        return ExecutionResult(
            status="skipped",
            success=task.status == "completed",
            task_id=task.task_id,
            batch_id=task.batch_id,
            result_url=task.result_url,
            error_message=task.error_message,
            message=message,
            execution_id=execution_id,
            duration_s=_elapsed_s(started),
        )

    @staticmethod
    def _error_result(
        task_id: str,
        message: str,
        execution_id: str,
        started: float,
        *,
        batch_id: str | None = None,
    ) -> ExecutionResult:
        logger.error("[%s] task_execute event=error task_id=%s reason=%s", execution_id, task_id, message)
        return ExecutionResult(
            status="error",
            success=False,
            task_id=task_id,
            batch_id=batch_id,
            error_message=message,
            message=message,
            execution_id=execution_id,
            duration_s=_elapsed_s(started),
        )


def _elapsed_s(started: float) -> float:
    return round(time.perf_counter() - started, 3)
