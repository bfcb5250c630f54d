"""Stall detection for generation tasks.

A task is stalled when its `updated_at` has not moved for longer than
STALL_TIMEOUT while it is still `processing` (the run died or hung) or
`queued` (the dispatch for it was lost). Processing stalls are failed out
and their chain is advanced. A batch with stale queued tasks and nothing
`processing` has a dead chain; only its lowest-index queued task is
dispatched again, once per scan.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from .dispatch import Dispatcher
from .mirror import NullStatusMirror, StatusMirror, mirror_quietly
from .models import STARTABLE_STATUSES, Task, WatchdogDetail, WatchdogReport
from .scheduler import ChainScheduler
from .storage import TaskStore

logger = logging.getLogger(__name__)

# Single timeout for every task; not exposed as a setting.
STALL_TIMEOUT = timedelta(minutes=15)


class StallWatchdog:
    def __init__(
        self,
        *,
        store: TaskStore,
        dispatcher: Dispatcher,
        scheduler: ChainScheduler | None = None,
        mirror: StatusMirror | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.mirror = mirror or NullStatusMirror()
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def scan(
        self,
        *,
        batch_id: str | None = None,
        check_all: bool = False,
        now: datetime | None = None,
    ) -> WatchdogReport:
        """Check one batch (every task, any age) or all stale non-terminal tasks."""
        scan_started = time.perf_counter()
        now = now or self._clock()
        cutoff = now - STALL_TIMEOUT
        scope = f"batch:{batch_id}" if batch_id else "all"
        logger.info(
            "watchdog_scan event=start scope=%s check_all=%s cutoff=%s",
            scope,
            check_all,
            cutoff.isoformat(),
        )
        try:
            if batch_id:
                candidates = self.store.list_tasks(batch_id=batch_id)
            else:
                candidates = self.store.list_tasks(
                    statuses=("processing", *STARTABLE_STATUSES),
                    updated_before=cutoff,
                )
        except Exception as exc:  # noqa: BLE001
            logger.exception("watchdog_scan event=fetch_failed scope=%s", scope)
            return WatchdogReport(
                status="error",
                message=f"Failed to fetch tasks: {exc}",
                processing_time_s=_elapsed_s(scan_started),
            )

        report = WatchdogReport(tasks_checked=len(candidates))
        # Batches whose chain this scan already moved.
        handled: set[str] = set()
        for task in candidates:
            detail = self._check_task(task, now, handled)
            if detail is None:
                continue
            report.details.append(detail)
            if detail.action == "marked_as_failed":
                report.tasks_failed += 1
            elif detail.action == "restarted":
                report.tasks_restarted += 1

        report.processing_time_s = _elapsed_s(scan_started)
        report.message = (
            f"Checked {report.tasks_checked} tasks, restarted {report.tasks_restarted}, "
            f"marked {report.tasks_failed} as failed"
        )
        logger.info(
            "watchdog_scan event=done scope=%s checked=%d restarted=%d failed=%d duration_s=%.2f",
            scope,
            report.tasks_checked,
            report.tasks_restarted,
            report.tasks_failed,
            report.processing_time_s,
        )
        return report

    def _check_task(self, task: Task, now: datetime, handled: set[str]) -> WatchdogDetail | None:
        elapsed = now - task.updated_at
        if elapsed <= STALL_TIMEOUT:
            return None
        elapsed_minutes = _minutes(elapsed)
        if task.status == "processing":
            detail = self._fail_stalled(task, elapsed_minutes)
            if detail.action == "marked_as_failed":
                handled.add(task.batch_id)
            return detail
        if task.status in STARTABLE_STATUSES and task.batch_id not in handled:
            return self._restart_chain(task, now, handled)
        return None

    def _fail_stalled(self, task: Task, elapsed_minutes: float) -> WatchdogDetail:
        logger.info(
            "watchdog_task event=timeout task_id=%s status=processing elapsed_minutes=%.1f",
            task.task_id,
            elapsed_minutes,
        )
        try:
            failed = self.store.transition(
                task.task_id,
                to_status="failed",
                expected_statuses=("processing",),
                error_message=f"Task timed out after {elapsed_minutes:.1f} minutes of processing",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("watchdog_task event=update_failed task_id=%s reason=%s", task.task_id, exc)
            return WatchdogDetail(
                task_id=task.task_id,
                batch_id=task.batch_id,
                batch_index=task.batch_index,
                action="update_failed",
                elapsed_minutes=elapsed_minutes,
                error=str(exc),
            )
        if failed is None:
            return WatchdogDetail(
                task_id=task.task_id,
                batch_id=task.batch_id,
                batch_index=task.batch_index,
                action="skipped",
                reason="Task left processing before it could be failed",
                elapsed_minutes=elapsed_minutes,
            )

        mirror_quietly(
            self.mirror,
            task.batch_id,
            task.batch_index,
            status="failed",
            error_message=f"Image generation timed out after {elapsed_minutes:.1f} minutes",
        )
        self._advance_quietly(task.batch_id)
        return WatchdogDetail(
            task_id=task.task_id,
            batch_id=task.batch_id,
            batch_index=task.batch_index,
            action="marked_as_failed",
            reason=f"Timed out after {elapsed_minutes:.1f} minutes",
            elapsed_minutes=elapsed_minutes,
        )

    def _restart_chain(self, task: Task, now: datetime, handled: set[str]) -> WatchdogDetail | None:
        try:
            batch = self.store.list_tasks(batch_id=task.batch_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("watchdog_task event=reread_failed task_id=%s reason=%s", task.task_id, exc)
            return WatchdogDetail(
                task_id=task.task_id,
                batch_id=task.batch_id,
                batch_index=task.batch_index,
                action="restart_failed",
                elapsed_minutes=_minutes(now - task.updated_at),
                error=str(exc),
            )

        current = next((candidate for candidate in batch if candidate.task_id == task.task_id), None)
        if current is None or current.status not in STARTABLE_STATUSES:
            status = current.status if current is not None else "gone"
            return WatchdogDetail(
                task_id=task.task_id,
                batch_id=task.batch_id,
                batch_index=task.batch_index,
                action="skipped",
                reason=f"Task left {task.status} before it could be restarted (now {status})",
                elapsed_minutes=_minutes(now - task.updated_at),
            )

        running = [candidate for candidate in batch if candidate.status == "processing"]
        if running:
            # The running task owns the chain; failing it out when stale advances the batch.
            handled.add(task.batch_id)
            logger.info(
                "watchdog_task event=chain_busy batch_id=%s task_id=%s",
                task.batch_id,
                running[0].task_id,
            )
            return None

        head = min(
            (candidate for candidate in batch if candidate.status in STARTABLE_STATUSES),
            key=lambda candidate: candidate.batch_index,
        )
        handled.add(task.batch_id)
        return self._restart_stalled(head, _minutes(now - head.updated_at))

    def _restart_stalled(self, task: Task, elapsed_minutes: float) -> WatchdogDetail:
        logger.info(
            "watchdog_task event=restart task_id=%s status=%s elapsed_minutes=%.1f",
            task.task_id,
            task.status,
            elapsed_minutes,
        )
        try:
            self.dispatcher.dispatch(task.task_id, owner_id=task.owner_id, reason="watchdog_restart")
        except Exception as exc:  # noqa: BLE001
            logger.warning("watchdog_task event=restart_failed task_id=%s reason=%s", task.task_id, exc)
            return WatchdogDetail(
                task_id=task.task_id,
                batch_id=task.batch_id,
                batch_index=task.batch_index,
                action="restart_failed",
                elapsed_minutes=elapsed_minutes,
                error=str(exc),
            )
        return WatchdogDetail(
            task_id=task.task_id,
            batch_id=task.batch_id,
            batch_index=task.batch_index,
            action="restarted",
            reason=f"Stuck in {task.status} state for {elapsed_minutes:.1f} minutes",
            elapsed_minutes=elapsed_minutes,
        )

    def _advance_quietly(self, batch_id: str) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.advance(batch_id, reason="watchdog_timeout")
        except Exception as exc:  # noqa: BLE001
            logger.warning("watchdog_task event=advance_failed batch_id=%s reason=%s", batch_id, exc)


def _minutes(elapsed: timedelta) -> float:
    return round(elapsed.total_seconds() / 60.0, 1)


def _elapsed_s(started: float) -> float:
    return round(time.perf_counter() - started, 3)
