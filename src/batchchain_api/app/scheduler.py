from __future__ import annotations

import logging
from dataclasses import dataclass

from .aggregator import BatchAggregator
from .dispatch import Dispatcher
from .models import STARTABLE_STATUSES
from .storage import TaskStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdvanceResult:
    batch_id: str
    dispatched_task_id: str | None = None
    batch_complete: bool = False


class ChainScheduler:
    """Move a batch forward one task at a time.

    Each finished task calls `advance`, which dispatches the lowest-index task
    that has not started yet. While any task of the batch is still
    `processing` the call does nothing, so a batch never has two runs in
    flight. The scheduler only reads task rows.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        dispatcher: Dispatcher,
        aggregator: BatchAggregator | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.aggregator = aggregator or BatchAggregator(store)

    def start_batch(self, batch_id: str) -> AdvanceResult:
        return self.advance(batch_id, reason="batch_start")

    def advance(self, batch_id: str, *, reason: str = "chain") -> AdvanceResult:
        open_tasks = self.store.list_tasks(batch_id=batch_id, statuses=("processing", *STARTABLE_STATUSES))
        running = [task for task in open_tasks if task.status == "processing"]
        if running:
            logger.info(
                "chain_advance event=busy batch_id=%s task_id=%s reason=%s",
                batch_id,
                running[0].task_id,
                reason,
            )
            return AdvanceResult(batch_id=batch_id)

        waiting = [task for task in open_tasks if task.status in STARTABLE_STATUSES]
        if not waiting:
            status = self.aggregator.get_batch_status(batch_id)
            if status.is_complete:
                logger.info(
                    "chain_advance event=batch_complete batch_id=%s total=%d completed=%d failed=%d",
                    batch_id,
                    status.total,
                    status.completed,
                    status.failed,
                )
            else:
                logger.info(
                    "chain_advance event=idle batch_id=%s pending=%d",
                    batch_id,
                    status.pending,
                )
            return AdvanceResult(batch_id=batch_id, batch_complete=status.is_complete)

        next_task = min(waiting, key=lambda task: task.batch_index)
        logger.info(
            "chain_advance event=dispatch batch_id=%s task_id=%s batch_index=%d reason=%s",
            batch_id,
            next_task.task_id,
            next_task.batch_index,
            reason,
        )
        self.dispatcher.dispatch(next_task.task_id, owner_id=next_task.owner_id, reason=reason)
        return AdvanceResult(batch_id=batch_id, dispatched_task_id=next_task.task_id)
