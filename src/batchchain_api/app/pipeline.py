"""Wiring for the store, executor, dispatcher, scheduler, and watchdog.

The executor needs the scheduler (to advance after each task), the scheduler
needs the dispatcher, and the dispatcher needs the executor; `build_pipeline`
closes that loop once, in one place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .aggregator import BatchAggregator
from .artifacts import ArtifactStore, LocalArtifactStore
from .dispatch import Dispatcher, HttpDispatcher, InlineDispatcher, ThreadPoolDispatcher
from .executor import WorkExecutor
from .mirror import NullStatusMirror, PostgresStatusMirror, StatusMirror
from .provider import ImageProvider, build_provider_from_settings
from .references import ReferenceLoader
from .scheduler import ChainScheduler
from .settings import Settings
from .storage import InMemoryTaskStore, PostgresTaskStore, TaskStore
from .watchdog import StallWatchdog

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    store: TaskStore
    artifacts: ArtifactStore
    executor: WorkExecutor
    dispatcher: Dispatcher
    scheduler: ChainScheduler
    aggregator: BatchAggregator
    watchdog: StallWatchdog

    def close(self) -> None:
        shutdown = getattr(self.dispatcher, "shutdown", None)
        if callable(shutdown):
            shutdown(wait=False)


def build_store(settings: Settings) -> TaskStore:
    if not settings.database_url:
        logger.warning("task_store event=in_memory detail=BATCHCHAIN_DATABASE_URL not set")
        return InMemoryTaskStore()
    return PostgresTaskStore(database_url=settings.database_url)


def build_mirror(settings: Settings) -> StatusMirror:
    if not settings.database_url:
        return NullStatusMirror()
    return PostgresStatusMirror(settings.database_url, table=settings.mirror_table)


def build_dispatcher(settings: Settings) -> Dispatcher:
    if settings.dispatch_mode == "inline":
        return InlineDispatcher()
    if settings.dispatch_mode == "http":
        return HttpDispatcher(
            base_url=settings.dispatch_base_url,
            timeout_s=settings.dispatch_timeout_s,
        )
    return ThreadPoolDispatcher(max_workers=settings.dispatch_workers)


def build_pipeline(
    settings: Settings,
    *,
    store: TaskStore | None = None,
    provider: ImageProvider | None = None,
    artifacts: ArtifactStore | None = None,
    mirror: StatusMirror | None = None,
    dispatcher: Dispatcher | None = None,
) -> Pipeline:
    store = store or build_store(settings)
    store.migrate()
    artifacts = artifacts or LocalArtifactStore(
        settings.artifact_root,
        base_url=settings.artifact_base_url,
    )
    provider = provider or build_provider_from_settings(settings)
    if provider is None:
        logger.warning("provider event=missing detail=every task will fail until an API key is set")
    mirror = mirror or build_mirror(settings)
    dispatcher = dispatcher or build_dispatcher(settings)

    executor = WorkExecutor(
        store=store,
        provider=provider,
        artifacts=artifacts,
        references=ReferenceLoader(artifacts=artifacts, timeout_s=settings.reference_timeout_s),
        mirror=mirror,
        bucket=settings.artifact_bucket,
        retry_policy={
            "max_retries": settings.store_max_retries,
            "backoff_s": settings.store_backoff_s,
        },
    )
    bind = getattr(dispatcher, "bind", None)
    if callable(bind):
        bind(executor.execute)

    aggregator = BatchAggregator(store)
    scheduler = ChainScheduler(store=store, dispatcher=dispatcher, aggregator=aggregator)
    executor.scheduler = scheduler
    watchdog = StallWatchdog(store=store, dispatcher=dispatcher, scheduler=scheduler, mirror=mirror)
    return Pipeline(
        store=store,
        artifacts=artifacts,
        executor=executor,
        dispatcher=dispatcher,
        scheduler=scheduler,
        aggregator=aggregator,
        watchdog=watchdog,
    )
