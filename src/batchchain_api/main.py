"""FastAPI application wiring for the batch generation service.

Terms used in this file:
- Application factory: `create_app` builds a fresh, fully wired app; tests
  call it with in-memory collaborators.
- app.state: holds the shared pipeline (store, executor, scheduler, watchdog).
- Entry point: a route an external trigger calls (execute, watchdog scan).
  Entry points answer with a structured body even when the work failed.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Response
from fastapi.responses import JSONResponse

from .app.artifacts import ArtifactStorageError, ArtifactStore
from .app.dispatch import Dispatcher
from .app.mirror import StatusMirror
from .app.models import (
    BatchStatus,
    CreateBatchRequest,
    CreateBatchResponse,
    ExecuteTaskRequest,
    ExecutionResult,
    Task,
    WatchdogReport,
    WatchdogScanRequest,
)
from .app.pipeline import build_pipeline
from .app.provider import ImageProvider
from .app.settings import Settings, configure_logging, get_settings
from .app.storage import TaskStore

logger = logging.getLogger(__name__)


def create_app(
    *,
    store: TaskStore | None = None,
    provider: ImageProvider | None = None,
    artifacts: ArtifactStore | None = None,
    mirror: StatusMirror | None = None,
    dispatcher: Dispatcher | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    """Application factory."""
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)
    pipeline = build_pipeline(
        settings,
        store=store,
        provider=provider,
        artifacts=artifacts,
        mirror=mirror,
        dispatcher=dispatcher,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        pipeline.close()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.pipeline = pipeline

    # Multiple health endpoints map to the same function for compatibility with
    # different health checkers and load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/batches", response_model=CreateBatchResponse)
    def create_batch(payload: CreateBatchRequest) -> CreateBatchResponse:
        tasks = app.state.pipeline.store.create_batch(
            payload.prompts,
            owner_id=payload.owner_id,
            reference_urls=payload.reference_urls,
            size=payload.size,
        )
        batch_id = tasks[0].batch_id
        logger.info("batch_create event=created batch_id=%s tasks=%d", batch_id, len(tasks))
        dispatched_task_id: str | None = None
        try:
            dispatched_task_id = app.state.pipeline.scheduler.start_batch(batch_id).dispatched_task_id
        except Exception as exc:  # noqa: BLE001
            # Rows stay queued; the watchdog restarts them once they go stale.
            logger.warning("batch_create event=start_failed batch_id=%s reason=%s", batch_id, exc)
        return CreateBatchResponse(
            batch_id=batch_id,
            task_ids=[task.task_id for task in tasks],
            dispatched_task_id=dispatched_task_id,
        )

    @app.get("/batches/{batch_id}", response_model=BatchStatus)
    def get_batch_status(batch_id: str) -> BatchStatus:
        status = app.state.pipeline.aggregator.get_batch_status(batch_id)
        if status.total == 0:
            raise HTTPException(status_code=404, detail="Batch not found")
        return status

    @app.get("/batches/{batch_id}/tasks", response_model=list[Task])
    def list_batch_tasks(batch_id: str) -> list[Task]:
        tasks = app.state.pipeline.store.list_tasks(batch_id=batch_id)
        if not tasks:
            raise HTTPException(status_code=404, detail="Batch not found")
        return tasks

    @app.get("/tasks/{task_id}", response_model=Task)
    def get_task(task_id: str) -> Task:
        task = app.state.pipeline.store.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    # Always HTTP 200: the trigger (scheduler, watchdog, HTTP dispatcher) reads the body.
    @app.post("/tasks/{task_id}/execute", response_model=ExecutionResult)
    def execute_task(task_id: str, payload: ExecuteTaskRequest | None = None) -> ExecutionResult:
        owner_id = payload.owner_id if payload else None
        return app.state.pipeline.executor.execute(task_id, owner_id=owner_id)

    @app.post("/watchdog/scan", response_model=WatchdogReport)
    def watchdog_scan(payload: WatchdogScanRequest | None = None) -> JSONResponse:
        request = payload or WatchdogScanRequest()
        try:
            report = app.state.pipeline.watchdog.scan(
                batch_id=request.batch_id,
                check_all=request.check_all,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("watchdog_scan event=crashed")
            report = WatchdogReport(status="error", message=str(exc) or "Watchdog scan failed")
        status_code = 200 if report.status == "success" else 500
        return JSONResponse(status_code=status_code, content=report.model_dump(mode="json"))

    @app.get("/artifacts/{bucket}/{path:path}")
    def get_artifact(bucket: str, path: str) -> Response:
        try:
            data = app.state.pipeline.artifacts.download(bucket, path)
        except ArtifactStorageError as exc:
            raise HTTPException(status_code=404, detail="Artifact not found") from exc
        return Response(content=data, media_type="image/png")

    return app


# Module-level app for `uvicorn batchchain_api.main:app`.
app = create_app()
