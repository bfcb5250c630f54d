"""Ways to hand a task id to the work executor without waiting for the run.

Terms:
- Dispatch: "please execute task X". Delivery is at-least-once; the executor's
  conditional claim makes a duplicate delivery a no-op.
- Trampoline: the inline dispatcher queues work issued while it is already
  running, so a chain of N tasks runs as a loop instead of N nested calls.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol
from urllib import error, request

logger = logging.getLogger(__name__)

RunTask = Callable[..., Any]


class DispatchError(RuntimeError):
    """The dispatch could not be handed off at all."""


class Dispatcher(Protocol):
    def dispatch(self, task_id: str, *, owner_id: str | None = None, reason: str = "chain") -> None: ...


class InlineDispatcher:
    """Run dispatched tasks in the calling thread, one after another."""

    def __init__(self, run: RunTask | None = None) -> None:
        self.run = run
        # Every accepted dispatch, in order; lets callers observe delivery attempts.
        self.history: list[tuple[str, str]] = []
        self._local = threading.local()

    def bind(self, run: RunTask) -> None:
        self.run = run

    def dispatch(self, task_id: str, *, owner_id: str | None = None, reason: str = "chain") -> None:
        if self.run is None:
            raise DispatchError("InlineDispatcher has no executor bound")
        self.history.append((task_id, reason))
        pending = self._pending()
        pending.append((task_id, owner_id, reason))
        if getattr(self._local, "draining", False):
            return
        self._local.draining = True
        try:
            while pending:
                next_id, next_owner, next_reason = pending.popleft()
                logger.info("dispatch event=run mode=inline task_id=%s reason=%s", next_id, next_reason)
                self.run(next_id, owner_id=next_owner)
        finally:
            self._local.draining = False
            pending.clear()

    def _pending(self) -> deque[tuple[str, str | None, str]]:
        pending = getattr(self._local, "pending", None)
        if pending is None:
            pending = deque()
            self._local.pending = pending
        return pending


class ThreadPoolDispatcher:
    """Fire-and-forget dispatch onto a bounded worker pool."""

    def __init__(self, run: RunTask | None = None, *, max_workers: int = 4) -> None:
        self.run = run
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="batchchain-dispatch",
        )

    def bind(self, run: RunTask) -> None:
        self.run = run

    def dispatch(self, task_id: str, *, owner_id: str | None = None, reason: str = "chain") -> None:
        if self.run is None:
            raise DispatchError("ThreadPoolDispatcher has no executor bound")
        try:
            future = self._pool.submit(self.run, task_id, owner_id=owner_id)
        except RuntimeError as exc:
            raise DispatchError(f"Dispatch pool rejected task {task_id}: {exc}") from exc
        future.add_done_callback(lambda done: _log_unhandled(done, task_id))
        logger.info("dispatch event=submitted mode=thread task_id=%s reason=%s", task_id, reason)

    def shutdown(self, *, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


class HttpDispatcher:
    """POST the task id to an executor endpoint and do not wait for the run.

    The endpoint executes the whole task before replying, so a timeout while
    waiting for the response is the normal outcome and means the request was
    delivered. urllib wraps failures while connecting or sending in URLError;
    a timeout there means nothing reached the endpoint and the dispatch is lost.
    """

    def __init__(self, *, base_url: str, timeout_s: float = 2.0, auth_token: str = "") -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.auth_token = auth_token

    def dispatch(self, task_id: str, *, owner_id: str | None = None, reason: str = "chain") -> None:
        url = f"{self.base_url}/tasks/{task_id}/execute"
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        req = request.Request(
            url=url,
            method="POST",
            data=json.dumps({"owner_id": owner_id}).encode("utf-8"),
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                status = response.status
        except (TimeoutError, socket.timeout):
            logger.info(
                "dispatch event=issued mode=http task_id=%s reason=%s detail=not_awaited",
                task_id,
                reason,
            )
            return
        except error.HTTPError as exc:
            raise DispatchError(f"Dispatch of task {task_id} rejected with HTTP {exc.code}") from exc
        except error.URLError as exc:
            if isinstance(exc.reason, (TimeoutError, socket.timeout)):
                logger.warning(
                    "dispatch event=lost mode=http task_id=%s reason=%s detail=connect_timeout",
                    task_id,
                    reason,
                )
                raise DispatchError(f"Dispatch of task {task_id} timed out before delivery") from exc
            raise DispatchError(f"Dispatch of task {task_id} failed: {exc.reason}") from exc
        logger.info(
            "dispatch event=delivered mode=http task_id=%s reason=%s status=%s",
            task_id,
            reason,
            status,
        )


def _log_unhandled(future: Future[Any], task_id: str) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error(
            "dispatch event=crashed task_id=%s reason=%s",
            task_id,
            exc,
            exc_info=exc,
        )
