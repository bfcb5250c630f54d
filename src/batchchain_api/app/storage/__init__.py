"""Storage backends for generation tasks."""

from batchchain_api.app.storage.base import TaskStore, TaskStoreError
from batchchain_api.app.storage.memory import InMemoryTaskStore
from batchchain_api.app.storage.postgres import PostgresTaskStore

__all__ = [
    "InMemoryTaskStore",
    "PostgresTaskStore",
    "TaskStore",
    "TaskStoreError",
]
