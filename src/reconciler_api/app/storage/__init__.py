"""Storage backends for generation tasks and project rollups."""

from reconciler_api.app.storage.base import PendingCursor, TaskStorage
from reconciler_api.app.storage.memory import InMemoryTaskStorage
from reconciler_api.app.storage.postgres import PostgresTaskStorage

__all__ = [
    "InMemoryTaskStorage",
    "PendingCursor",
    "PostgresTaskStorage",
    "TaskStorage",
]
