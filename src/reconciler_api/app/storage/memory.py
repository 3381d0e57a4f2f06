"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime

from reconciler_api.app.errors import DuplicateTaskError
from reconciler_api.app.models import (
    AdminAlert,
    GenerationTask,
    ProjectProgress,
    TerminalStatus,
)
from reconciler_api.app.storage.base import PendingCursor


class InMemoryTaskStorage:
    """Dictionary-backed store; one lock makes each conditional update atomic."""

    def __init__(self) -> None:
        self._tasks: dict[str, GenerationTask] = {}
        self._progress: dict[str, ProjectProgress] = {}
        self._alerts: list[AdminAlert] = []
        self._lock = threading.Lock()

    def migrate(self) -> None:
        return None

    def create_task(
        self,
        *,
        task_id: str,
        project_id: str,
        provider: str,
        created_at: datetime | None = None,
    ) -> GenerationTask:
        record = GenerationTask(
            task_id=task_id,
            project_id=project_id,
            provider=provider,
            status="pending",
            created_at=created_at or datetime.now(UTC),
        )
        with self._lock:
            if task_id in self._tasks:
                raise DuplicateTaskError(f"Task {task_id} already exists")
            self._tasks[task_id] = record
        return record.model_copy()

    def get_task(self, task_id: str) -> GenerationTask | None:
        with self._lock:
            task = self._tasks.get(task_id)
        return task.model_copy() if task else None

    def complete_task(
        self,
        task_id: str,
        *,
        status: TerminalStatus,
        result_url: str | None,
        error_message: str | None,
        completed_at: datetime,
    ) -> GenerationTask | None:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None or current.status != "pending":
                return None
            updated = current.model_copy(
                update={
                    "status": status,
                    "result_url": result_url,
                    "error_message": error_message,
                    "completed_at": completed_at,
                }
            )
            self._tasks[task_id] = updated
        return updated.model_copy()

    def list_pending_tasks(
        self,
        *,
        created_before: datetime,
        limit: int,
        after: PendingCursor | None = None,
    ) -> list[GenerationTask]:
        with self._lock:
            candidates = [
                task
                for task in self._tasks.values()
                if task.status == "pending" and task.created_at < created_before
            ]
        candidates.sort(key=_creation_key)
        if after is not None:
            candidates = [task for task in candidates if _creation_key(task) > after]
        return [task.model_copy() for task in candidates[:limit]]

    def list_project_tasks(self, project_id: str) -> list[GenerationTask]:
        with self._lock:
            return self._project_tasks(project_id)

    def refresh_project_progress(
        self,
        project_id: str,
        summarize: Callable[[list[GenerationTask]], ProjectProgress],
    ) -> ProjectProgress:
        # The store lock also guards complete_task, so the read sees every committed write.
        with self._lock:
            progress = summarize(self._project_tasks(project_id))
            self._progress[project_id] = progress.model_copy(deep=True)
        return progress

    def get_project_progress(self, project_id: str) -> ProjectProgress | None:
        with self._lock:
            progress = self._progress.get(project_id)
        return progress.model_copy(deep=True) if progress else None

    def count_tasks_by_status(self, *, created_since: datetime) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for task in self._tasks.values():
                if task.created_at < created_since:
                    continue
                counts[task.status] = counts.get(task.status, 0) + 1
        return counts

    def find_open_alert(self, alert_type: str, *, created_since: datetime) -> AdminAlert | None:
        with self._lock:
            for alert in reversed(self._alerts):
                if (
                    alert.alert_type == alert_type
                    and alert.resolved_at is None
                    and alert.created_at >= created_since
                ):
                    return alert.model_copy(deep=True)
        return None

    def create_alert(self, alert: AdminAlert) -> AdminAlert:
        with self._lock:
            self._alerts.append(alert.model_copy(deep=True))
        return alert

    def _project_tasks(self, project_id: str) -> list[GenerationTask]:
        tasks = [task for task in self._tasks.values() if task.project_id == project_id]
        tasks.sort(key=_creation_key)
        return [task.model_copy() for task in tasks]


def _creation_key(task: GenerationTask) -> PendingCursor:
    return (task.created_at, task.task_id)
