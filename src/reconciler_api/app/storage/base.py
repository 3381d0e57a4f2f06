"""Storage interfaces for generation task reconciliation."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from reconciler_api.app.models import (
    AdminAlert,
    GenerationTask,
    ProjectProgress,
    TerminalStatus,
)

# Keyset cursor for pending-task batches: (created_at, task_id) of the last row seen.
PendingCursor = tuple[datetime, str]


class TaskStorage(Protocol):
    def migrate(self) -> None: ...

    def create_task(
        self,
        *,
        task_id: str,
        project_id: str,
        provider: str,
        created_at: datetime | None = None,
    ) -> GenerationTask: ...

    def get_task(self, task_id: str) -> GenerationTask | None: ...

    def complete_task(
        self,
        task_id: str,
        *,
        status: TerminalStatus,
        result_url: str | None,
        error_message: str | None,
        completed_at: datetime,
    ) -> GenerationTask | None:
        """Write terminal fields only if the task is still pending.

        Returns the updated task, or None when no pending row matched.
        """
        ...

    def list_pending_tasks(
        self,
        *,
        created_before: datetime,
        limit: int,
        after: PendingCursor | None = None,
    ) -> list[GenerationTask]: ...

    def list_project_tasks(self, project_id: str) -> list[GenerationTask]: ...

    def refresh_project_progress(
        self,
        project_id: str,
        summarize: Callable[[list[GenerationTask]], ProjectProgress],
    ) -> ProjectProgress:
        """Read the project's tasks, summarize and upsert the rollup as one step.

        Calls for the same project are serialized, so a rollup computed from an
        older view of the tasks can never overwrite a newer one.
        """
        ...

    def get_project_progress(self, project_id: str) -> ProjectProgress | None: ...

    def count_tasks_by_status(self, *, created_since: datetime) -> dict[str, int]: ...

    def find_open_alert(self, alert_type: str, *, created_since: datetime) -> AdminAlert | None: ...

    def create_alert(self, alert: AdminAlert) -> AdminAlert: ...
