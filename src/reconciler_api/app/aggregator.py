"""Project progress rollup.

The rollup is always recomputed from the full task list, never updated by
deltas, so duplicate or out-of-order triggers converge on the same row.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from reconciler_api.app.models import GenerationTask, ProjectProgress, ProjectStatus
from reconciler_api.app.storage.base import TaskStorage

logger = logging.getLogger(__name__)


def summarize_tasks(
    project_id: str,
    tasks: Iterable[GenerationTask],
    *,
    now: datetime | None = None,
) -> ProjectProgress:
    """Compute the rollup for tasks given in creation order."""
    ordered = list(tasks)
    total = len(ordered)
    done = sum(1 for task in ordered if task.status != "pending")
    succeeded = sum(1 for task in ordered if task.status == "success")

    status: ProjectStatus
    if done < total or total == 0:
        status = "generating"
    elif succeeded > 0:
        status = "completed"
    else:
        status = "failed"

    return ProjectProgress(
        project_id=project_id,
        generation_progress=percent_complete(done, total),
        generation_status=status,
        result_urls=[
            task.result_url for task in ordered if task.status == "success" and task.result_url
        ],
        total_tasks=total,
        completed_tasks=done,
        succeeded_tasks=succeeded,
        updated_at=now or datetime.now(UTC),
    )


def percent_complete(done: int, total: int) -> int:
    """Round 100 * done / total half-up using integer math."""
    if total <= 0:
        return 0
    return (200 * done + total) // (2 * total)


class ProgressAggregator:
    def __init__(self, storage: TaskStorage) -> None:
        self.storage = storage

    def recompute(self, project_id: str) -> ProjectProgress:
        # Read and write happen inside the store so concurrent recomputes cannot interleave.
        progress = self.storage.refresh_project_progress(
            project_id,
            lambda tasks: summarize_tasks(project_id, tasks),
        )
        logger.info(
            "aggregate event=recomputed project_id=%s progress=%s status=%s total=%s",
            project_id,
            progress.generation_progress,
            progress.generation_status,
            progress.total_tasks,
        )
        return progress
