"""Per-task state machine shared by the webhook receiver and the poller.

Each task moves `pending -> success` or `pending -> fail` exactly once. Both
terminal states absorb every later report, which is what makes replays and
webhook/poll races harmless regardless of arrival order.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from reconciler_api.app.aggregator import ProgressAggregator
from reconciler_api.app.errors import StoreWriteError
from reconciler_api.app.models import GenerationTask, ReconcileResult, TaskUpdate
from reconciler_api.app.storage.base import TaskStorage

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Generation failed"


class Reconciler:
    def __init__(self, storage: TaskStorage, aggregator: ProgressAggregator | None = None) -> None:
        self.storage = storage
        self.aggregator = aggregator or ProgressAggregator(storage)

    def apply(
        self,
        update: TaskUpdate,
        *,
        source: str = "unknown",
        provider: str | None = None,
    ) -> ReconcileResult:
        """Apply one normalized report; safe to call any number of times.

        When `provider` is given, a task registered under a different provider
        is treated as unknown so one adapter cannot complete another's job.
        """
        if update.status == "pending":
            logger.warning(
                "reconcile event=rejected task_id=%s source=%s reason=non_terminal_update",
                update.task_id,
                source,
            )
            return ReconcileResult(outcome="rejected")

        current = self._load(update.task_id)
        if current is None:
            logger.info(
                "reconcile event=unknown_task task_id=%s source=%s status=%s",
                update.task_id,
                source,
                update.status,
            )
            return ReconcileResult(outcome="unknown_task")

        if provider is not None and current.provider != provider:
            logger.warning(
                "reconcile event=provider_mismatch task_id=%s source=%s owner=%s reported_by=%s",
                update.task_id,
                source,
                current.provider,
                provider,
            )
            return ReconcileResult(outcome="unknown_task")

        if current.is_terminal:
            logger.debug(
                "reconcile event=already_terminal task_id=%s source=%s status=%s reported=%s",
                update.task_id,
                source,
                current.status,
                update.status,
            )
            return ReconcileResult(outcome="already_terminal", task=current)

        completed = self._complete(update)
        if completed is None:
            # Another writer finished the task between the read and the conditional write.
            winner = self._load(update.task_id)
            logger.debug(
                "reconcile event=already_terminal task_id=%s source=%s reason=lost_race",
                update.task_id,
                source,
            )
            return ReconcileResult(outcome="already_terminal", task=winner)

        logger.info(
            "reconcile event=applied task_id=%s project_id=%s source=%s status=%s",
            completed.task_id,
            completed.project_id,
            source,
            completed.status,
        )
        progress = None
        try:
            progress = self.aggregator.recompute(completed.project_id)
        except Exception:  # noqa: BLE001
            # The task write already committed; the next trigger recomputes the rollup.
            logger.exception(
                "reconcile event=aggregate_failed task_id=%s project_id=%s",
                completed.task_id,
                completed.project_id,
            )
        return ReconcileResult(outcome="applied", task=completed, progress=progress)

    def _load(self, task_id: str) -> GenerationTask | None:
        try:
            return self.storage.get_task(task_id)
        except Exception as exc:  # noqa: BLE001
            raise StoreWriteError(f"Failed to load task {task_id}: {exc}") from exc

    def _complete(self, update: TaskUpdate) -> GenerationTask | None:
        if update.status == "success":
            result_url, error_message = update.result_url, None
        else:
            result_url, error_message = None, update.error_message or DEFAULT_FAILURE_MESSAGE
        try:
            return self.storage.complete_task(
                update.task_id,
                status=update.status,
                result_url=result_url,
                error_message=error_message,
                completed_at=datetime.now(UTC),
            )
        except Exception as exc:  # noqa: BLE001
            raise StoreWriteError(f"Failed to complete task {update.task_id}: {exc}") from exc
