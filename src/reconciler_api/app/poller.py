"""Pull path: find tasks stuck in `pending` and ask their providers for status.

Beginner terms:
- Grace period (`min_age`): tasks younger than this are skipped; they are very
  unlikely to be done and querying them only burns provider quota.
- Batch: one page of pending tasks; each batch fans out to at most
  `max_concurrency` provider calls at a time.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from reconciler_api.app.models import GenerationTask, SweepError, SweepReport, TaskUpdate
from reconciler_api.app.providers.base import ProviderAdapter, call_with_timeout
from reconciler_api.app.reconciler import Reconciler
from reconciler_api.app.storage.base import PendingCursor, TaskStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _TaskPollResult:
    task: GenerationTask
    outcome: str
    error: str | None = None


class Poller:
    def __init__(
        self,
        *,
        storage: TaskStorage,
        reconciler: Reconciler,
        providers: Mapping[str, ProviderAdapter],
        batch_size: int = 50,
        max_concurrency: int = 3,
        query_timeout_s: float = 10.0,
        request_delay_s: float = 0.0,
        max_reported_errors: int = 100,
    ) -> None:
        self.storage = storage
        self.reconciler = reconciler
        self.providers = providers
        self.batch_size = max(1, batch_size)
        self.max_concurrency = max(1, max_concurrency)
        self.query_timeout_s = query_timeout_s
        self.request_delay_s = max(0.0, request_delay_s)
        self.max_reported_errors = max(0, max_reported_errors)

    def sweep(self, min_age: timedelta) -> SweepReport:
        """Poll every pending task older than `min_age`, one bounded batch at a time."""
        started_perf = time.perf_counter()
        started_at = datetime.now(UTC)
        created_before = started_at - min_age
        report = SweepReport(min_age_s=min_age.total_seconds(), started_at=started_at)
        logger.info(
            "sweep event=start min_age_s=%s created_before=%s batch_size=%s concurrency=%s",
            report.min_age_s,
            created_before.isoformat(),
            self.batch_size,
            self.max_concurrency,
        )

        cursor: PendingCursor | None = None
        with ThreadPoolExecutor(max_workers=self.max_concurrency) as pool:
            while True:
                batch = self.storage.list_pending_tasks(
                    created_before=created_before,
                    limit=self.batch_size,
                    after=cursor,
                )
                if not batch:
                    break
                report.batches += 1
                report.selected += len(batch)
                # map() keeps at most max_concurrency provider calls in flight.
                for result in pool.map(self._poll_task, batch):
                    self._record(report, result, self.max_reported_errors)
                last = batch[-1]
                cursor = (last.created_at, last.task_id)
                if len(batch) < self.batch_size:
                    break

        report.finished_at = datetime.now(UTC)
        report.duration_ms = round((time.perf_counter() - started_perf) * 1000.0, 2)
        logger.info(
            "sweep event=completed selected=%s applied=%s already_terminal=%s "
            "still_pending=%s failed=%s errors_truncated=%s duration_ms=%s",
            report.selected,
            report.applied,
            report.already_terminal,
            report.still_pending,
            report.failed,
            report.errors_truncated,
            report.duration_ms,
        )
        return report

    def _poll_task(self, task: GenerationTask) -> _TaskPollResult:
        adapter = self.providers.get(task.provider)
        if adapter is None:
            logger.warning(
                "sweep event=provider_missing task_id=%s provider=%s",
                task.task_id,
                task.provider,
            )
            return _TaskPollResult(task, "failed", f"No adapter for provider '{task.provider}'")

        try:
            update: TaskUpdate | None = call_with_timeout(
                lambda: adapter.query_status(task.task_id, timeout_s=self.query_timeout_s),
                timeout_s=self.query_timeout_s,
                label=f"{task.provider} status query for {task.task_id}",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "sweep event=provider_query_failed task_id=%s provider=%s reason=%s",
                task.task_id,
                task.provider,
                exc,
            )
            return _TaskPollResult(task, "failed", str(exc))
        finally:
            if self.request_delay_s > 0:
                time.sleep(self.request_delay_s)

        if update is None:
            return _TaskPollResult(task, "still_pending")
        if update.task_id != task.task_id:
            # Some providers echo a different id; the polled row is authoritative.
            update = update.model_copy(update={"task_id": task.task_id})

        try:
            result = self.reconciler.apply(update, source="poll", provider=task.provider)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "sweep event=reconcile_failed task_id=%s provider=%s reason=%s",
                task.task_id,
                task.provider,
                exc,
            )
            return _TaskPollResult(task, "failed", str(exc))
        return _TaskPollResult(task, result.outcome)

    @staticmethod
    def _record(report: SweepReport, result: _TaskPollResult, max_errors: int) -> None:
        if result.outcome == "applied":
            report.applied += 1
        elif result.outcome == "already_terminal":
            report.already_terminal += 1
        elif result.outcome == "unknown_task":
            report.unknown_task += 1
        elif result.outcome == "still_pending":
            report.still_pending += 1
        else:
            report.failed += 1
            if len(report.errors) >= max_errors:
                report.errors_truncated += 1
                return
            report.errors.append(
                SweepError(
                    task_id=result.task.task_id,
                    provider=result.task.provider,
                    error=result.error or result.outcome,
                )
            )
