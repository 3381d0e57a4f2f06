from __future__ import annotations

import threading
import time
from datetime import UTC, datetime, timedelta

from reconciler_api.app.aggregator import ProgressAggregator, percent_complete, summarize_tasks
from reconciler_api.app.models import GenerationTask, TaskUpdate
from reconciler_api.app.reconciler import Reconciler
from reconciler_api.app.storage.memory import InMemoryTaskStorage

from fakes import finish_task, make_task

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _task(task_id: str, status: str, *, minutes: int, result_url: str | None = None):
    return GenerationTask(
        task_id=task_id,
        project_id="p1",
        provider="fake",
        status=status,
        result_url=result_url,
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


def test_mixed_project_is_generating_with_rounded_progress() -> None:
    progress = summarize_tasks(
        "p1",
        [
            _task("a", "pending", minutes=0),
            _task("b", "success", minutes=1, result_url="https://cdn/b.mp4"),
            _task("c", "fail", minutes=2),
        ],
    )

    assert progress.generation_progress == 67
    assert progress.generation_status == "generating"
    assert progress.completed_tasks == 2
    assert progress.succeeded_tasks == 1
    assert progress.result_urls == ["https://cdn/b.mp4"]


def test_project_completes_with_urls_in_creation_order(storage: InMemoryTaskStorage) -> None:
    make_task(storage, "first", project_id="p1", age_s=300)
    make_task(storage, "second", project_id="p1", age_s=200)
    make_task(storage, "third", project_id="p1", age_s=100)
    # Completion order differs from creation order on purpose.
    finish_task(storage, "third", "success", result_url="https://cdn/3.mp4")
    finish_task(storage, "second", "fail", error_message="boom")
    finish_task(storage, "first", "success", result_url="https://cdn/1.mp4")

    progress = ProgressAggregator(storage).recompute("p1")

    assert progress.generation_progress == 100
    assert progress.generation_status == "completed"
    assert progress.result_urls == ["https://cdn/1.mp4", "https://cdn/3.mp4"]
    assert storage.get_project_progress("p1") == progress


def test_all_failed_project() -> None:
    progress = summarize_tasks(
        "p1",
        [_task(task_id, "fail", minutes=index) for index, task_id in enumerate("xyz")],
    )

    assert progress.generation_progress == 100
    assert progress.generation_status == "failed"
    assert progress.result_urls == []


def test_project_without_tasks_is_generating_at_zero() -> None:
    progress = summarize_tasks("empty", [])

    assert progress.generation_progress == 0
    assert progress.generation_status == "generating"
    assert progress.total_tasks == 0


def test_success_without_url_counts_but_adds_no_url() -> None:
    progress = summarize_tasks(
        "p1",
        [
            _task("a", "success", minutes=0),
            _task("b", "success", minutes=1, result_url="https://cdn/b.mp4"),
        ],
    )

    assert progress.generation_status == "completed"
    assert progress.result_urls == ["https://cdn/b.mp4"]


def test_percent_complete_rounds_half_up() -> None:
    assert percent_complete(1, 8) == 13
    assert percent_complete(1, 3) == 33
    assert percent_complete(2, 3) == 67
    assert percent_complete(1, 2) == 50
    assert percent_complete(0, 5) == 0
    assert percent_complete(5, 5) == 100
    assert percent_complete(0, 0) == 0


def test_recompute_is_idempotent(storage: InMemoryTaskStorage) -> None:
    make_task(storage, "a", project_id="p1", age_s=20)
    make_task(storage, "b", project_id="p1", age_s=10)
    finish_task(storage, "a", "success", result_url="https://cdn/a.mp4")
    aggregator = ProgressAggregator(storage)

    first = aggregator.recompute("p1")
    second = aggregator.recompute("p1")

    assert first.model_dump(exclude={"updated_at"}) == second.model_dump(exclude={"updated_at"})
    assert second.generation_progress == 50


class _PausingStorage(InMemoryTaskStorage):
    """Holds the first rollup refresh open until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.reading = threading.Event()
        self.release = threading.Event()
        self._paused = False

    def refresh_project_progress(self, project_id, summarize):
        if self._paused:
            return super().refresh_project_progress(project_id, summarize)
        self._paused = True

        def slow_summarize(tasks):
            self.reading.set()
            self.release.wait(timeout=5)
            return summarize(tasks)

        return super().refresh_project_progress(project_id, slow_summarize)


def test_interleaved_completions_leave_final_rollup() -> None:
    storage = _PausingStorage()
    make_task(storage, "t1", project_id="p1", age_s=20)
    make_task(storage, "t2", project_id="p1", age_s=10)
    reconciler = Reconciler(storage)

    first = threading.Thread(
        target=reconciler.apply,
        args=(TaskUpdate(task_id="t1", status="success", result_url="https://cdn/1.mp4"),),
    )
    second = threading.Thread(
        target=reconciler.apply,
        args=(TaskUpdate(task_id="t2", status="success", result_url="https://cdn/2.mp4"),),
    )
    first.start()
    assert storage.reading.wait(timeout=5)
    second.start()
    time.sleep(0.05)
    storage.release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    progress = storage.get_project_progress("p1")
    assert progress.generation_progress == 100
    assert progress.generation_status == "completed"
    assert progress.result_urls == ["https://cdn/1.mp4", "https://cdn/2.mp4"]
