"""FastAPI application wiring for the generation reconciliation service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Lifespan: code that runs when the server starts and stops (here: storage
  migration and the background sweep scheduler).
- app.state: a place to store shared runtime objects (storage, reconciler, poller).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query, Request

from .app.aggregator import ProgressAggregator
from .app.errors import (
    DuplicateTaskError,
    PayloadUnparseableError,
    StoreWriteError,
    UnknownProviderError,
)
from .app.models import (
    FailureRateReport,
    GenerationTask,
    ProjectProgress,
    RegisterTaskRequest,
    SweepReport,
    WebhookReceipt,
)
from .app.monitoring import check_failure_rate
from .app.poller import Poller
from .app.providers.base import ProviderAdapter
from .app.providers.registry import build_provider_registry
from .app.reconciler import Reconciler
from .app.scheduler import SweepScheduler
from .app.settings import Settings, get_settings
from .app.storage.base import TaskStorage
from .app.storage.postgres import PostgresTaskStorage
from .app.webhooks import WebhookReceiver

logger = logging.getLogger(__name__)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: TaskStorage | None,
    providers_override: Mapping[str, ProviderAdapter] | None,
) -> None:
    """Build shared components once; later calls are no-ops."""
    if hasattr(app.state, "storage"):
        return

    if storage_override is None and not settings.database_url:
        raise RuntimeError(
            "Missing database URL. Set RECONCILER_DATABASE_URL before starting the app."
        )
    storage = storage_override or PostgresTaskStorage(settings.database_url)
    storage.migrate()

    providers = (
        dict(providers_override)
        if providers_override is not None
        else build_provider_registry(settings)
    )
    aggregator = ProgressAggregator(storage)
    reconciler = Reconciler(storage, aggregator)
    poller = Poller(
        storage=storage,
        reconciler=reconciler,
        providers=providers,
        batch_size=settings.poll_batch_size,
        max_concurrency=settings.poll_max_concurrency,
        query_timeout_s=settings.provider_query_timeout_s,
        request_delay_s=settings.poll_request_delay_s,
        max_reported_errors=settings.poll_max_reported_errors,
    )

    app.state.settings = settings
    app.state.providers = providers
    app.state.aggregator = aggregator
    app.state.reconciler = reconciler
    app.state.poller = poller
    app.state.webhooks = WebhookReceiver(
        reconciler=reconciler,
        providers=providers,
        parse_timeout_s=settings.webhook_parse_timeout_s,
    )
    app.state.scheduler = None
    # Assigned last: its presence marks the runtime as fully built.
    app.state.storage = storage


def create_app(
    *,
    storage: TaskStorage | None = None,
    providers: Mapping[str, ProviderAdapter] | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    """Application factory.

    Tests inject an in-memory storage and fake providers; production builds
    PostgreSQL storage and the configured provider adapters on startup.
    """
    settings = settings_override or get_settings()

    def _ensure(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            providers_override=providers,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure(app)
        if settings.poll_interval_s > 0:
            scheduler = SweepScheduler(
                app.state.poller,
                interval_s=settings.poll_interval_s,
                min_age=timedelta(seconds=settings.poll_min_age_s),
            )
            scheduler.start()
            app.state.scheduler = scheduler
        try:
            yield
        finally:
            if app.state.scheduler is not None:
                app.state.scheduler.stop()
                app.state.scheduler = None

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure(app)

    def _state(request: Request) -> Any:
        _ensure(request.app)
        return request.app.state

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/webhooks/{provider}", response_model=WebhookReceipt)
    def receive_webhook(
        provider: str,
        request: Request,
        payload: Any = Body(default=None),
    ) -> WebhookReceipt:
        state = _state(request)
        try:
            return state.webhooks.receive(provider, payload)
        except UnknownProviderError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except PayloadUnparseableError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StoreWriteError as exc:
            # Transient: let the provider redeliver.
            logger.error("webhook event=store_failed provider=%s reason=%s", provider, exc)
            raise HTTPException(status_code=503, detail="Task store unavailable") from exc

    @app.post("/sweep", response_model=SweepReport)
    def run_sweep(
        request: Request,
        min_age_s: float | None = Query(default=None, ge=0.0),
    ) -> SweepReport:
        state = _state(request)
        grace = settings.poll_min_age_s if min_age_s is None else min_age_s
        return state.poller.sweep(timedelta(seconds=grace))

    @app.post("/tasks", response_model=GenerationTask, status_code=201)
    def register_task(payload: RegisterTaskRequest, request: Request) -> GenerationTask:
        state = _state(request)
        if payload.provider not in state.providers:
            raise HTTPException(status_code=400, detail=f"Unknown provider: {payload.provider}")
        try:
            task = state.storage.create_task(
                task_id=payload.task_id,
                project_id=payload.project_id,
                provider=payload.provider,
            )
        except DuplicateTaskError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        logger.info(
            "task event=registered task_id=%s project_id=%s provider=%s",
            task.task_id,
            task.project_id,
            task.provider,
        )
        state.aggregator.recompute(task.project_id)
        return task

    @app.get("/tasks/{task_id}", response_model=GenerationTask)
    def get_task(task_id: str, request: Request) -> GenerationTask:
        task = _state(request).storage.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    @app.get("/projects/{project_id}/tasks", response_model=list[GenerationTask])
    def list_project_tasks(project_id: str, request: Request) -> list[GenerationTask]:
        return _state(request).storage.list_project_tasks(project_id)

    @app.get("/projects/{project_id}/progress", response_model=ProjectProgress)
    def get_project_progress(project_id: str, request: Request) -> ProjectProgress:
        progress = _state(request).storage.get_project_progress(project_id)
        if progress is None:
            raise HTTPException(status_code=404, detail="Project progress not found")
        return progress

    @app.post("/projects/{project_id}/recompute", response_model=ProjectProgress)
    def recompute_project(project_id: str, request: Request) -> ProjectProgress:
        return _state(request).aggregator.recompute(project_id)

    @app.get("/monitoring/failure-rate", response_model=FailureRateReport)
    def failure_rate(
        request: Request,
        window_minutes: int | None = Query(default=None, ge=1),
    ) -> FailureRateReport:
        state = _state(request)
        minutes = window_minutes or settings.failure_rate_window_minutes
        return check_failure_rate(
            state.storage,
            window=timedelta(minutes=minutes),
            threshold_pct=settings.failure_rate_threshold_pct,
            critical_pct=settings.failure_rate_critical_pct,
        )

    return app


# Module-level app for `uvicorn reconciler_api.main:app`.
app = create_app()
