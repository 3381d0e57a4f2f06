"""Pydantic models shared across API, reconciler, aggregator, poller, and storage.

Beginner terms used in this file:
- Terminal status: `success` or `fail`; once a task reaches one it never changes.
- TaskUpdate: a provider report normalized into one shape, never persisted.
- Rollup: the project-level summary computed from all of its tasks.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Task lifecycle states used by storage + API responses.
TaskStatus = Literal["pending", "success", "fail"]
TerminalStatus = Literal["success", "fail"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"success", "fail"})

ProjectStatus = Literal["generating", "completed", "failed"]

# Result of applying one TaskUpdate.
ReconcileOutcome = Literal["applied", "already_terminal", "unknown_task", "rejected"]

# Webhook receipts add `ignored` for in-progress notifications.
WebhookOutcome = Literal["applied", "already_terminal", "unknown_task", "rejected", "ignored"]

AlertSeverity = Literal["none", "warning", "critical"]


class GenerationTask(BaseModel):
    """Canonical generation task record returned by API/storage."""

    # Provider-assigned job id.
    task_id: str
    project_id: str
    # Name of the provider adapter that owns the job.
    provider: str
    status: TaskStatus = "pending"
    result_url: str | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TaskUpdate(BaseModel):
    """Normalized status report produced by a provider adapter."""

    task_id: str = Field(min_length=1)
    # `pending` is accepted here so the reconciler can reject it explicitly.
    status: TaskStatus
    result_url: str | None = None
    error_message: str | None = None


class ProjectProgress(BaseModel):
    """Project rollup written by the aggregator."""

    project_id: str
    generation_progress: int = Field(ge=0, le=100)
    generation_status: ProjectStatus
    result_urls: list[str] = Field(default_factory=list)
    total_tasks: int = 0
    completed_tasks: int = 0
    succeeded_tasks: int = 0
    updated_at: datetime


class ReconcileResult(BaseModel):
    outcome: ReconcileOutcome
    task: GenerationTask | None = None
    # Present only when the outcome is `applied` and the rollup succeeded.
    progress: ProjectProgress | None = None


class SweepError(BaseModel):
    task_id: str
    provider: str
    error: str


class SweepReport(BaseModel):
    """Counters for one poller sweep."""

    min_age_s: float
    selected: int = 0
    applied: int = 0
    already_terminal: int = 0
    unknown_task: int = 0
    still_pending: int = 0
    failed: int = 0
    batches: int = 0
    # Only the first `max_reported_errors` failures are listed; `failed` counts all of them.
    errors: list[SweepError] = Field(default_factory=list)
    errors_truncated: int = 0
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: float = 0.0


class WebhookReceipt(BaseModel):
    received: bool = True
    provider: str
    task_id: str
    outcome: WebhookOutcome


class FailureRateReport(BaseModel):
    window_start: datetime
    window_minutes: int
    total: int
    succeeded: int
    failed: int
    pending: int
    failure_rate_pct: float
    alert: bool
    severity: AlertSeverity = "none"
    # False when an unresolved alert from the same window already existed.
    alert_created: bool = False
    alert_id: str | None = None


class AdminAlert(BaseModel):
    """Persisted operator alert; `resolved_at` is set by an operator."""

    alert_id: str
    alert_type: str
    severity: AlertSeverity
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    resolved_at: datetime | None = None


class RegisterTaskRequest(BaseModel):
    """Request body for POST /tasks."""

    task_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    provider: str = Field(min_length=1)
