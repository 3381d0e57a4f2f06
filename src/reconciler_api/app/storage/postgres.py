"""PostgreSQL storage backend for generation tasks, project rollups and alerts.

Beginner terms:
- Migration: creating/updating database tables before normal reads/writes.
- Conditional update: `UPDATE ... WHERE status = 'pending'` changes a row only if it
  is still pending, so two racing writers cannot both complete the same task.
- Keyset pagination: fetching the next batch "after" the last (created_at, task_id)
  seen instead of using OFFSET.
- Advisory lock: a named Postgres lock (here keyed on project id) that serializes
  rollup refreshes even when they run in different processes.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from reconciler_api.app.errors import DuplicateTaskError
from reconciler_api.app.models import (
    AdminAlert,
    GenerationTask,
    ProjectProgress,
    TerminalStatus,
)
from reconciler_api.app.storage.base import PendingCursor


class PostgresTaskStorage:
    """Thread-safe PostgreSQL-backed storage for GenerationTask records."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("RECONCILER_DATABASE_URL is required")
        self.database_url = database_url
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS generation_tasks (
                    task_id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'success', 'fail')),
                    result_url TEXT,
                    error_message TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ
                )
                """)
            # Poller selection: pending rows ordered by creation.
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_generation_tasks_pending
                ON generation_tasks(created_at, task_id)
                WHERE status = 'pending'
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_generation_tasks_project
                ON generation_tasks(project_id, created_at)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS project_progress (
                    project_id TEXT PRIMARY KEY,
                    generation_progress INTEGER NOT NULL,
                    generation_status TEXT NOT NULL,
                    result_urls JSONB NOT NULL DEFAULT '[]'::jsonb,
                    total_tasks INTEGER NOT NULL,
                    completed_tasks INTEGER NOT NULL,
                    succeeded_tasks INTEGER NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS admin_alerts (
                    alert_id TEXT PRIMARY KEY,
                    alert_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL,
                    resolved_at TIMESTAMPTZ
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_admin_alerts_open
                ON admin_alerts(alert_type, created_at)
                WHERE resolved_at IS NULL
                """)
            conn.commit()

    def create_task(
        self,
        *,
        task_id: str,
        project_id: str,
        provider: str,
        created_at: datetime | None = None,
    ) -> GenerationTask:
        """Insert a pending task row for an already submitted provider job."""
        now = created_at or datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO generation_tasks (
                    task_id,
                    project_id,
                    provider,
                    status,
                    created_at
                ) VALUES (%s, %s, %s, 'pending', %s)
                ON CONFLICT (task_id) DO NOTHING
                RETURNING *
                """,
                (task_id, project_id, provider, now),
            ).fetchone()
            conn.commit()
        if row is None:
            raise DuplicateTaskError(f"Task {task_id} already exists")
        return self._row_to_task(row)

    def get_task(self, task_id: str) -> GenerationTask | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM generation_tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def complete_task(
        self,
        task_id: str,
        *,
        status: TerminalStatus,
        result_url: str | None,
        error_message: str | None,
        completed_at: datetime,
    ) -> GenerationTask | None:
        """Single-statement pending -> terminal transition."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE generation_tasks
                SET status = %s,
                    result_url = %s,
                    error_message = %s,
                    completed_at = %s
                WHERE task_id = %s
                  AND status = 'pending'
                RETURNING *
                """,
                (status, result_url, error_message, completed_at, task_id),
            ).fetchone()
            conn.commit()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_pending_tasks(
        self,
        *,
        created_before: datetime,
        limit: int,
        after: PendingCursor | None = None,
    ) -> list[GenerationTask]:
        if after is None:
            query = """
                SELECT *
                FROM generation_tasks
                WHERE status = 'pending'
                  AND created_at < %s
                ORDER BY created_at, task_id
                LIMIT %s
                """
            params: tuple[Any, ...] = (created_before, limit)
        else:
            query = """
                SELECT *
                FROM generation_tasks
                WHERE status = 'pending'
                  AND created_at < %s
                  AND (created_at, task_id) > (%s, %s)
                ORDER BY created_at, task_id
                LIMIT %s
                """
            params = (created_before, after[0], after[1], limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_project_tasks(self, project_id: str) -> list[GenerationTask]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM generation_tasks
                WHERE project_id = %s
                ORDER BY created_at, task_id
                """,
                (project_id,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def refresh_project_progress(
        self,
        project_id: str,
        summarize: Callable[[list[GenerationTask]], ProjectProgress],
    ) -> ProjectProgress:
        """Recompute and upsert the rollup in one transaction.

        A transaction-scoped advisory lock keyed on the project serializes
        refreshes across processes. Each statement under READ COMMITTED sees
        writes committed before the lock was granted.
        """
        with self._lock, self._connect() as conn:
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (project_id,))
            rows = conn.execute(
                """
                SELECT *
                FROM generation_tasks
                WHERE project_id = %s
                ORDER BY created_at, task_id
                """,
                (project_id,),
            ).fetchall()
            progress = summarize([self._row_to_task(row) for row in rows])
            conn.execute(
                """
                INSERT INTO project_progress (
                    project_id,
                    generation_progress,
                    generation_status,
                    result_urls,
                    total_tasks,
                    completed_tasks,
                    succeeded_tasks,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (project_id) DO UPDATE
                SET generation_progress = EXCLUDED.generation_progress,
                    generation_status = EXCLUDED.generation_status,
                    result_urls = EXCLUDED.result_urls,
                    total_tasks = EXCLUDED.total_tasks,
                    completed_tasks = EXCLUDED.completed_tasks,
                    succeeded_tasks = EXCLUDED.succeeded_tasks,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    project_id,
                    progress.generation_progress,
                    progress.generation_status,
                    self._json_wrapper(progress.result_urls),
                    progress.total_tasks,
                    progress.completed_tasks,
                    progress.succeeded_tasks,
                    progress.updated_at,
                ),
            )
            # Commit releases the advisory lock.
            conn.commit()
        return progress

    def get_project_progress(self, project_id: str) -> ProjectProgress | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM project_progress WHERE project_id = %s",
                (project_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_progress(row)

    def count_tasks_by_status(self, *, created_since: datetime) -> dict[str, int]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT status, COUNT(*) AS total
                FROM generation_tasks
                WHERE created_at >= %s
                GROUP BY status
                """,
                (created_since,),
            ).fetchall()
        return {str(row["status"]): int(row["total"]) for row in rows}

    def find_open_alert(self, alert_type: str, *, created_since: datetime) -> AdminAlert | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM admin_alerts
                WHERE alert_type = %s
                  AND resolved_at IS NULL
                  AND created_at >= %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (alert_type, created_since),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_alert(row)

    def create_alert(self, alert: AdminAlert) -> AdminAlert:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO admin_alerts (
                    alert_id,
                    alert_type,
                    severity,
                    title,
                    message,
                    metadata,
                    created_at,
                    resolved_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    alert.alert_id,
                    alert.alert_type,
                    alert.severity,
                    alert.title,
                    alert.message,
                    self._json_wrapper(alert.metadata),
                    alert.created_at,
                    alert.resolved_at,
                ),
            )
            conn.commit()
        return alert

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_list(raw: Any) -> list[str]:
        if raw is None:
            return []
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(parsed, list):
            return []
        return [str(item) for item in parsed if item]

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        """Parse datetime value from database driver output."""
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> GenerationTask:
        completed_raw = row["completed_at"]
        return GenerationTask(
            task_id=str(row["task_id"]),
            project_id=str(row["project_id"]),
            provider=str(row["provider"]),
            status=row["status"],
            result_url=row["result_url"],
            error_message=row["error_message"],
            created_at=cls._parse_datetime(row["created_at"]),
            completed_at=cls._parse_datetime(completed_raw) if completed_raw is not None else None,
        )

    @classmethod
    def _row_to_progress(cls, row: Any) -> ProjectProgress:
        return ProjectProgress(
            project_id=str(row["project_id"]),
            generation_progress=int(row["generation_progress"]),
            generation_status=row["generation_status"],
            result_urls=cls._parse_json_list(row["result_urls"]),
            total_tasks=int(row["total_tasks"]),
            completed_tasks=int(row["completed_tasks"]),
            succeeded_tasks=int(row["succeeded_tasks"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_alert(cls, row: Any) -> AdminAlert:
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        resolved_raw = row["resolved_at"]
        return AdminAlert(
            alert_id=str(row["alert_id"]),
            alert_type=str(row["alert_type"]),
            severity=row["severity"],
            title=row["title"],
            message=row["message"],
            metadata=metadata if isinstance(metadata, dict) else {},
            created_at=cls._parse_datetime(row["created_at"]),
            resolved_at=cls._parse_datetime(resolved_raw) if resolved_raw is not None else None,
        )
