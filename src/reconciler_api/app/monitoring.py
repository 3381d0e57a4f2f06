"""Windowed generation failure-rate check.

Alerts are persisted so operators can find them after the log has rotated.
While an unresolved alert of the same type exists inside the window, a new
check reuses it instead of raising another one.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from reconciler_api.app.models import AdminAlert, AlertSeverity, FailureRateReport
from reconciler_api.app.storage.base import TaskStorage

logger = logging.getLogger(__name__)

HIGH_FAILURE_RATE_ALERT = "high_failure_rate"


def check_failure_rate(
    storage: TaskStorage,
    *,
    window: timedelta = timedelta(hours=1),
    threshold_pct: float = 10.0,
    critical_pct: float = 25.0,
    now: datetime | None = None,
) -> FailureRateReport:
    checked_at = now or datetime.now(UTC)
    window_start = checked_at - window
    window_minutes = int(window.total_seconds() // 60)
    counts = storage.count_tasks_by_status(created_since=window_start)
    succeeded = counts.get("success", 0)
    failed = counts.get("fail", 0)
    pending = counts.get("pending", 0)
    total = succeeded + failed + pending

    rate = round(100.0 * failed / total, 2) if total else 0.0
    report = FailureRateReport(
        window_start=window_start,
        window_minutes=window_minutes,
        total=total,
        succeeded=succeeded,
        failed=failed,
        pending=pending,
        failure_rate_pct=rate,
        alert=rate > threshold_pct,
    )
    if not report.alert:
        return report

    severity: AlertSeverity = "critical" if rate > critical_pct else "warning"
    report.severity = severity
    existing = storage.find_open_alert(HIGH_FAILURE_RATE_ALERT, created_since=window_start)
    if existing is not None:
        logger.info(
            "monitoring event=alert_deduplicated alert_id=%s failure_rate_pct=%s",
            existing.alert_id,
            rate,
        )
        report.alert_id = existing.alert_id
        return report

    alert = storage.create_alert(
        AdminAlert(
            alert_id=uuid4().hex,
            alert_type=HIGH_FAILURE_RATE_ALERT,
            severity=severity,
            title=f"High Generation Failure Rate: {rate:.1f}%",
            message=(
                f"{failed} out of {total} generations failed in the last "
                f"{window_minutes} minutes."
            ),
            metadata={
                "failure_rate": rate,
                "failed_count": failed,
                "total_count": total,
                "window_minutes": window_minutes,
            },
            created_at=checked_at,
        )
    )
    logger.warning(
        "monitoring event=high_failure_rate severity=%s failure_rate_pct=%s failed=%s total=%s "
        "alert_id=%s",
        severity,
        rate,
        failed,
        total,
        alert.alert_id,
    )
    report.alert_created = True
    report.alert_id = alert.alert_id
    return report
