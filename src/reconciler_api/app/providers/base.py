"""Provider adapter contract and shared normalization helpers."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from typing import Any, Protocol, TypeVar

from reconciler_api.app.errors import PayloadUnparseableError
from reconciler_api.app.models import TaskStatus, TaskUpdate

T = TypeVar("T")
logger = logging.getLogger(__name__)

SUCCESS_STATES = frozenset(
    {"success", "succeeded", "successful", "completed", "complete", "done", "finished"}
)
FAIL_STATES = frozenset(
    {
        "fail",
        "failed",
        "failure",
        "error",
        "errored",
        "cancelled",
        "canceled",
        "timeout",
        "expired",
    }
)
TASK_ID_KEYS = ("taskId", "task_id", "id")
RESULT_URL_KEYS = ("video_url", "videoUrl", "url", "resultUrl", "result_url")


class ProviderAdapter(Protocol):
    """Interface every generation provider integration implements."""

    name: str

    def query_status(self, task_id: str, *, timeout_s: float) -> TaskUpdate | None:
        """Return a terminal update, or None while the job is still running.

        Raises ProviderQueryError when the provider cannot be queried.
        """
        ...

    def parse_webhook(self, payload: Any) -> TaskUpdate | None:
        """Return a terminal update, or None for in-progress notifications.

        Raises PayloadUnparseableError when no task id can be extracted.
        """
        ...


def normalize_status(raw_state: Any) -> TaskStatus:
    """Map a provider status spelling onto pending/success/fail."""
    if not isinstance(raw_state, str):
        return "pending"
    state = raw_state.strip().lower()
    if state in SUCCESS_STATES:
        return "success"
    if state in FAIL_STATES:
        return "fail"
    return "pending"


def extract_task_id(payload: Any) -> str:
    """Find the task id at the top level or under `data`."""
    records = _candidate_records(payload)
    for key in TASK_ID_KEYS:
        for record in records:
            value = record.get(key)
            if isinstance(value, (str, int)) and str(value).strip():
                return str(value).strip()
    raise PayloadUnparseableError("No taskId in webhook payload")


def merged_record(payload: Any) -> dict[str, Any]:
    """Flatten `{..., data: {...}}` envelopes; top-level keys win."""
    merged: dict[str, Any] = {}
    for record in reversed(_candidate_records(payload)):
        merged.update(record)
    return merged


def extract_result_url(value: Any) -> str | None:
    """Pull the first result URL out of the shapes providers return.

    Accepts a plain string, a JSON-encoded string, a list of strings or of
    objects (`[{"video_url": ...}]`), or an object with a `resultUrls` list.
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text[0] in "[{":
            try:
                return extract_result_url(json.loads(text))
            except json.JSONDecodeError:
                logger.warning("provider event=result_json_unparseable raw=%s", text[:200])
                return None
        return text
    if isinstance(value, list):
        for item in value:
            url = extract_result_url(item)
            if url:
                return url
        return None
    if isinstance(value, Mapping):
        for key in ("resultUrls", "result_urls", "videos", "outputs"):
            if key in value:
                url = extract_result_url(value[key])
                if url:
                    return url
        for key in RESULT_URL_KEYS:
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
    return None


def update_from_record(task_id: str, record: Mapping[str, Any]) -> TaskUpdate | None:
    """Build a TaskUpdate from a flattened provider record.

    Understands `state`/`status`, `resultJson`/`resultUrls`, and
    `failMsg`/`failCode`/`errorMessage` field spellings.
    """
    raw_state = record.get("state", record.get("status"))
    status = normalize_status(raw_state)
    if status == "pending":
        return None
    if status == "success":
        result_url = extract_result_url(record.get("resultJson"))
        if result_url is None:
            result_url = extract_result_url(record.get("resultUrls"))
        if result_url is None:
            result_url = extract_result_url(record.get("result"))
        return TaskUpdate(task_id=task_id, status="success", result_url=result_url)
    error_message = None
    for key in ("failMsg", "errorMessage", "error_message", "error", "failCode"):
        candidate = record.get(key)
        if candidate not in (None, ""):
            error_message = str(candidate)
            break
    return TaskUpdate(task_id=task_id, status="fail", error_message=error_message)


def call_with_timeout(
    fn: Callable[..., T],
    *args: Any,
    timeout_s: float,
    label: str,
    **kwargs: Any,
) -> T:
    """Run `fn` on a worker thread and give up after `timeout_s` seconds."""
    pool = ThreadPoolExecutor(max_workers=1)
    try:
        future = pool.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout_s)
        except TimeoutError as exc:
            raise TimeoutError(f"{label} timed out after {timeout_s:.2f}s") from exc
    finally:
        # Do not wait for a hung call; the worker thread finishes on its own.
        pool.shutdown(wait=False, cancel_futures=True)


def _candidate_records(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, Mapping):
        return []
    records = [dict(payload)]
    data = payload.get("data")
    if isinstance(data, Mapping):
        records.append(dict(data))
    return records
