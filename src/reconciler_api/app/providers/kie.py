"""Adapters for the Kie jobs API used by the video generation providers.

Two status endpoints exist upstream:
- `recordInfo` (current): `{code, msg, data: {taskId, state, resultJson, failCode, failMsg}}`
  where `resultJson` is a JSON string holding `resultUrls`.
- `recordsInfo` (legacy, OmniHuman): `{status, resultUrls: [{video_url}], errorMessage}`.
Webhooks for both carry the `recordInfo` record, either at the top level or under `data`.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib import error, parse, request

from reconciler_api.app.errors import ProviderQueryError
from reconciler_api.app.models import TaskUpdate
from reconciler_api.app.providers.base import extract_task_id, merged_record, update_from_record

logger = logging.getLogger(__name__)


class KieJobsAdapter:
    """Adapter for jobs created through `/api/v1/jobs/createTask`."""

    name = "kie_jobs"
    status_path = "/api/v1/jobs/recordInfo"

    def __init__(self, *, api_key: str, base_url: str = "https://api.kie.ai") -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def query_status(self, task_id: str, *, timeout_s: float) -> TaskUpdate | None:
        logger.debug("provider event=status_query provider=%s task_id=%s", self.name, task_id)
        body = self._get_json(self.status_path, params={"taskId": task_id}, timeout_s=timeout_s)
        record = self._status_record(body)
        return update_from_record(task_id, record)

    def parse_webhook(self, payload: Any) -> TaskUpdate | None:
        task_id = extract_task_id(payload)
        return update_from_record(task_id, merged_record(payload))

    def _status_record(self, body: dict[str, Any]) -> dict[str, Any]:
        code = body.get("code")
        if code is not None and code != 200:
            raise ProviderQueryError(
                f"{self.name} status query rejected code={code} msg={body.get('msg')}"
            )
        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderQueryError(f"{self.name} status response did not contain data")
        return data

    def _get_json(
        self,
        path: str,
        *,
        params: dict[str, str],
        timeout_s: float,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}?{parse.urlencode(params)}"
        req = request.Request(
            url=url,
            method="GET",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise ProviderQueryError(
                f"{self.name} status query failed status={exc.code} body={raw_error[:200]}"
            ) from exc
        except (error.URLError, TimeoutError) as exc:
            raise ProviderQueryError(f"{self.name} status query failed: {exc}") from exc
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ProviderQueryError(f"{self.name} status response was not JSON") from exc
        if not isinstance(parsed, dict):
            raise ProviderQueryError(f"{self.name} status response was not an object")
        return parsed


class OmniHumanAdapter(KieJobsAdapter):
    """Legacy OmniHuman jobs polled through the `recordsInfo` endpoint."""

    name = "omnihuman"
    status_path = "/api/v1/jobs/recordsInfo"

    def _status_record(self, body: dict[str, Any]) -> dict[str, Any]:
        # Older responses are flat; newer ones reuse the recordInfo envelope.
        if isinstance(body.get("data"), dict):
            return super()._status_record(body)
        if "status" not in body and "state" not in body:
            raise ProviderQueryError(f"{self.name} status response did not contain a status")
        return body
