"""Optional TTL cache in front of provider status queries.

Only terminal results are cached. The task store stays the system of record:
the cache can only save a repeated provider call, it never answers for a task
the store has not seen.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from reconciler_api.app.models import TaskUpdate
from reconciler_api.app.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


class StatusCache:
    """Thread-safe bounded TTL map of task id -> terminal TaskUpdate."""

    def __init__(
        self,
        *,
        ttl_s: float,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = ttl_s
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, TaskUpdate]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, task_id: str) -> TaskUpdate | None:
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is None:
                return None
            stored_at, update = entry
            if self._clock() - stored_at > self.ttl_s:
                del self._entries[task_id]
                logger.debug("status_cache event=expired task_id=%s", task_id)
                return None
        return update.model_copy()

    def put(self, update: TaskUpdate) -> None:
        if update.status == "pending":
            return
        with self._lock:
            self._entries[update.task_id] = (self._clock(), update.model_copy())
            self._entries.move_to_end(update.task_id)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, task_id: str) -> None:
        with self._lock:
            self._entries.pop(task_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CachingProviderAdapter:
    """Wrap an adapter so repeated status queries for finished jobs hit the cache."""

    def __init__(self, inner: ProviderAdapter, cache: StatusCache) -> None:
        self.inner = inner
        self.cache = cache
        self.name = inner.name

    def query_status(self, task_id: str, *, timeout_s: float) -> TaskUpdate | None:
        cached = self.cache.get(task_id)
        if cached is not None:
            logger.debug("status_cache event=hit provider=%s task_id=%s", self.name, task_id)
            return cached
        update = self.inner.query_status(task_id, timeout_s=timeout_s)
        if update is not None:
            self.cache.put(update)
        return update

    def parse_webhook(self, payload: Any) -> TaskUpdate | None:
        return self.inner.parse_webhook(payload)
