"""Background thread that runs poller sweeps on a fixed interval."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta

from reconciler_api.app.models import SweepReport
from reconciler_api.app.poller import Poller

logger = logging.getLogger(__name__)


class SweepScheduler:
    def __init__(self, poller: Poller, *, interval_s: float, min_age: timedelta) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.poller = poller
        self.interval_s = interval_s
        self.min_age = min_age
        self.last_report: SweepReport | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sweep-scheduler", daemon=True)
        self._thread.start()
        logger.info("scheduler event=started interval_s=%s", self.interval_s)

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            self._thread = None
        logger.info("scheduler event=stopped")

    def run_once(self) -> SweepReport | None:
        try:
            self.last_report = self.poller.sweep(self.min_age)
        except Exception:  # noqa: BLE001
            # A broken sweep (e.g. database down) must not kill the schedule.
            logger.exception("scheduler event=sweep_failed")
            return None
        return self.last_report

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.run_once()
