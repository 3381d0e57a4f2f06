"""Run one poller sweep from the command line (cron / scheduled job entry point)."""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Mapping, Sequence
from datetime import timedelta

from .app.aggregator import ProgressAggregator
from .app.models import SweepReport
from .app.poller import Poller
from .app.providers.base import ProviderAdapter
from .app.providers.registry import build_provider_registry
from .app.reconciler import Reconciler
from .app.settings import Settings, get_settings
from .app.storage.base import TaskStorage
from .app.storage.postgres import PostgresTaskStorage

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Poll providers for generation tasks stuck in pending and reconcile them."
    )
    parser.add_argument(
        "--min-age-s",
        type=float,
        default=None,
        help="Grace period in seconds (default: RECONCILER_POLL_MIN_AGE_S).",
    )
    parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=None,
        help="Pending tasks fetched per batch (default: RECONCILER_POLL_BATCH_SIZE).",
    )
    parser.add_argument(
        "--concurrency",
        type=_positive_int,
        default=None,
        help="Concurrent provider calls (default: RECONCILER_POLL_MAX_CONCURRENCY).",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Logging level (default: INFO).",
    )
    return parser.parse_args(argv)


def run_sweep(
    settings: Settings,
    *,
    storage: TaskStorage | None = None,
    providers: Mapping[str, ProviderAdapter] | None = None,
    min_age_s: float | None = None,
    batch_size: int | None = None,
    concurrency: int | None = None,
) -> SweepReport:
    adapters = providers if providers is not None else build_provider_registry(settings)
    if storage is None:
        if not settings.database_url:
            raise RuntimeError("RECONCILER_DATABASE_URL is required.")
        storage = PostgresTaskStorage(settings.database_url)
        storage.migrate()
    reconciler = Reconciler(storage, ProgressAggregator(storage))
    poller = Poller(
        storage=storage,
        reconciler=reconciler,
        providers=adapters,
        batch_size=settings.poll_batch_size if batch_size is None else batch_size,
        max_concurrency=settings.poll_max_concurrency if concurrency is None else concurrency,
        query_timeout_s=settings.provider_query_timeout_s,
        request_delay_s=settings.poll_request_delay_s,
        max_reported_errors=settings.poll_max_reported_errors,
    )
    grace = settings.poll_min_age_s if min_age_s is None else min_age_s
    return poller.sweep(timedelta(seconds=grace))


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        report = run_sweep(
            get_settings(),
            min_age_s=args.min_age_s,
            batch_size=args.batch_size,
            concurrency=args.concurrency,
        )
    except (RuntimeError, ValueError) as exc:
        logger.error("sweep_cli event=config_error reason=%s", exc)
        return 1
    print(report.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
