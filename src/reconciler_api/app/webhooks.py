"""Push path: turn a provider notification into a reconciler call."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from reconciler_api.app.errors import PayloadUnparseableError, UnknownProviderError
from reconciler_api.app.models import TaskUpdate, WebhookReceipt
from reconciler_api.app.providers.base import ProviderAdapter, call_with_timeout, extract_task_id
from reconciler_api.app.reconciler import Reconciler

logger = logging.getLogger(__name__)


class WebhookReceiver:
    def __init__(
        self,
        *,
        reconciler: Reconciler,
        providers: Mapping[str, ProviderAdapter],
        parse_timeout_s: float = 2.0,
    ) -> None:
        self.reconciler = reconciler
        self.providers = providers
        self.parse_timeout_s = parse_timeout_s

    def receive(self, provider: str, payload: Any) -> WebhookReceipt:
        """Reconcile one notification synchronously.

        Raises UnknownProviderError or PayloadUnparseableError; every other
        outcome (including unknown or already finished tasks) is a receipt.
        """
        adapter = self.providers.get(provider)
        if adapter is None:
            raise UnknownProviderError(provider)

        try:
            update: TaskUpdate | None = call_with_timeout(
                adapter.parse_webhook,
                payload,
                timeout_s=self.parse_timeout_s,
                label=f"{provider} webhook parse",
            )
        except PayloadUnparseableError:
            logger.warning("webhook event=unparseable provider=%s", provider)
            raise
        except TimeoutError as exc:
            logger.warning("webhook event=parse_timeout provider=%s", provider)
            raise PayloadUnparseableError(str(exc)) from exc
        except (ValueError, TypeError) as exc:
            # Includes pydantic ValidationError from malformed field values.
            logger.warning("webhook event=unparseable provider=%s reason=%s", provider, exc)
            raise PayloadUnparseableError(f"Malformed {provider} webhook payload") from exc

        if update is None:
            task_id = extract_task_id(payload)
            logger.info(
                "webhook event=ignored provider=%s task_id=%s reason=in_progress",
                provider,
                task_id,
            )
            return WebhookReceipt(provider=provider, task_id=task_id, outcome="ignored")

        result = self.reconciler.apply(
            update, source=f"webhook:{provider}", provider=provider
        )
        return WebhookReceipt(provider=provider, task_id=update.task_id, outcome=result.outcome)
