"""Exception types raised inside the reconciliation core."""

from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for reconciliation failures."""


class PayloadUnparseableError(ReconcilerError):
    """A webhook body did not contain a recognizable task id."""


class ProviderQueryError(ReconcilerError):
    """A provider status query failed or timed out."""


class StoreWriteError(ReconcilerError):
    """A task store read or write failed; the task stays pending."""


class UnknownProviderError(ReconcilerError):
    """No adapter is registered under the requested provider name."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unknown provider: {provider}")
        self.provider = provider


class DuplicateTaskError(ReconcilerError):
    """A task with the same id is already registered."""
