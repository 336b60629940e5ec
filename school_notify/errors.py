"""
Error taxonomy for the notification pipeline.

None of these reach the UI layer. Subscription failures surface as
subscription state, everything else is logged and the event is dropped.
"""

from __future__ import annotations


class NotifyError(Exception):
    """Base class for notification pipeline errors."""


class SubscriptionError(NotifyError):
    """A change feed failed to open or stopped unexpectedly."""


class LookupFailed(NotifyError):
    """A related-entity query could not be completed."""

    def __init__(self, table: str, key: str, detail: str):
        super().__init__(f"lookup {table}/{key} failed: {detail}")
        self.table = table
        self.key = key
        self.detail = detail


class EnrichmentFailure(NotifyError):
    """A change event could not be turned into a complete fact."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ComposeError(NotifyError):
    """No template exists for a fact/operation pair."""


class PersistenceWriteError(NotifyError):
    """Writing to the local key-value store failed."""


class RowDecodeError(NotifyError):
    """A row did not have the shape expected for its table."""

    def __init__(self, table: str, detail: str):
        super().__init__(f"unrecognised {table} row: {detail}")
        self.table = table
        self.detail = detail
