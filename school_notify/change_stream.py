"""
Change stream interfaces.

A ChangeStream opens one ChangeFeed per (table, row filter). A feed is an
async iterator of ChangeEvent:

    feed = await stream.open("scores", RowFilter.any_of("student_id", kids))
    await feed.ready()          # first acknowledgement from the backend
    async for event in feed:    # raises SubscriptionError if the channel dies
        ...
    await feed.close()          # iteration then ends cleanly
"""

from __future__ import annotations

from typing import AsyncIterator, Protocol

from .models import ChangeEvent, RowFilter


class ChangeFeed(Protocol):
    async def ready(self) -> None:
        """Resolve once the backend acknowledged the subscription."""
        ...

    def __aiter__(self) -> AsyncIterator[ChangeEvent]: ...

    async def close(self) -> None: ...


class ChangeStream(Protocol):
    async def open(self, table: str, row_filter: RowFilter | None = None) -> ChangeFeed:
        """Request a subscription. Raises SubscriptionError if the request cannot be sent."""
        ...
