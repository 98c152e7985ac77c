"""Live Event Stream — best-effort broadcast of recorded events and flag changes.

One multiplexed stream. ``publish`` is synchronous and never blocks: each
subscriber owns a bounded asyncio.Queue, and when a subscriber's queue is
full the message is dropped for that subscriber only and counted on its
Subscription. Messages reach every subscriber in publish order.

Usage:
    async with stream.subscribe() as subscription:
        async for summary in subscription:
            ...
"""

import asyncio
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from lims_custody_engine.observability import get_logger

logger = get_logger(__name__)

EventSummaryKind = Literal[
    "custody-event",
    "audit-event",
    "compliance-flag",
    "violation-resolved",
    "partial-write",
]


class EventSummary(BaseModel):
    """One message on the live stream."""

    model_config = ConfigDict(frozen=True)

    kind: EventSummaryKind = Field(..., description="What happened")
    specimen_id: str = Field(..., description="Specimen the message is about")
    occurred_at: datetime = Field(..., description="When the underlying change happened (UTC)")
    payload: dict[str, Any] = Field(default_factory=dict, description="Kind-specific JSON payload")


class Subscription:
    """A subscriber's view of the stream.

    Iterate it (``async for``) to receive summaries; iteration ends after
    ``close``. Can be used as an async context manager that closes on exit.

    Attributes:
        dropped: Messages this subscriber missed because its queue was full.
    """

    def __init__(self, stream: "LiveEventStream", queue_size: int) -> None:
        """Initialize a subscription bound to a stream."""
        self._stream = stream
        self._queue: asyncio.Queue[EventSummary | None] = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, summary: EventSummary) -> bool:
        """Enqueue a summary without blocking.

        Returns:
            False if the queue was full and the summary was dropped.
        """
        try:
            self._queue.put_nowait(summary)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def get(self) -> EventSummary | None:
        """Wait for the next summary. Returns None once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        """Detach from the stream and wake any pending reader."""
        if self._closed:
            return
        self._closed = True
        self._stream.unsubscribe(self)
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # A full queue still ends iteration: get() returns None once drained.
            pass

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> EventSummary:
        summary = await self.get()
        if summary is None:
            raise StopAsyncIteration
        return summary

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class LiveEventStream:
    """Fan-out publisher for EventSummary messages.

    Args:
        queue_size: Per-subscriber queue bound.
    """

    def __init__(self, queue_size: int = 256) -> None:
        """Initialize the stream with no subscribers."""
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self.published = 0

    def subscribe(self) -> Subscription:
        """Attach a new subscriber. It receives messages published from now on."""
        subscription = Subscription(self, self._queue_size)
        self._subscribers.append(subscription)
        logger.info("Stream subscriber attached", subscriber_count=len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            logger.info("Stream subscriber detached", subscriber_count=len(self._subscribers))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, summary: EventSummary) -> None:
        """Deliver a summary to every subscriber without blocking.

        Args:
            summary: The message to broadcast.
        """
        self.published += 1
        for subscription in list(self._subscribers):
            if not subscription.offer(summary):
                logger.warning(
                    "Stream subscriber queue full, message dropped",
                    kind=summary.kind,
                    specimen_id=summary.specimen_id,
                    dropped_total=subscription.dropped,
                )
