"""
Typed lifecycle events.

Publishes workflow and job events to registered callbacks and bounded
per-subscriber channels. Delivery order matches publish order.
"""

import asyncio
import inspect
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from pydantic import BaseModel, Field, field_serializer

from shared.config import settings
from shared.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Closed set of lifecycle events."""

    WORKFLOW_CREATED = "workflowCreated"
    WORKFLOW_UPDATED = "workflowUpdated"
    WORKFLOW_COMPLETED = "workflowCompleted"
    WORKFLOW_FAILED = "workflowFailed"
    JOB_ADDED = "jobAdded"
    JOB_PROGRESS = "jobProgress"
    JOB_UPDATED = "jobUpdated"
    JOB_COMPLETED = "jobCompleted"
    JOB_FAILED = "jobFailed"
    JOB_CANCELLED = "jobCancelled"


class Event(BaseModel):
    """A published lifecycle event."""

    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("timestamp")
    def serialize_datetime(self, value: datetime) -> str:
        """Serialize datetime to ISO format string."""
        return value.isoformat()


EventCallback = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    """
    Event sink shared by the orchestrator and the job scheduler.

    Callbacks are invoked in registration order; async callbacks are awaited
    before the next one runs. A failing subscriber is logged and skipped.
    Channels are bounded queues; when a channel is full its oldest event is
    dropped to make room.
    """

    def __init__(self):
        self._callbacks: List[EventCallback] = []
        self._channels: List[asyncio.Queue] = []
        self.dropped_events = 0

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Register a callback for every event.

        Args:
            callback: Sync or async callable receiving an Event

        Returns:
            Callable that removes the subscription
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def open_channel(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        """Open a bounded queue that receives every subsequent event."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or settings.event_queue_size)
        self._channels.append(queue)
        return queue

    def close_channel(self, queue: asyncio.Queue) -> None:
        if queue in self._channels:
            self._channels.remove(queue)

    async def publish(self, event_type: EventType, data: Optional[Dict[str, Any]] = None) -> Event:
        """
        Publish an event to all channels, then all callbacks.

        Args:
            event_type: Event type
            data: Event payload

        Returns:
            The published Event
        """
        event = Event(type=event_type, data=data or {})

        for queue in list(self._channels):
            self._offer(queue, event)

        for callback in list(self._callbacks):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Event subscriber failed",
                    exc_info=e,
                    extra={"event_type": event_type.value}
                )

        return event

    def _offer(self, queue: asyncio.Queue, event: Event) -> None:
        if queue.full():
            queue.get_nowait()
            self.dropped_events += 1
            logger.warning(
                "Event channel full, dropping oldest event",
                extra={"event_type": event.type.value, "maxsize": queue.maxsize}
            )
        queue.put_nowait(event)
