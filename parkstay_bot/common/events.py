"""
In-process event bus

Executors and the queue manager publish typed events; the CLI and any
other front end subscribe to them. Handlers may be plain callables or
coroutine functions. A failing handler is logged and never affects the
publisher.
"""
import asyncio
import inspect
import logging
from datetime import datetime, date
from enum import Enum
from typing import Callable, Dict, List, Optional, Any
from pydantic import BaseModel, Field

from .models import CampsiteAvailability, Notification, QueueStatus
from .timing import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    WATCH_FOUND = "watch-found"
    STQ_SUCCESS = "stq-success"
    QUEUE_STATUS_UPDATE = "queue-status-update"
    NOTIFICATION_CREATED = "notification-created"


class Event(BaseModel):
    type: EventType
    emitted_at: datetime = Field(default_factory=utcnow)


class WatchFoundEvent(Event):
    type: EventType = EventType.WATCH_FOUND
    watch_id: int
    watch_name: str
    campground_id: str
    sites: List[CampsiteAvailability] = Field(default_factory=list)


class STQSuccessEvent(Event):
    type: EventType = EventType.STQ_SUCCESS
    stq_id: int
    old_reference: str
    new_reference: str
    departure_date: Optional[date] = None


class QueueStatusEvent(Event):
    type: EventType = EventType.QUEUE_STATUS_UPDATE
    status: Optional[QueueStatus] = None
    position: int = 0
    estimated_wait_seconds: int = 0
    expiry_remaining_seconds: int = 0


class NotificationCreatedEvent(Event):
    type: EventType = EventType.NOTIFICATION_CREATED
    notification: Notification


Handler = Callable[[Event], Any]


class EventBus:
    """Publish/subscribe hub keyed by event type"""

    def __init__(self):
        self._handlers: Dict[EventType, List[Handler]] = {}
        self._pending: set = set()
        self._closed = False

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Register a handler, returns a callable that unsubscribes it"""
        self._handlers.setdefault(event_type, []).append(handler)
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: Handler):
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, []))

    def publish(self, event: Event):
        """Deliver an event to every subscriber of its type"""
        if self._closed:
            logger.debug(f"Event bus closed, dropping {event.type.value}")
            return

        for handler in list(self._handlers.get(event.type, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._handler_done)
            except Exception as e:
                logger.error(f"Event handler for {event.type.value} failed: {e}")

    def _handler_done(self, task: asyncio.Future):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async event handler failed: {task.exception()}")

    async def close(self):
        """Drop all subscribers and wait for running async handlers"""
        self._closed = True
        self._handlers.clear()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()
