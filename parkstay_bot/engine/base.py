"""
Shared pieces of the watch and STQ executors
"""
import asyncio
import logging
from datetime import date, timedelta
from enum import Enum
from typing import Optional, Awaitable, TypeVar
from pydantic import BaseModel

from ..common.config import Config
from ..common.errors import PortalTimeoutError
from ..common.events import EventBus
from ..common.models import CampsiteAvailability, CustomerInfo, JobStatus
from ..common.notifications import NotificationService
from ..common.timing import Clock, utcnow
from ..portal.base import PortalClient
from .queue import QueueSessionManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExecutionOutcome(str, Enum):
    FOUND = "found"
    BOOKED = "booked"
    REBOOKED = "rebooked"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    EXHAUSTED = "exhausted"
    DEFERRED = "deferred"
    RECOVERED = "recovered"
    SKIPPED = "skipped"
    ERROR = "error"
    ANOMALY = "anomaly"


OUTCOME_STATUS = {
    ExecutionOutcome.FOUND: JobStatus.SUCCESS,
    ExecutionOutcome.BOOKED: JobStatus.SUCCESS,
    ExecutionOutcome.REBOOKED: JobStatus.SUCCESS,
    ExecutionOutcome.NOT_FOUND: JobStatus.FAILURE,
    ExecutionOutcome.UNAVAILABLE: JobStatus.FAILURE,
    ExecutionOutcome.EXHAUSTED: JobStatus.FAILURE,
    ExecutionOutcome.DEFERRED: JobStatus.FAILURE,
    ExecutionOutcome.RECOVERED: JobStatus.FAILURE,
    ExecutionOutcome.SKIPPED: JobStatus.FAILURE,
    ExecutionOutcome.ERROR: JobStatus.ERROR,
    ExecutionOutcome.ANOMALY: JobStatus.ERROR,
}


class ExecutionResult(BaseModel):
    """What one executor run did, turned into a JobLog row by the scheduler"""
    outcome: ExecutionOutcome
    message: str = ""
    error_details: Optional[str] = None
    booking_reference: Optional[str] = None

    @property
    def job_status(self) -> JobStatus:
        return OUTCOME_STATUS[self.outcome]


def available_for_stay(site: CampsiteAvailability, arrival: date, departure: date) -> bool:
    """True if every night from arrival up to departure is available and bookable"""
    open_nights = {night.date for night in site.dates if night.available and night.bookable}
    night = arrival
    while night < departure:
        if night not in open_nights:
            return False
        night += timedelta(days=1)
    return True


def site_type_matches(site: CampsiteAvailability, wanted: Optional[str]) -> bool:
    if not wanted or wanted.lower() == "all":
        return True
    return (site.site_type or "").lower() == wanted.lower()


class Executor:
    """Portal access for executors: queue admission plus per-call timeouts"""

    def __init__(
        self,
        portal: PortalClient,
        storage,
        notifications: NotificationService,
        config: Config,
        queue: Optional[QueueSessionManager] = None,
        events: Optional[EventBus] = None,
        clock: Clock = utcnow,
    ):
        self.portal = portal
        self.storage = storage
        self.notifications = notifications
        self.config = config
        self.queue = queue
        self.events = events
        self.clock = clock

    @property
    def customer(self) -> CustomerInfo:
        return self.config.credentials.customer

    async def admit(self):
        """Wait for queue admission; QueueWaitTooLongError and portal errors propagate"""
        if self.queue is not None:
            await self.queue.ensure_admitted()

    async def call(self, awaitable: Awaitable[T]) -> T:
        """Await a portal call, turning a timeout into PortalTimeoutError"""
        timeout = self.config.scheduler.call_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            raise PortalTimeoutError(f"Portal call exceeded {timeout:g}s") from e

    def publish(self, event):
        if self.events is not None:
            self.events.publish(event)
