"""
Command surface

Everything a front end can ask the engine to do. Every command returns a
CommandResult envelope and never raises; input is validated with pydantic
before anything is stored or scheduled.
"""
import functools
import logging
from datetime import date
from typing import Optional, List, Any, Dict, Union
from pydantic import BaseModel, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..common.config import BookingConfig
from ..common.errors import (
    EntityNotFoundError,
    JobAlreadyRunningError,
    ParkStayError,
    ValidationError,
)
from ..common.models import (
    JobType,
    NotificationChannel,
    ProviderConfig,
    SkipTheQueueEntry,
    STQState,
    Watch,
)
from ..common.notifications import NotificationDispatcher, NotificationService
from ..common.timing import Clock, utcnow
from .job_log import JobLogger
from .queue import QueueSessionManager
from .scheduler import JobKind, JobScheduler
from .watch import HALT_AUTHENTICATION

logger = logging.getLogger(__name__)

MAX_GUESTS = 50


class CommandResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None


def _format_validation_error(error: PydanticValidationError) -> str:
    problems = []
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"])
        problems.append(f"{field}: {item['msg']}" if field else item["msg"])
    return "; ".join(problems)


def command(func):
    """Wrap a command so it always returns a CommandResult"""
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs) -> CommandResult:
        try:
            return CommandResult(success=True, data=await func(self, *args, **kwargs))
        except PydanticValidationError as e:
            return CommandResult(success=False, error=f"Invalid input: {_format_validation_error(e)}")
        except ParkStayError as e:
            return CommandResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(f"Command {func.__name__} failed")
            return CommandResult(success=False, error=f"Unexpected error: {e}")
    return wrapper


# ============================================================
# INPUT MODELS
# ============================================================

class WatchInput(BaseModel):
    name: str = Field(min_length=1)
    park_id: str = ""
    park_name: str = ""
    campground_id: str = Field(min_length=1)
    campground_name: str = ""
    arrival_date: date
    departure_date: date
    num_guests: int = Field(2, ge=1, le=MAX_GUESTS)
    preferred_sites: List[str] = Field(default_factory=list)
    site_type: Optional[str] = None
    max_price: Optional[float] = Field(None, gt=0)
    check_interval_minutes: int = Field(5, ge=1, le=60)
    auto_book: bool = False
    notify_only: bool = True
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _dates_in_order(self):
        if self.departure_date <= self.arrival_date:
            raise ValueError("Departure date must be after arrival date")
        return self


class STQInput(BaseModel):
    booking_id: Optional[int] = None
    booking_reference: str = Field(min_length=1)
    campground_id: str = Field(min_length=1)
    site_id: Optional[str] = None
    site_type: Optional[str] = None
    num_guests: int = Field(2, ge=1, le=MAX_GUESTS)
    arrival_date: date
    departure_date: date
    target_departure_date: Optional[date] = None
    check_interval_minutes: int = Field(2, ge=1, le=30)
    max_attempts: int = Field(1000, ge=1)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _dates_in_order(self):
        if self.departure_date <= self.arrival_date:
            raise ValueError("Departure date must be after arrival date")
        if self.target_departure_date is not None and self.target_departure_date <= self.departure_date:
            raise ValueError("Target departure must be after the current departure date")
        return self


PROVIDER_CONFIG = TypeAdapter(ProviderConfig)


# ============================================================
# SERVICE
# ============================================================

class CommandService:
    """Front-end facing operations on watches, STQ entries and notifications"""

    def __init__(
        self,
        storage,
        scheduler: JobScheduler,
        notifications: NotificationService,
        dispatcher: NotificationDispatcher,
        job_logger: JobLogger,
        queue: Optional[QueueSessionManager] = None,
        booking: Optional[BookingConfig] = None,
        clock: Clock = utcnow,
    ):
        self.storage = storage
        self.scheduler = scheduler
        self.notifications = notifications
        self.dispatcher = dispatcher
        self.job_logger = job_logger
        self.queue = queue
        self.booking = booking or BookingConfig()
        self.clock = clock

    def _today(self) -> date:
        return self.clock().date()

    def _require_watch(self, watch_id: int) -> Watch:
        watch = self.storage.get_watch(watch_id)
        if watch is None:
            raise EntityNotFoundError(f"Watch {watch_id} not found")
        return watch

    def _require_stq(self, stq_id: int) -> SkipTheQueueEntry:
        entry = self.storage.get_stq(stq_id)
        if entry is None:
            raise EntityNotFoundError(f"STQ entry {stq_id} not found")
        return entry

    def _ensure_idle(self, kind: JobKind, entity_id: int):
        if self.scheduler.is_running(kind, entity_id):
            raise JobAlreadyRunningError(f"{kind.value} {entity_id} is running, try again shortly")

    # ========================================
    # Watches
    # ========================================

    @command
    async def create_watch(self, data: Union[WatchInput, Dict[str, Any]]) -> Watch:
        watch_input = data if isinstance(data, WatchInput) else WatchInput(**data)
        if watch_input.arrival_date < self._today():
            raise ValidationError("Arrival date must be in the future")

        watch = self.storage.add_watch(Watch(**watch_input.model_dump(), is_active=True))
        logger.info(f"Watch {watch.id} created: {watch.name}")
        return watch

    @command
    async def update_watch(self, watch_id: int, **changes) -> Watch:
        watch = self._require_watch(watch_id)
        unknown = set(changes) - set(WatchInput.model_fields)
        if unknown:
            raise ValidationError(f"Unknown watch fields: {', '.join(sorted(unknown))}")
        current = watch.model_dump(include=set(WatchInput.model_fields))
        validated = WatchInput(**{**current, **changes})

        fields = {name: getattr(validated, name) for name in changes}
        if {"arrival_date", "departure_date", "campground_id"} & set(fields):
            fields.update(next_check_at=None, last_availability=[])

        return self.storage.update_watch(watch_id, **fields)

    @command
    async def activate_watch(self, watch_id: int) -> Watch:
        watch = self._require_watch(watch_id)
        if watch.arrival_date < self._today():
            raise ValidationError("Arrival date has passed")
        return self.storage.update_watch(watch_id, is_active=True, halted_reason=None, next_check_at=None)

    @command
    async def deactivate_watch(self, watch_id: int) -> Watch:
        self._require_watch(watch_id)
        return self.storage.update_watch(watch_id, is_active=False, next_check_at=None)

    @command
    async def delete_watch(self, watch_id: int) -> bool:
        self._require_watch(watch_id)
        self._ensure_idle(JobKind.WATCH, watch_id)
        return self.storage.delete_watch(watch_id)

    @command
    async def get_watch(self, watch_id: int) -> Watch:
        return self._require_watch(watch_id)

    @command
    async def list_watches(self, active_only: bool = False) -> List[Watch]:
        return self.storage.list_watches(active_only=active_only)

    @command
    async def execute_watch_now(self, watch_id: int):
        return await self.scheduler.execute_now(JobKind.WATCH, watch_id)

    # ========================================
    # STQ entries
    # ========================================

    @command
    async def create_stq(self, data: Union[STQInput, Dict[str, Any]]) -> SkipTheQueueEntry:
        stq_input = data if isinstance(data, STQInput) else STQInput(**data)
        if stq_input.arrival_date <= self._today():
            raise ValidationError("Arrival date must be in the future")

        max_stay = self.booking.max_stay_nights(stq_input.arrival_date)
        if stq_input.target_departure_date is not None:
            nights = (stq_input.target_departure_date - stq_input.arrival_date).days
            if nights > max_stay:
                raise ValidationError(f"Target stay of {nights} nights exceeds the {max_stay} night limit")

        for existing in self.storage.list_stq():
            if existing.booking_reference == stq_input.booking_reference and not existing.is_terminal:
                raise ValidationError("Skip The Queue entry already exists for this booking")

        entry = self.storage.add_stq(SkipTheQueueEntry(**stq_input.model_dump(), state=STQState.ACTIVE))
        logger.info(f"STQ entry {entry.id} created for booking {entry.booking_reference}")
        return entry

    @command
    async def update_stq(self, stq_id: int, **changes) -> SkipTheQueueEntry:
        entry = self._require_stq(stq_id)
        self._ensure_idle(JobKind.STQ, stq_id)
        if entry.pending_booking_reference:
            raise ValidationError("Entry has a rebook in progress; resolve it first")

        unknown = set(changes) - set(STQInput.model_fields)
        if unknown:
            raise ValidationError(f"Unknown STQ fields: {', '.join(sorted(unknown))}")
        current = entry.model_dump(include=set(STQInput.model_fields))
        validated = STQInput(**{**current, **changes})
        fields = {name: getattr(validated, name) for name in changes}
        return self.storage.update_stq(stq_id, **fields)

    @command
    async def activate_stq(self, stq_id: int) -> SkipTheQueueEntry:
        entry = self._require_stq(stq_id)
        if entry.is_terminal:
            raise ValidationError("Entry already rebooked successfully")
        if entry.state == STQState.ANOMALY:
            raise ValidationError("Entry holds two bookings; resolve the anomaly first")
        return self.storage.update_stq(stq_id, state=STQState.ACTIVE, next_check_at=None)

    @command
    async def deactivate_stq(self, stq_id: int) -> SkipTheQueueEntry:
        entry = self._require_stq(stq_id)
        if entry.is_terminal or entry.state == STQState.ANOMALY:
            raise ValidationError(f"Cannot deactivate an entry in state {entry.state.value}")
        return self.storage.update_stq(stq_id, state=STQState.INACTIVE, next_check_at=None)

    @command
    async def delete_stq(self, stq_id: int) -> bool:
        entry = self._require_stq(stq_id)
        self._ensure_idle(JobKind.STQ, stq_id)
        if entry.pending_booking_reference:
            raise ValidationError("Entry has a rebook in progress; resolve it before deleting")
        return self.storage.delete_stq(stq_id)

    @command
    async def get_stq(self, stq_id: int) -> SkipTheQueueEntry:
        return self._require_stq(stq_id)

    @command
    async def list_stq(self, active_only: bool = False) -> List[SkipTheQueueEntry]:
        return self.storage.list_stq(active_only=active_only)

    @command
    async def execute_stq_now(self, stq_id: int):
        entry = self._require_stq(stq_id)
        if not entry.is_active and not entry.pending_booking_reference:
            raise ValidationError(f"Entry is {entry.state.value}; activate it first")
        return await self.scheduler.execute_now(JobKind.STQ, stq_id)

    @command
    async def resolve_stq_anomaly(self, stq_id: int):
        """Re-check both bookings and settle the entry"""
        entry = self._require_stq(stq_id)
        if not entry.pending_booking_reference:
            raise ValidationError("Entry has no rebook to resolve")
        return await self.scheduler.reconcile_now(stq_id)

    # ========================================
    # Session and queue
    # ========================================

    @command
    async def credentials_refreshed(self) -> int:
        """Resume watches halted because the portal rejected the session"""
        resumed = 0
        for watch in self.storage.list_watches():
            if watch.halted_reason == HALT_AUTHENTICATION:
                self.storage.update_watch(watch.id, halted_reason=None, next_check_at=None)
                resumed += 1
        logger.info(f"Credentials refreshed, {resumed} watches resumed")
        return resumed

    @command
    async def queue_status(self) -> Dict[str, Any]:
        if self.queue is None:
            return {"status": None}
        return self.queue.status()

    @command
    async def scheduler_status(self) -> Dict[str, Any]:
        return self.scheduler.status()

    # ========================================
    # Notifications and logs
    # ========================================

    @command
    async def list_notifications(self, unread_only: bool = False, limit: Optional[int] = None):
        return self.notifications.list(unread_only=unread_only, limit=limit)

    @command
    async def mark_notification_read(self, notification_id: int):
        return self.notifications.mark_read(notification_id)

    @command
    async def mark_all_notifications_read(self) -> int:
        return self.notifications.mark_all_read()

    @command
    async def delete_notification(self, notification_id: int) -> bool:
        return self.notifications.delete(notification_id)

    @command
    async def list_job_logs(
        self,
        job_type: Optional[JobType] = None,
        job_id: Optional[int] = None,
        limit: Optional[int] = 50,
    ):
        return self.job_logger.list(job_type=job_type, job_id=job_id, limit=limit)

    @command
    async def list_providers(self):
        return self.storage.list_providers()

    @command
    async def configure_provider(
        self,
        channel: NotificationChannel,
        config: Dict[str, Any],
        enabled: bool = True,
        events: Optional[List[str]] = None,
    ):
        channel = NotificationChannel(channel)
        provider_config = PROVIDER_CONFIG.validate_python({**config, "channel": channel.value})
        return self.dispatcher.configure(channel, provider_config, enabled=enabled, events=events)

    @command
    async def test_provider(self, channel: NotificationChannel):
        return await self.dispatcher.test_provider(channel)
