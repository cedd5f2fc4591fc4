"""
Common utilities for the ParkStay bot
"""
from .config import Config, load_config
from .errors import (
    ParkStayError,
    PortalError,
    TransientPortalError,
    PortalTimeoutError,
    BookingConflictError,
    AuthenticationError,
    AnomalyError,
    QueueWaitTooLongError,
    ValidationError,
    EntityNotFoundError,
    JobAlreadyRunningError,
    ConfigurationError,
)
from .events import EventBus, EventType
from .models import (
    Watch,
    SkipTheQueueEntry,
    QueueSession,
    JobLog,
    Notification,
    CampsiteAvailability,
    NightAvailability,
    BookingParams,
    BookingResult,
    BookingDetails,
    QueueTicket,
)
from .notifications import NotificationDispatcher, NotificationService
from .timing import RateLimiter, RetryStrategy, utcnow

__all__ = [
    "Config",
    "load_config",
    "ParkStayError",
    "PortalError",
    "TransientPortalError",
    "PortalTimeoutError",
    "BookingConflictError",
    "AuthenticationError",
    "AnomalyError",
    "QueueWaitTooLongError",
    "ValidationError",
    "EntityNotFoundError",
    "JobAlreadyRunningError",
    "ConfigurationError",
    "EventBus",
    "EventType",
    "Watch",
    "SkipTheQueueEntry",
    "QueueSession",
    "JobLog",
    "Notification",
    "CampsiteAvailability",
    "NightAvailability",
    "BookingParams",
    "BookingResult",
    "BookingDetails",
    "QueueTicket",
    "NotificationDispatcher",
    "NotificationService",
    "RateLimiter",
    "RetryStrategy",
    "utcnow",
]
