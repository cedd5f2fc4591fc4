"""
Data models for the ParkStay bot
"""
from datetime import datetime, date, timedelta
from typing import Optional, List, Literal, Union, Annotated
from pydantic import BaseModel, Field, ConfigDict
from enum import Enum

from .timing import utcnow


# ============================================================
# ENUMS
# ============================================================

class WatchResult(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


class STQState(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    ERROR = "error"
    ANOMALY = "anomaly"


class STQResult(str, Enum):
    SUCCESS = "success"
    UNAVAILABLE = "unavailable"
    ERROR = "error"
    ANOMALY = "anomaly"


class QueueStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    EXPIRED = "expired"


class JobType(str, Enum):
    WATCH_POLL = "watch_poll"
    STQ_CHECK = "stq_check"
    CLEANUP = "cleanup"


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


class NotificationType(str, Enum):
    WATCH_FOUND = "watch_found"
    STQ_SUCCESS = "stq_success"
    BOOKING_CONFIRMED = "booking_confirmed"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class RelatedType(str, Enum):
    BOOKING = "booking"
    WATCH = "watch"
    STQ = "stq"


class NotificationChannel(str, Enum):
    DESKTOP = "desktop"
    EMAIL_SMTP = "email_smtp"
    WEBHOOK = "webhook"


class ProviderStatus(str, Enum):
    NOT_CONFIGURED = "not_configured"
    CONFIGURED = "configured"
    ERROR = "error"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    PENDING = "pending"


class SMTPPreset(str, Enum):
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    CUSTOM = "custom"


# ============================================================
# PORTAL VALUE TYPES
# ============================================================

class NightAvailability(BaseModel):
    """Availability and price of one site for one night"""
    date: date
    available: bool = True
    bookable: bool = True
    price: float = 0.0


class CampsiteAvailability(BaseModel):
    """Availability of a campsite across a requested stay"""
    site_id: str
    site_name: str
    site_type: Optional[str] = None
    max_occupancy: Optional[int] = None
    dates: List[NightAvailability] = Field(default_factory=list)

    @property
    def bookable(self) -> bool:
        """True if every night of the stay can be booked"""
        return bool(self.dates) and all(d.available and d.bookable for d in self.dates)

    @property
    def total_price(self) -> float:
        return sum(d.price for d in self.dates)

    @property
    def max_night_price(self) -> float:
        return max((d.price for d in self.dates), default=0.0)


def site_sort_key(site_id: str):
    """Sort numeric site ids numerically, the rest lexically after them"""
    return (0, int(site_id), "") if site_id.isdigit() else (1, 0, site_id)


class CustomerInfo(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""


class BookingParams(BaseModel):
    """Parameters for creating a booking"""
    campground_id: str
    site_id: str
    arrival_date: date
    departure_date: date
    num_guests: int = 2
    site_type: Optional[str] = None
    customer: CustomerInfo = Field(default_factory=CustomerInfo)

    @property
    def num_nights(self) -> int:
        return (self.departure_date - self.arrival_date).days

    def to_api_params(self) -> dict:
        """Convert to ParkStay booking request body"""
        return {
            "campground_id": self.campground_id,
            "campsite_id": self.site_id,
            "arrival": self.arrival_date.isoformat(),
            "departure": self.departure_date.isoformat(),
            "num_adult": self.num_guests,
            "num_child": 0,
            "num_infant": 0,
            "gear_type": self.site_type or "tent",
            "customer": {
                "first_name": self.customer.first_name,
                "last_name": self.customer.last_name,
                "email": self.customer.email,
                "phone": self.customer.phone,
            },
        }


class BookingResult(BaseModel):
    """A booking the portal has accepted"""
    reference: str
    booking_id: Optional[str] = None
    payment_url: Optional[str] = None


class BookingDetails(BaseModel):
    """Current state of a booking as reported by the portal"""
    reference: str
    status: str
    arrival_date: Optional[date] = None
    departure_date: Optional[date] = None
    site_id: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status in ("cancelled", "expired")


class QueueTicket(BaseModel):
    """Raw admission state returned by the portal's queue handshake"""
    session_key: str
    status: Literal["active", "waiting"]
    position: int = 0
    estimated_wait_seconds: int = 0
    expiry_seconds: int = 0


# ============================================================
# ENTITIES
# ============================================================

class Watch(BaseModel):
    """Recurring availability check for a campground and date range"""
    id: Optional[int] = None
    user_id: int = 1
    name: str
    park_id: str = ""
    park_name: str = ""
    campground_id: str
    campground_name: str = ""
    arrival_date: date
    departure_date: date
    num_guests: int = 2
    preferred_sites: List[str] = Field(default_factory=list)
    site_type: Optional[str] = None
    max_price: Optional[float] = None
    check_interval_minutes: int = 5
    is_active: bool = True
    last_checked_at: Optional[datetime] = None
    next_check_at: Optional[datetime] = None
    last_result: Optional[WatchResult] = None
    last_error: Optional[str] = None
    found_count: int = 0
    auto_book: bool = False
    notify_only: bool = True
    halted_reason: Optional[str] = None
    last_availability: List[CampsiteAvailability] = Field(default_factory=list)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def num_nights(self) -> int:
        return (self.departure_date - self.arrival_date).days

    @property
    def schedulable(self) -> bool:
        return self.is_active and self.halted_reason is None


class SkipTheQueueEntry(BaseModel):
    """
    Beat the Crowd rollover task for one booking.

    Holds the current booking and the stay it should grow into as the
    booking horizon moves forward.
    """
    id: Optional[int] = None
    user_id: int = 1
    booking_id: Optional[int] = None
    booking_reference: str
    campground_id: str
    site_id: Optional[str] = None
    site_type: Optional[str] = None
    num_guests: int = 2
    arrival_date: date
    departure_date: date
    target_departure_date: Optional[date] = None
    state: STQState = STQState.ACTIVE
    check_interval_minutes: int = 2
    last_checked_at: Optional[datetime] = None
    next_check_at: Optional[datetime] = None
    attempts_count: int = 0
    max_attempts: int = 1000
    last_result: Optional[STQResult] = None
    last_error: Optional[str] = None
    success_date: Optional[datetime] = None
    new_booking_reference: Optional[str] = None
    previous_booking_reference: Optional[str] = None
    pending_booking_reference: Optional[str] = None
    pending_departure_date: Optional[date] = None
    pending_site_id: Optional[str] = None
    anomaly_details: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.state == STQState.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.success_date is not None or self.state == STQState.SUCCESS

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts_count >= self.max_attempts

    def candidate_departure(
        self,
        today: date,
        booking_window_days: int,
        max_stay_nights: int,
    ) -> Optional[date]:
        """
        Latest departure the portal will currently accept for this stay.

        Returns None when that is no later than the departure already held.
        """
        target = self.target_departure_date or (self.arrival_date + timedelta(days=max_stay_nights))
        horizon = today + timedelta(days=booking_window_days)
        candidate = min(target, horizon, self.arrival_date + timedelta(days=max_stay_nights))
        if candidate <= self.departure_date:
            return None
        return candidate


class QueueSession(BaseModel):
    """Admission state for the portal's virtual waiting room"""
    session_key: str
    status: QueueStatus
    position: int = 0
    estimated_wait_seconds: int = 0
    expiry_seconds: int = 0
    created_at: datetime
    expires_at: datetime
    last_checked_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def effective_status(self, now: datetime) -> QueueStatus:
        if self.is_expired(now):
            return QueueStatus.EXPIRED
        return self.status

    def expiry_remaining(self, now: datetime) -> int:
        """Seconds until the session expires"""
        return max(0, int((self.expires_at - now).total_seconds()))


class JobLog(BaseModel):
    """Immutable record of one job execution"""
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    job_type: JobType
    job_id: int
    status: JobStatus
    outcome: Optional[str] = None
    message: Optional[str] = None
    error_details: Optional[str] = None
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    """In-app notification, the authoritative record of what the user was told"""
    id: Optional[int] = None
    user_id: int = 1
    type: NotificationType
    title: str
    message: str
    priority: str = "normal"  # normal, high
    related_id: Optional[int] = None
    related_type: Optional[RelatedType] = None
    action_url: Optional[str] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# NOTIFICATION PROVIDERS
# ============================================================

class DesktopConfig(BaseModel):
    channel: Literal["desktop"] = "desktop"


class SMTPAuth(BaseModel):
    user: str = ""
    password: str = ""


SMTP_PRESETS = {
    SMTPPreset.GMAIL: {"host": "smtp.gmail.com", "port": 587, "secure": False},
    SMTPPreset.OUTLOOK: {"host": "smtp.office365.com", "port": 587, "secure": False},
    SMTPPreset.CUSTOM: {"host": "", "port": 587, "secure": False},
}


class SMTPConfig(BaseModel):
    channel: Literal["email_smtp"] = "email_smtp"
    preset: SMTPPreset = SMTPPreset.CUSTOM
    host: str = ""
    port: int = 587
    secure: bool = False  # True = SSL on connect (465), False = STARTTLS
    auth: SMTPAuth = Field(default_factory=SMTPAuth)
    from_email: Optional[str] = None
    to_email: Optional[str] = None

    @classmethod
    def from_preset(cls, preset: SMTPPreset, **kwargs) -> "SMTPConfig":
        return cls(preset=preset, **{**SMTP_PRESETS[preset], **kwargs})

    @property
    def sender(self) -> str:
        return self.from_email or self.auth.user

    @property
    def recipient(self) -> str:
        return self.to_email or self.sender


class WebhookConfig(BaseModel):
    channel: Literal["webhook"] = "webhook"
    url: str = ""


ProviderConfig = Annotated[
    Union[DesktopConfig, SMTPConfig, WebhookConfig],
    Field(discriminator="channel"),
]


class NotificationProviderRecord(BaseModel):
    """Stored configuration of one notification channel"""
    id: Optional[int] = None
    channel: NotificationChannel
    display_name: str
    enabled: bool = False
    config: ProviderConfig
    events: List[str] = Field(default_factory=list)  # empty = every event type
    status: ProviderStatus = ProviderStatus.NOT_CONFIGURED
    last_tested_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def accepts(self, event_type: Optional[str]) -> bool:
        return not self.events or event_type is None or event_type in self.events


class NotificationMessage(BaseModel):
    """Message handed to the notification providers"""
    title: str
    message: str
    action_url: Optional[str] = None
    type: Optional[str] = None
    priority: str = "normal"
    campground_name: Optional[str] = None


class DeliveryResult(BaseModel):
    """Outcome of one provider send"""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    transient: bool = False


class NotificationDeliveryLog(BaseModel):
    """Audit record of one provider send attempt"""
    id: Optional[int] = None
    notification_id: Optional[int] = None
    provider_channel: NotificationChannel
    status: DeliveryStatus
    attempt: int = 1
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
