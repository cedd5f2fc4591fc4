"""
Configuration management for the ParkStay bot
"""
import os
import yaml
from pathlib import Path
from datetime import date, datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, field_validator
from dateutil import parser as date_parser
import pytz

from .models import ProviderConfig, CustomerInfo


class CredentialsConfig(BaseModel):
    """
    Portal account and the session cookies exported after login.

    The interactive login (email OTP) happens outside the bot.
    """
    email: str
    session_id: Optional[str] = None
    csrf_token: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    phone: str = ""

    @property
    def customer(self) -> CustomerInfo:
        return CustomerInfo(
            first_name=self.first_name,
            last_name=self.last_name,
            email=self.email,
            phone=self.phone,
        )


class PortalConfig(BaseModel):
    base_url: str = "https://parkstay.dbca.wa.gov.au"
    queue_base_url: str = "https://queue.dbca.wa.gov.au"
    queue_group: str = "parkstayv2"
    timeout: int = 30
    requests_per_second: int = 2
    headers: Dict[str, str] = Field(default_factory=lambda: {
        "Accept": "application/json, text/plain, */*",
        "Accept-Language": "en-AU,en;q=0.9",
        "Origin": "https://parkstay.dbca.wa.gov.au",
        "Referer": "https://parkstay.dbca.wa.gov.au/"
    })

    @property
    def api_base(self) -> str:
        return f"{self.base_url.rstrip('/')}/api"


class SchedulerConfig(BaseModel):
    tick_seconds: float = 20.0
    max_concurrent: int = 10
    call_timeout_seconds: float = 30.0
    shutdown_grace_seconds: float = 30.0
    cleanup_interval_hours: float = 24.0
    job_log_retention_days: int = 30
    notification_retention_days: int = 30
    timezone: str = "Australia/Perth"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        pytz.timezone(value)
        return value

    @field_validator("max_concurrent")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_concurrent must be at least 1")
        return value


class QueueConfig(BaseModel):
    poll_interval_seconds: float = 5.0
    refresh_buffer_seconds: int = 120
    max_wait_seconds: int = 900
    retry_delay_seconds: float = 2.0


class BookingConfig(BaseModel):
    booking_window_days: int = 180
    max_stay_peak_nights: int = 14
    max_stay_off_peak_nights: int = 28
    peak_months: List[int] = Field(default_factory=lambda: [12, 1])

    def max_stay_nights(self, arrival: date) -> int:
        if arrival.month in self.peak_months:
            return self.max_stay_peak_nights
        return self.max_stay_off_peak_nights


class NotificationsConfig(BaseModel):
    desktop_enabled: bool = True
    retry_delay_ms: int = 1000
    providers: List[ProviderConfig] = Field(default_factory=list)


class StorageConfig(BaseModel):
    path: Optional[str] = "parkstay-data.json"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "parkstay-bot.log"


class Config(BaseModel):
    """Main configuration class"""
    credentials: CredentialsConfig
    portal: PortalConfig = Field(default_factory=PortalConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    booking: BookingConfig = Field(default_factory=BookingConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from YAML file"""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables"""
        return cls(
            credentials=CredentialsConfig(
                email=os.environ["PARKSTAY_EMAIL"],
                session_id=os.environ.get("PARKSTAY_SESSION_ID"),
                csrf_token=os.environ.get("PARKSTAY_CSRF_TOKEN"),
            ),
            scheduler=SchedulerConfig(
                timezone=os.environ.get("PARKSTAY_TIMEZONE", "Australia/Perth"),
            ),
            storage=StorageConfig(
                path=os.environ.get("PARKSTAY_DATA_FILE", "parkstay-data.json"),
            ),
        )

    def to_yaml(self, path: str | Path):
        """Save configuration to YAML file"""
        path = Path(path)
        with open(path, 'w') as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)


def parse_date(value: str | date) -> date:
    """Parse a user-supplied date such as '2030-08-01' or '1 Aug 2030'"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date_parser.parse(value).date()


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from file or environment"""
    if path:
        return Config.from_yaml(path)

    # Try default locations
    default_paths = [
        Path("config/config.yaml"),
        Path("config.yaml"),
        Path.home() / ".parkstay" / "config.yaml",
    ]

    for p in default_paths:
        if p.exists():
            return Config.from_yaml(p)

    # Fall back to environment variables
    try:
        return Config.from_env()
    except KeyError as e:
        raise RuntimeError(
            f"No config file found and missing environment variable: {e}. "
            f"Create config/config.yaml or set PARKSTAY_* environment variables."
        )
