from datetime import date, datetime, timedelta
from typing import Optional, List, Dict

import pytest
import pytz

from parkstay_bot.app import ParkStayApp
from parkstay_bot.common.config import (
    Config,
    CredentialsConfig,
    NotificationsConfig,
    StorageConfig,
)
from parkstay_bot.common.errors import PortalError
from parkstay_bot.common.models import (
    BookingDetails,
    BookingParams,
    BookingResult,
    CampsiteAvailability,
    NightAvailability,
    QueueTicket,
    SkipTheQueueEntry,
    Watch,
)
from parkstay_bot.portal.base import PortalClient
from parkstay_bot.storage import MemoryStorage

PERTH = pytz.timezone("Australia/Perth")
TODAY = date(2030, 3, 1)


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_site(
    site_id: str,
    start: date,
    nights: int,
    price: float = 20.0,
    site_type: str = "tent",
    unavailable: tuple = (),
    max_occupancy: Optional[int] = 6,
) -> CampsiteAvailability:
    """Site with per-night availability from start; nights listed in unavailable are taken"""
    return CampsiteAvailability(
        site_id=site_id,
        site_name=f"Site {site_id}",
        site_type=site_type,
        max_occupancy=max_occupancy,
        dates=[
            NightAvailability(
                date=start + timedelta(days=i),
                available=(start + timedelta(days=i)) not in unavailable,
                price=price,
            )
            for i in range(nights)
        ],
    )


class FakePortal(PortalClient):
    """In-memory portal that records every call"""

    def __init__(self):
        self.availability: List[CampsiteAvailability] = []
        self.bookings: Dict[str, BookingDetails] = {}
        self.availability_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.lookup_error: Optional[Exception] = None
        self.queue_tickets: List[QueueTicket] = []
        self.calls: List[str] = []
        self.created: List[BookingParams] = []
        self.cancelled: List[str] = []
        self.queue_session_key: Optional[str] = None
        self.references: List[str] = []
        self._next_reference = 1000

    def hold(self, reference: str, arrival: date = None, departure: date = None, site_id: str = None):
        self.bookings[reference] = BookingDetails(
            reference=reference,
            status="confirmed",
            arrival_date=arrival,
            departure_date=departure,
            site_id=site_id,
        )

    async def check_availability(self, campground_id, arrival_date, departure_date, num_guests, site_type=None):
        self.calls.append("check_availability")
        if self.availability_error:
            raise self.availability_error
        return [site.model_copy(deep=True) for site in self.availability]

    async def create_booking(self, params: BookingParams) -> BookingResult:
        self.calls.append("create_booking")
        if self.create_error:
            raise self.create_error
        if self.references:
            reference = self.references.pop(0)
        else:
            reference = f"PS{self._next_reference}"
            self._next_reference += 1
        self.created.append(params)
        self.hold(reference, params.arrival_date, params.departure_date, params.site_id)
        return BookingResult(reference=reference, booking_id=str(self._next_reference))

    async def cancel_booking(self, reference: str) -> None:
        self.calls.append("cancel_booking")
        if self.cancel_error:
            raise self.cancel_error
        self.cancelled.append(reference)
        if reference in self.bookings:
            self.bookings[reference].status = "cancelled"

    async def get_booking(self, reference: str) -> BookingDetails:
        self.calls.append("get_booking")
        if self.lookup_error:
            raise self.lookup_error
        if reference not in self.bookings:
            raise PortalError("Not found", status_code=404)
        return self.bookings[reference]

    async def join_queue(self, session_key: Optional[str] = None) -> QueueTicket:
        self.calls.append("join_queue")
        return self._next_ticket(session_key or "K" * 52)

    async def refresh_queue(self, session_key: str) -> QueueTicket:
        self.calls.append("refresh_queue")
        return self._next_ticket(session_key)

    def _next_ticket(self, session_key: str) -> QueueTicket:
        if self.queue_tickets:
            return self.queue_tickets.pop(0)
        return QueueTicket(session_key=session_key, status="active", expiry_seconds=600)

    def use_queue_session(self, session_key):
        self.queue_session_key = session_key


@pytest.fixture()
def config():
    return Config(
        credentials=CredentialsConfig(
            email="test@example.com",
            session_id="session123",
            csrf_token="csrf123",
            first_name="Test",
            last_name="Camper",
        ),
        notifications=NotificationsConfig(desktop_enabled=False, retry_delay_ms=0),
        storage=StorageConfig(path=None),
    )


@pytest.fixture()
def clock():
    return FrozenClock(PERTH.localize(datetime(2030, 3, 1, 9, 0)))


@pytest.fixture()
def storage():
    return MemoryStorage()


@pytest.fixture()
def portal():
    return FakePortal()


@pytest.fixture()
def app(config, portal, storage, clock):
    return ParkStayApp(config, portal=portal, storage=storage, clock=clock)


@pytest.fixture()
def watch(storage):
    return storage.add_watch(Watch(
        name="Easter at Cape Le Grand",
        campground_id="31",
        campground_name="Lucky Bay",
        arrival_date=date(2030, 4, 10),
        departure_date=date(2030, 4, 13),
        num_guests=2,
    ))


@pytest.fixture()
def stq_entry(storage, portal):
    """Booking for 5 nights from 1 Aug 2030; the window (180 days from 1 Mar) reaches 28 Aug"""
    portal.hold("PS0001", date(2030, 8, 1), date(2030, 8, 6), "12")
    return storage.add_stq(SkipTheQueueEntry(
        booking_reference="PS0001",
        campground_id="31",
        site_id="12",
        arrival_date=date(2030, 8, 1),
        departure_date=date(2030, 8, 6),
        target_departure_date=date(2030, 8, 10),
    ))
