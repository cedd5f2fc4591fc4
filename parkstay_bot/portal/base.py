"""
Portal client interface

The engine only talks to the booking portal through this interface.
Implementations raise the errors from parkstay_bot.common.errors:
TransientPortalError for network trouble, timeouts and 5xx responses,
BookingConflictError when a site is taken between check and booking,
AuthenticationError when the session is rejected, and PortalError for
anything else.
"""
from abc import ABC, abstractmethod
from datetime import date
from typing import Optional, List

from ..common.models import (
    BookingDetails,
    BookingParams,
    BookingResult,
    CampsiteAvailability,
    QueueTicket,
)


class PortalClient(ABC):
    """Capabilities the scheduler and executors need from the portal"""

    @abstractmethod
    async def check_availability(
        self,
        campground_id: str,
        arrival_date: date,
        departure_date: date,
        num_guests: int,
        site_type: Optional[str] = None,
    ) -> List[CampsiteAvailability]:
        """Every site of the campground with its per-night availability for the stay"""
        pass

    @abstractmethod
    async def create_booking(self, params: BookingParams) -> BookingResult:
        pass

    @abstractmethod
    async def cancel_booking(self, reference: str) -> None:
        pass

    @abstractmethod
    async def get_booking(self, reference: str) -> BookingDetails:
        pass

    @abstractmethod
    async def join_queue(self, session_key: Optional[str] = None) -> QueueTicket:
        """Queue handshake, issuing a new session key when none is given"""
        pass

    @abstractmethod
    async def refresh_queue(self, session_key: str) -> QueueTicket:
        pass

    def use_queue_session(self, session_key: Optional[str]):
        """Attach (or with None, detach) the admitted queue session to later requests"""
        pass

    async def close(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()
