"""
ParkStay API Client

Direct httpx client for the ParkStay booking API and its queue host.
Uses reverse-engineered endpoints - may break if ParkStay changes their API.

Authentication is not performed here: the session cookies exported from a
browser login are read from the credentials config.
"""
import asyncio
import logging
import secrets
import string
from datetime import date
from typing import Optional, List, Dict, Any
import httpx

from .base import PortalClient
from .endpoints import (
    Endpoints,
    DEFAULT_HEADERS,
    SESSION_COOKIE,
    CSRF_COOKIE,
    QUEUE_COOKIE,
    CSRF_HEADER,
)
from ..common.config import Config
from ..common.errors import (
    AuthenticationError,
    BookingConflictError,
    PortalError,
    PortalTimeoutError,
    TransientPortalError,
)
from ..common.models import (
    BookingDetails,
    BookingParams,
    BookingResult,
    CampsiteAvailability,
    NightAvailability,
    QueueTicket,
)
from ..common.timing import RateLimiter

logger = logging.getLogger(__name__)

SESSION_KEY_LENGTH = 52
SESSION_KEY_ALPHABET = string.ascii_uppercase + string.digits


def generate_session_key() -> str:
    """Random queue session key in the format the queue host issues"""
    return "".join(secrets.choice(SESSION_KEY_ALPHABET) for _ in range(SESSION_KEY_LENGTH))


class ParkStayClient(PortalClient):
    """
    Direct API client for ParkStay.

    Every request goes through the token-bucket rate limiter. Responses are
    classified into the portal error taxonomy before any parsing happens.
    """

    def __init__(self, config: Config, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.api_base = config.portal.api_base
        self.queue_base = config.portal.queue_base_url.rstrip("/")
        self.rate_limiter = RateLimiter(config.portal.requests_per_second)
        self.client = httpx.AsyncClient(
            headers={**DEFAULT_HEADERS, **config.portal.headers},
            timeout=config.portal.timeout,
            follow_redirects=True,
            transport=transport,
        )

        credentials = config.credentials
        if credentials.session_id:
            self.client.cookies.set(SESSION_COOKIE, credentials.session_id)
        if credentials.csrf_token:
            self.client.cookies.set(CSRF_COOKIE, credentials.csrf_token)

    async def close(self):
        await self.client.aclose()

    # ========================================
    # Request plumbing
    # ========================================

    def _csrf_headers(self) -> Dict[str, str]:
        token = self.client.cookies.get(CSRF_COOKIE) or self.config.credentials.csrf_token
        return {CSRF_HEADER: token} if token else {}

    async def _request(
        self,
        method: str,
        url: str,
        conflict_statuses: tuple = (409,),
        **kwargs
    ) -> httpx.Response:
        async with self.rate_limiter:
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                raise PortalTimeoutError(f"Request timed out: {method} {url}") from e
            except httpx.TransportError as e:
                raise TransientPortalError(f"Network error: {e}") from e

        status = response.status_code
        if 200 <= status < 300:
            return response

        body = response.text
        if status == 401:
            raise AuthenticationError("Session expired or invalid", status, body)
        if status == 403:
            raise AuthenticationError("Request forbidden (CSRF token rejected?)", status, body)
        if status in conflict_statuses:
            raise BookingConflictError(self._error_message(response, "Site no longer available"), status, body)
        if status == 429 or status >= 500:
            raise TransientPortalError(f"Portal unavailable: {status}", status, body)
        raise PortalError(self._error_message(response, f"Request failed: {status}"), status, body)

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            data = response.json()
        except ValueError:
            return default
        if isinstance(data, dict):
            return str(data.get("message") or data.get("detail") or default)
        return default

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise PortalError("Portal returned invalid JSON", response.status_code, response.text) from e

    # ========================================
    # Availability
    # ========================================

    async def check_availability(
        self,
        campground_id: str,
        arrival_date: date,
        departure_date: date,
        num_guests: int,
        site_type: Optional[str] = None,
    ) -> List[CampsiteAvailability]:
        """
        Availability of every site in a campground for the stay.

        The campground view only lists site ids, so per-night detail is
        fetched for each listed site.
        """
        url = Endpoints.campground_availability(
            arrival_date, departure_date, site_type or "all", self.api_base
        )
        data = self._json(await self._request("GET", url))

        campground = (data.get("campground_available") or {}).get(str(campground_id))
        if not campground:
            logger.info(f"Campground {campground_id} not listed for {arrival_date} - {departure_date}")
            return []

        site_ids = [str(s) for s in campground.get("sites", [])]
        sites = await asyncio.gather(*[
            self.get_campsite_availability(site_id, arrival_date, departure_date)
            for site_id in site_ids
        ])

        results = [
            site for site in sites
            if site.max_occupancy is None or site.max_occupancy >= num_guests
        ]
        logger.info(f"Campground {campground_id}: {len(results)} sites checked")
        return results

    async def get_campsite_availability(
        self,
        site_id: str,
        arrival_date: date,
        departure_date: date
    ) -> CampsiteAvailability:
        url = Endpoints.campsite_availability(site_id, arrival_date, departure_date, self.api_base)
        data = self._json(await self._request("GET", url))

        try:
            return CampsiteAvailability(
                site_id=str(data.get("id", site_id)),
                site_name=data.get("name") or f"Site {site_id}",
                site_type=data.get("type"),
                max_occupancy=data.get("max_occupancy"),
                dates=[
                    NightAvailability(
                        date=night["date"],
                        available=night.get("available", False),
                        bookable=night.get("bookable", False),
                        price=night.get("price") or 0.0,
                    )
                    for night in data.get("availability", [])
                ],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PortalError(f"Unexpected availability data for site {site_id}: {e}") from e

    # ========================================
    # Bookings
    # ========================================

    async def create_booking(self, params: BookingParams) -> BookingResult:
        """Create a booking. 400 and 409 mean the site was taken."""
        logger.info(f"Booking site {params.site_id} for {params.arrival_date} - {params.departure_date}...")
        response = await self._request(
            "POST",
            Endpoints.bookings(self.api_base),
            conflict_statuses=(400, 409),
            json=params.to_api_params(),
            headers=self._csrf_headers(),
        )
        data = self._json(response)

        reference = data.get("booking_number")
        if not reference:
            raise PortalError("Booking response has no booking number", response.status_code, response.text)

        logger.info(f"Booking created: {reference}")
        return BookingResult(
            reference=str(reference),
            booking_id=str(data["id"]) if data.get("id") is not None else None,
            payment_url=data.get("payment_url"),
        )

    async def cancel_booking(self, reference: str) -> None:
        logger.info(f"Cancelling booking {reference}...")
        await self._request(
            "POST",
            Endpoints.cancel_booking(reference, self.api_base),
            conflict_statuses=(),
            headers=self._csrf_headers(),
        )
        logger.info(f"Booking {reference} cancelled")

    async def get_booking(self, reference: str) -> BookingDetails:
        data = self._json(await self._request(
            "GET", Endpoints.booking(reference, self.api_base), conflict_statuses=()
        ))
        site_id = data.get("campsite_id") or data.get("campsite")
        return BookingDetails(
            reference=str(data.get("booking_number", reference)),
            status=str(data.get("status", "unknown")).lower(),
            arrival_date=data.get("arrival"),
            departure_date=data.get("departure"),
            site_id=str(site_id) if site_id is not None else None,
        )

    # ========================================
    # Queue
    # ========================================

    async def join_queue(self, session_key: Optional[str] = None) -> QueueTicket:
        return await self._check_create_session(session_key or generate_session_key())

    async def refresh_queue(self, session_key: str) -> QueueTicket:
        return await self._check_create_session(session_key)

    async def _check_create_session(self, session_key: str) -> QueueTicket:
        url = Endpoints.check_create_session(
            session_key, self.config.portal.queue_group, self.queue_base
        )
        data = self._json(await self._request("GET", url, conflict_statuses=()))

        status = str(data.get("status", "")).lower()
        if status not in ("active", "waiting"):
            raise PortalError(f"Unknown queue status: {data.get('status')!r}")

        return QueueTicket(
            session_key=data.get("session_key") or session_key,
            status=status,
            position=data.get("queue_position") or 0,
            estimated_wait_seconds=data.get("wait_time") or 0,
            expiry_seconds=data.get("expiry_seconds") or 0,
        )

    def use_queue_session(self, session_key: Optional[str]):
        if session_key:
            self.client.cookies.set(QUEUE_COOKIE, session_key)
        else:
            self.client.cookies.delete(QUEUE_COOKIE)
