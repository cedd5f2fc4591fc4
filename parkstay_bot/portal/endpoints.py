"""
ParkStay API Endpoints

⚠️ WARNING: These endpoints are undocumented and may change without notice.

The booking API is a Django REST backend. Session cookies (sessionid,
csrftoken) come from a browser login; state-changing requests must echo the
csrftoken in the X-CSRFToken header. During high traffic the portal puts
visitors in a waiting room served from a separate queue host, and requests
must carry the sitequeuesession cookie once admitted.
"""
from dataclasses import dataclass
from datetime import date
from urllib.parse import urlencode


BASE_URL = "https://parkstay.dbca.wa.gov.au"
API_BASE = f"{BASE_URL}/api"
QUEUE_BASE_URL = "https://queue.dbca.wa.gov.au"
QUEUE_GROUP = "parkstayv2"

SESSION_COOKIE = "sessionid"
CSRF_COOKIE = "csrftoken"
QUEUE_COOKIE = "sitequeuesession"
CSRF_HEADER = "X-CSRFToken"


def portal_date(value: date) -> str:
    """Availability searches use slash-separated dates, e.g. 2026/01/18"""
    return value.strftime("%Y/%m/%d")


@dataclass
class Endpoints:
    """
    Collection of ParkStay API endpoints.

    Every method takes the API base so a test server or mirror can be used.
    """

    # ============================================================
    # AVAILABILITY (session cookies help with rate limiting)
    # ============================================================

    @staticmethod
    def campground_availability(
        arrival: date,
        departure: date,
        gear_type: str = "all",
        api_base: str = API_BASE
    ) -> str:
        """
        Availability of every campground for a stay.

        GET /api/campground_availabilty_view/?format=json&arrival=YYYY/MM/DD&departure=...

        The misspelling of "availability" is the portal's.
        """
        params = {
            "format": "json",
            "arrival": portal_date(arrival),
            "departure": portal_date(departure),
            "gear_type": gear_type,
            "features": "[]",
            "featurescs": "[]",
        }
        return f"{api_base}/campground_availabilty_view/?{urlencode(params)}"

    @staticmethod
    def campsite_availability(
        site_id: str,
        arrival: date,
        departure: date,
        api_base: str = API_BASE
    ) -> str:
        """
        Per-night availability and price of one site.

        GET /api/campsite_availability/{site_id}/?arrival=YYYY-MM-DD&departure=YYYY-MM-DD
        """
        params = {"arrival": arrival.isoformat(), "departure": departure.isoformat()}
        return f"{api_base}/campsite_availability/{site_id}/?{urlencode(params)}"

    # ============================================================
    # BOOKINGS (auth + CSRF required)
    # ============================================================

    @staticmethod
    def bookings(api_base: str = API_BASE) -> str:
        """
        Create a booking.

        POST /api/bookings/
        Body: see BookingParams.to_api_params()
        """
        return f"{api_base}/bookings/"

    @staticmethod
    def booking(reference: str, api_base: str = API_BASE) -> str:
        """
        Booking details.

        GET /api/bookings/{booking_number}/
        """
        return f"{api_base}/bookings/{reference}/"

    @staticmethod
    def cancel_booking(reference: str, api_base: str = API_BASE) -> str:
        """
        Cancel a booking.

        POST /api/bookings/{booking_number}/cancel/
        """
        return f"{api_base}/bookings/{reference}/cancel/"

    @staticmethod
    def account(api_base: str = API_BASE) -> str:
        """
        Current account, 401 when the session is invalid.

        GET /api/account/
        """
        return f"{api_base}/account/"

    # ============================================================
    # QUEUE
    # ============================================================

    @staticmethod
    def check_create_session(
        session_key: str,
        queue_group: str = QUEUE_GROUP,
        queue_base: str = QUEUE_BASE_URL
    ) -> str:
        """
        Join the waiting room or refresh an existing place in it.

        GET /api/check-create-session/?session_key={key}&queue_group={group}
        """
        params = {"session_key": session_key, "queue_group": queue_group}
        return f"{queue_base}/api/check-create-session/?{urlencode(params)}"


# Common request headers to mimic browser
DEFAULT_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-AU,en;q=0.9",
    "Content-Type": "application/json",
    "Origin": BASE_URL,
    "Referer": f"{BASE_URL}/",
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-origin",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
}


# Known response structures

@dataclass
class AvailabilityResponse:
    """
    Structure of the campground availability response.

    {
        "campground": {},
        "campground_available": {
            "31": {"sites": [136, 137], "total_available": 24, "total_bookable": 13},
            ...
        }
    }

    Per-site details come from campsite_availability:

    {
        "id": 136, "name": "Site 12", "type": "tent", "max_occupancy": 6,
        "availability": [
            {"date": "2026-01-18", "available": true, "price": 15.0, "bookable": true},
            ...
        ]
    }
    """
    pass


@dataclass
class QueueResponse:
    """
    Structure of the queue handshake response.

    {
        "session_key": "ABC...",     # 52 chars, A-Z0-9
        "status": "Active",          # or "Waiting"
        "queue_position": 0,
        "wait_time": 0,              # seconds
        "expiry_seconds": 600
    }
    """
    pass
