"""
Tests for API endpoints (parkstay_bot/portal/endpoints.py)
"""
from datetime import date

from parkstay_bot.portal.endpoints import (
    Endpoints,
    DEFAULT_HEADERS,
    API_BASE,
    BASE_URL,
    QUEUE_BASE_URL,
    portal_date,
)


def test_portal_date():
    assert portal_date(date(2026, 1, 8)) == "2026/01/08"


class TestAvailabilityEndpoints:
    def test_campground_availability(self):
        url = Endpoints.campground_availability(date(2026, 1, 18), date(2026, 1, 21))
        assert url.startswith(f"{API_BASE}/campground_availabilty_view/?")
        assert "format=json" in url
        assert "arrival=2026%2F01%2F18" in url
        assert "departure=2026%2F01%2F21" in url
        assert "gear_type=all" in url

    def test_campground_availability_gear_type(self):
        url = Endpoints.campground_availability(date(2026, 1, 18), date(2026, 1, 21), gear_type="campervan")
        assert "gear_type=campervan" in url

    def test_campsite_availability(self):
        url = Endpoints.campsite_availability("136", date(2026, 1, 18), date(2026, 1, 21))
        assert url == f"{API_BASE}/campsite_availability/136/?arrival=2026-01-18&departure=2026-01-21"

    def test_custom_api_base(self):
        url = Endpoints.campsite_availability("1", date(2026, 1, 1), date(2026, 1, 2), api_base="http://test/api")
        assert url.startswith("http://test/api/campsite_availability/1/")


class TestBookingEndpoints:
    def test_bookings(self):
        assert Endpoints.bookings() == f"{API_BASE}/bookings/"

    def test_booking(self):
        assert Endpoints.booking("PS123") == f"{API_BASE}/bookings/PS123/"

    def test_cancel_booking(self):
        assert Endpoints.cancel_booking("PS123") == f"{API_BASE}/bookings/PS123/cancel/"

    def test_account(self):
        assert Endpoints.account() == f"{API_BASE}/account/"


class TestQueueEndpoints:
    def test_check_create_session(self):
        url = Endpoints.check_create_session("ABC123")
        assert url.startswith(f"{QUEUE_BASE_URL}/api/check-create-session/?")
        assert "session_key=ABC123" in url
        assert "queue_group=parkstayv2" in url

    def test_custom_queue_group(self):
        url = Endpoints.check_create_session("ABC123", queue_group="test", queue_base="http://q")
        assert url.startswith("http://q/api/check-create-session/")
        assert "queue_group=test" in url


def test_default_headers():
    assert DEFAULT_HEADERS["Origin"] == BASE_URL
    assert DEFAULT_HEADERS["Content-Type"] == "application/json"
    assert "User-Agent" in DEFAULT_HEADERS
