"""
Tests for the ParkStay API client (parkstay_bot/portal/client.py)
"""
from datetime import date

import httpx
import pytest

from parkstay_bot.common.errors import (
    AuthenticationError,
    BookingConflictError,
    PortalError,
    PortalTimeoutError,
    TransientPortalError,
)
from parkstay_bot.common.models import BookingParams
from parkstay_bot.portal.client import ParkStayClient, generate_session_key
from parkstay_bot.portal.endpoints import CSRF_HEADER


def site_payload(site_id, nights, available=True, max_occupancy=6):
    return {
        "id": site_id,
        "name": f"Site {site_id}",
        "type": "tent",
        "max_occupancy": max_occupancy,
        "availability": [
            {"date": f"2030-04-{10 + i}", "available": available, "bookable": True, "price": 15.0}
            for i in range(nights)
        ],
    }


@pytest.fixture()
def fast_config(config):
    config.portal.requests_per_second = 1000
    return config


def make_client(config, handler):
    requests = []

    def record(request):
        requests.append(request)
        return handler(request)

    client = ParkStayClient(config, transport=httpx.MockTransport(record))
    client.requests = requests
    return client


class TestErrorClassification:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, error", [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (409, BookingConflictError),
        (429, TransientPortalError),
        (502, TransientPortalError),
        (404, PortalError),
    ])
    async def test_status_codes(self, fast_config, status, error):
        client = make_client(fast_config, lambda request: httpx.Response(status, json={"detail": "nope"}))

        with pytest.raises(error) as exc:
            await client.get_campsite_availability("136", date(2030, 4, 10), date(2030, 4, 12))

        assert exc.value.status_code == status
        await client.close()

    @pytest.mark.asyncio
    async def test_not_found_is_not_transient(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(404, json={"detail": "Not found."}))

        with pytest.raises(PortalError) as exc:
            await client.get_booking("PS404")

        assert not isinstance(exc.value, TransientPortalError)
        assert str(exc.value) == "Not found."

    @pytest.mark.asyncio
    async def test_timeout(self, fast_config):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(fast_config, handler)

        with pytest.raises(PortalTimeoutError):
            await client.get_booking("PS1")

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, fast_config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(fast_config, handler)

        with pytest.raises(TransientPortalError):
            await client.get_booking("PS1")

    @pytest.mark.asyncio
    async def test_invalid_json(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(PortalError, match="invalid JSON"):
            await client.get_booking("PS1")


class TestAvailability:
    @pytest.mark.asyncio
    async def test_check_availability(self, fast_config):
        def handler(request):
            path = request.url.path
            if path.endswith("/campground_availabilty_view/"):
                assert request.url.params["arrival"] == "2030/04/10"
                return httpx.Response(200, json={
                    "campground_available": {"31": {"sites": [136, 137, 138]}}
                })
            if path.endswith("/campsite_availability/136/"):
                return httpx.Response(200, json=site_payload(136, 2))
            if path.endswith("/campsite_availability/137/"):
                return httpx.Response(200, json=site_payload(137, 2, available=False))
            if path.endswith("/campsite_availability/138/"):
                return httpx.Response(200, json=site_payload(138, 2, max_occupancy=2))
            return httpx.Response(404)

        client = make_client(fast_config, handler)

        sites = await client.check_availability("31", date(2030, 4, 10), date(2030, 4, 12), num_guests=4)

        assert [s.site_id for s in sites] == ["136", "137"]
        assert sites[0].bookable
        assert sites[0].total_price == 30.0
        assert not sites[1].bookable

    @pytest.mark.asyncio
    async def test_campground_not_listed(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(200, json={"campground_available": {}}))

        sites = await client.check_availability("31", date(2030, 4, 10), date(2030, 4, 12), num_guests=2)

        assert sites == []
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_malformed_site_data(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(200, json={"availability": [{"price": 1}]}))

        with pytest.raises(PortalError, match="Unexpected availability data"):
            await client.get_campsite_availability("136", date(2030, 4, 10), date(2030, 4, 12))


class TestBookings:
    PARAMS = BookingParams(
        campground_id="31",
        site_id="136",
        arrival_date=date(2030, 4, 10),
        departure_date=date(2030, 4, 12),
    )

    @pytest.mark.asyncio
    async def test_create_booking(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(201, json={
            "id": 99, "booking_number": "PS5678", "payment_url": "https://parkstay/pay/99"
        }))

        result = await client.create_booking(self.PARAMS)

        assert result.reference == "PS5678"
        assert result.booking_id == "99"
        request = client.requests[0]
        assert request.method == "POST"
        assert request.headers[CSRF_HEADER] == "csrf123"

    @pytest.mark.asyncio
    async def test_create_booking_rejected_as_conflict(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(400, json={"message": "Campsite unavailable"}))

        with pytest.raises(BookingConflictError, match="Campsite unavailable"):
            await client.create_booking(self.PARAMS)

    @pytest.mark.asyncio
    async def test_create_booking_without_reference(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(200, json={"id": 1}))

        with pytest.raises(PortalError, match="no booking number"):
            await client.create_booking(self.PARAMS)

    @pytest.mark.asyncio
    async def test_cancel_booking(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(200, json={}))

        await client.cancel_booking("PS5678")

        assert client.requests[0].url.path == "/api/bookings/PS5678/cancel/"

    @pytest.mark.asyncio
    async def test_get_booking(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(200, json={
            "booking_number": "PS5678",
            "status": "Confirmed",
            "arrival": "2030-04-10",
            "departure": "2030-04-12",
            "campsite_id": 136,
        }))

        booking = await client.get_booking("PS5678")

        assert booking.status == "confirmed"
        assert booking.departure_date == date(2030, 4, 12)
        assert booking.site_id == "136"
        assert not booking.is_cancelled


class TestQueue:
    def test_generate_session_key(self):
        key = generate_session_key()
        assert len(key) == 52
        assert key.isalnum() and key.upper() == key

    @pytest.mark.asyncio
    async def test_join_queue(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(200, json={
            "session_key": request.url.params["session_key"],
            "status": "Waiting",
            "queue_position": 42,
            "wait_time": 120,
            "expiry_seconds": 600,
        }))

        ticket = await client.join_queue()

        assert ticket.status == "waiting"
        assert ticket.position == 42
        assert ticket.estimated_wait_seconds == 120
        assert len(ticket.session_key) == 52
        assert client.requests[0].url.host == "queue.dbca.wa.gov.au"

    @pytest.mark.asyncio
    async def test_unknown_queue_status(self, fast_config):
        client = make_client(fast_config, lambda request: httpx.Response(200, json={"status": "Paused"}))

        with pytest.raises(PortalError, match="Unknown queue status"):
            await client.refresh_queue("K" * 52)

    def test_use_queue_session(self, fast_config):
        client = ParkStayClient(fast_config)

        client.use_queue_session("K" * 52)
        assert client.client.cookies.get("sitequeuesession") == "K" * 52

        client.use_queue_session(None)
        assert client.client.cookies.get("sitequeuesession") is None

    def test_session_cookies_from_credentials(self, fast_config):
        client = ParkStayClient(fast_config)

        assert client.client.cookies.get("sessionid") == "session123"
        assert client.client.cookies.get("csrftoken") == "csrf123"
