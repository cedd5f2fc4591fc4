"""
Tests for the Beat the Crowd rebook state machine (parkstay_bot/engine/stq.py)
"""
from datetime import date
from unittest.mock import AsyncMock

import pytest

from parkstay_bot.common.errors import (
    AuthenticationError,
    BookingConflictError,
    PortalError,
    TransientPortalError,
)
from parkstay_bot.common.events import EventType
from parkstay_bot.common.models import (
    NotificationType,
    QueueTicket,
    STQResult,
    STQState,
)
from parkstay_bot.engine.base import ExecutionOutcome
from parkstay_bot.engine.stq import choose_site

from conftest import make_site

ARRIVAL = date(2030, 8, 1)
NEW_DEPARTURE = date(2030, 8, 10)


def open_sites(*site_ids, price=20.0):
    return [make_site(site_id, ARRIVAL, 9, price=price) for site_id in site_ids]


class TestChooseSite:
    def test_keeps_current_site(self):
        sites = open_sites("3", "12")
        assert choose_site(sites, "12").site_id == "12"

    def test_cheapest_when_current_site_gone(self):
        sites = [make_site("3", ARRIVAL, 9, price=30.0), make_site("4", ARRIVAL, 9, price=18.0)]
        assert choose_site(sites, "12").site_id == "4"

    def test_lowest_id_breaks_ties(self):
        assert choose_site(open_sites("10", "9"), None).site_id == "9"


class TestRebook:
    @pytest.mark.asyncio
    async def test_successful_rebook(self, app, portal, storage, stq_entry):
        portal.availability = open_sites("12")
        portal.references = ["NEW123"]
        events = []
        app.events.subscribe(EventType.STQ_SUCCESS, events.append)

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.REBOOKED
        entry = storage.get_stq(stq_entry.id)
        assert entry.state == STQState.SUCCESS
        assert entry.success_date is not None
        assert entry.new_booking_reference == "NEW123"
        assert entry.booking_reference == "NEW123"
        assert entry.previous_booking_reference == "PS0001"
        assert entry.departure_date == NEW_DEPARTURE
        assert entry.pending_booking_reference is None
        assert entry.is_terminal

        assert portal.created[0].departure_date == NEW_DEPARTURE
        assert portal.cancelled == ["PS0001"]
        assert portal.calls.index("create_booking") < portal.calls.index("cancel_booking")

        notification = storage.list_notifications()[0]
        assert notification.type == NotificationType.STQ_SUCCESS
        assert notification.title == "Rebooking Successful!"
        assert "NEW123" in notification.message
        assert events[0].old_reference == "PS0001" and events[0].new_reference == "NEW123"

    @pytest.mark.asyncio
    async def test_prefers_site_already_held(self, app, portal, stq_entry):
        portal.availability = [make_site("3", ARRIVAL, 9, price=10.0), make_site("12", ARRIVAL, 9, price=30.0)]

        await app.stq_executor.execute(stq_entry)

        assert portal.created[0].site_id == "12"

    @pytest.mark.asyncio
    async def test_cancel_failure_is_anomaly(self, app, portal, storage, stq_entry):
        portal.availability = open_sites("12")
        portal.references = ["NEW123"]
        portal.cancel_error = TransientPortalError("502 Bad Gateway", status_code=502)

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.ANOMALY
        entry = storage.get_stq(stq_entry.id)
        assert entry.state == STQState.ANOMALY
        assert entry.last_result == STQResult.ANOMALY
        assert entry.success_date is None
        assert entry.booking_reference == "PS0001"
        assert entry.pending_booking_reference == "NEW123"
        assert "PS0001" in entry.anomaly_details and "NEW123" in entry.anomaly_details

        notification = storage.list_notifications()[0]
        assert notification.priority == "high"
        assert notification.type == NotificationType.ERROR

    @pytest.mark.asyncio
    async def test_same_reference_is_error_without_cancel(self, app, portal, storage, stq_entry):
        portal.availability = open_sites("12")
        portal.references = ["PS0001"]

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.ERROR
        assert portal.cancelled == []
        assert storage.get_stq(stq_entry.id).state == STQState.ERROR


class TestAttempts:
    @pytest.mark.asyncio
    async def test_not_found_counts_attempt(self, app, portal, storage, stq_entry):
        portal.availability = [make_site("12", ARRIVAL, 9, unavailable=(date(2030, 8, 7),))]

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.UNAVAILABLE
        entry = storage.get_stq(stq_entry.id)
        assert entry.attempts_count == 1
        assert entry.last_result == STQResult.UNAVAILABLE
        assert entry.state == STQState.ACTIVE
        assert portal.created == []

    @pytest.mark.asyncio
    async def test_transient_error_does_not_count(self, app, portal, storage, stq_entry):
        portal.availability_error = TransientPortalError("timeout")

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.ERROR
        entry = storage.get_stq(stq_entry.id)
        assert entry.attempts_count == 0
        assert entry.state == STQState.ACTIVE

    @pytest.mark.asyncio
    async def test_failed_create_does_not_count(self, app, portal, storage, stq_entry):
        portal.availability = open_sites("12")
        portal.create_error = TransientPortalError("503", status_code=503)

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.ERROR
        assert storage.get_stq(stq_entry.id).attempts_count == 0
        assert portal.cancelled == []

    @pytest.mark.asyncio
    async def test_conflict_counts_as_not_found(self, app, portal, storage, stq_entry):
        portal.availability = open_sites("12")
        portal.create_error = BookingConflictError("Site no longer available", status_code=409)

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.UNAVAILABLE
        assert storage.get_stq(stq_entry.id).attempts_count == 1
        assert portal.cancelled == []

    @pytest.mark.asyncio
    async def test_exhausted_on_last_attempt(self, app, portal, storage, stq_entry):
        storage.update_stq(stq_entry.id, max_attempts=1)

        result = await app.stq_executor.execute(storage.get_stq(stq_entry.id))

        assert result.outcome == ExecutionOutcome.EXHAUSTED
        assert storage.get_stq(stq_entry.id).state == STQState.EXHAUSTED
        assert storage.list_notifications()[0].title == "Beat the Crowd Stopped"

    @pytest.mark.asyncio
    async def test_window_not_moved_skips_portal(self, app, portal, storage, stq_entry):
        storage.update_stq(stq_entry.id, departure_date=date(2030, 8, 28), target_departure_date=None)

        result = await app.stq_executor.execute(storage.get_stq(stq_entry.id))

        assert result.outcome == ExecutionOutcome.UNAVAILABLE
        assert "check_availability" not in portal.calls


class TestStopConditions:
    @pytest.mark.asyncio
    async def test_inactive_entry_is_skipped(self, app, portal, storage, stq_entry):
        entry = storage.update_stq(stq_entry.id, state=STQState.INACTIVE)

        result = await app.stq_executor.execute(entry)

        assert result.outcome == ExecutionOutcome.SKIPPED
        assert portal.calls == []

    @pytest.mark.asyncio
    async def test_started_stay_is_error(self, app, portal, storage, stq_entry):
        entry = storage.update_stq(stq_entry.id, arrival_date=date(2030, 3, 1), departure_date=date(2030, 3, 4))

        result = await app.stq_executor.execute(entry)

        assert result.outcome == ExecutionOutcome.ERROR
        assert storage.get_stq(stq_entry.id).state == STQState.ERROR
        assert portal.calls == []

    @pytest.mark.asyncio
    async def test_authentication_error_stops_entry(self, app, portal, storage, stq_entry):
        portal.availability = open_sites("12")
        portal.create_error = AuthenticationError("Session expired", status_code=401)

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.ERROR
        assert storage.get_stq(stq_entry.id).state == STQState.ERROR
        assert storage.list_notifications()[0].title == "ParkStay Login Required"

    @pytest.mark.asyncio
    async def test_queue_authentication_error_stops_entry(self, app, portal, storage, stq_entry):
        portal.join_queue = AsyncMock(side_effect=AuthenticationError("Session expired", status_code=401))

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.ERROR
        entry = storage.get_stq(stq_entry.id)
        assert entry.state == STQState.ERROR
        assert entry.attempts_count == 0
        assert storage.list_notifications()[0].title == "ParkStay Login Required"
        assert "check_availability" not in portal.calls

    @pytest.mark.asyncio
    async def test_queue_transient_error_does_not_count(self, app, portal, storage, stq_entry):
        portal.join_queue = AsyncMock(side_effect=TransientPortalError("502", status_code=502))

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.ERROR
        assert result.message == "Queue admission failed"
        entry = storage.get_stq(stq_entry.id)
        assert entry.attempts_count == 0
        assert entry.state == STQState.ACTIVE
        assert entry.last_result == STQResult.ERROR
        assert storage.list_notifications() == []

    @pytest.mark.asyncio
    async def test_queue_rejection_stops_entry(self, app, portal, storage, stq_entry):
        portal.join_queue = AsyncMock(side_effect=PortalError("Account suspended", status_code=403))

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.ERROR
        entry = storage.get_stq(stq_entry.id)
        assert entry.state == STQState.ERROR
        assert entry.attempts_count == 0

    @pytest.mark.asyncio
    async def test_long_queue_defers_without_portal_calls(self, app, portal, storage, stq_entry):
        portal.queue_tickets = [QueueTicket(
            session_key="Q" * 52,
            status="waiting",
            position=4000,
            estimated_wait_seconds=3600,
            expiry_seconds=600,
        )]

        result = await app.stq_executor.execute(stq_entry)

        assert result.outcome == ExecutionOutcome.DEFERRED
        assert "check_availability" not in portal.calls
        assert "create_booking" not in portal.calls
        assert storage.get_stq(stq_entry.id).attempts_count == 0


class TestReconcile:
    def _checkpoint(self, storage, portal, entry, new_reference="NEW123"):
        portal.hold(new_reference, ARRIVAL, NEW_DEPARTURE, "12")
        return storage.update_stq(
            entry.id,
            pending_booking_reference=new_reference,
            pending_departure_date=NEW_DEPARTURE,
            pending_site_id="12",
        )

    @pytest.mark.asyncio
    async def test_old_already_cancelled_completes_swap(self, app, portal, storage, stq_entry):
        entry = self._checkpoint(storage, portal, stq_entry)
        portal.bookings["PS0001"].status = "cancelled"

        result = await app.stq_executor.reconcile(entry)

        assert result.outcome == ExecutionOutcome.REBOOKED
        stored = storage.get_stq(entry.id)
        assert stored.state == STQState.SUCCESS
        assert stored.booking_reference == "NEW123"
        assert stored.pending_booking_reference is None
        assert portal.cancelled == []

    @pytest.mark.asyncio
    async def test_both_held_retries_cancel(self, app, portal, storage, stq_entry):
        entry = self._checkpoint(storage, portal, stq_entry)
        storage.update_stq(entry.id, state=STQState.ANOMALY, anomaly_details="two bookings")

        result = await app.stq_executor.reconcile(storage.get_stq(entry.id))

        assert result.outcome == ExecutionOutcome.REBOOKED
        assert portal.cancelled == ["PS0001"]
        stored = storage.get_stq(entry.id)
        assert stored.anomaly_details is None
        assert stored.departure_date == NEW_DEPARTURE

    @pytest.mark.asyncio
    async def test_missing_new_booking_recovers(self, app, portal, storage, stq_entry):
        entry = self._checkpoint(storage, portal, stq_entry)
        del portal.bookings["NEW123"]

        result = await app.stq_executor.reconcile(entry)

        assert result.outcome == ExecutionOutcome.RECOVERED
        stored = storage.get_stq(entry.id)
        assert stored.state == STQState.ACTIVE
        assert stored.booking_reference == "PS0001"
        assert stored.pending_booking_reference is None

    @pytest.mark.asyncio
    async def test_both_gone_is_error(self, app, portal, storage, stq_entry):
        entry = self._checkpoint(storage, portal, stq_entry)
        portal.bookings["PS0001"].status = "cancelled"
        portal.bookings["NEW123"].status = "cancelled"

        result = await app.stq_executor.reconcile(entry)

        assert result.outcome == ExecutionOutcome.ERROR
        stored = storage.get_stq(entry.id)
        assert stored.state == STQState.ERROR
        assert stored.pending_booking_reference is None

    @pytest.mark.asyncio
    async def test_lookup_failure_keeps_checkpoint(self, app, portal, storage, stq_entry):
        entry = self._checkpoint(storage, portal, stq_entry)
        portal.lookup_error = TransientPortalError("timeout")

        result = await app.stq_executor.reconcile(entry)

        assert result.outcome == ExecutionOutcome.ERROR
        assert storage.get_stq(entry.id).pending_booking_reference == "NEW123"

    @pytest.mark.asyncio
    async def test_execute_reconciles_pending_checkpoint(self, app, portal, storage, stq_entry):
        entry = self._checkpoint(storage, portal, stq_entry)

        result = await app.stq_executor.execute(entry)

        assert result.outcome == ExecutionOutcome.REBOOKED
        assert "check_availability" not in portal.calls
        assert "create_booking" not in portal.calls
