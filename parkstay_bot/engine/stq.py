"""
STQ Executor: Beat the Crowd cancel-and-rebook

An STQ entry holds a booking whose stay is shorter than wanted because
the 180-day booking window cut it off. Each run checks whether the window
has moved far enough to allow a longer stay and, if a site is free for it,
swaps the booking:

  1. create the new booking
  2. checkpoint the new reference on the entry (survives a crash)
  3. cancel the old booking
  4. swap references and dates, mark the entry successful

The old booking is never cancelled before the new one exists. If step 3
fails the account holds two bookings and the entry moves to anomaly.
"""
import logging
from datetime import date
from typing import List, Optional

from ..common.errors import (
    AnomalyError,
    AuthenticationError,
    BookingConflictError,
    PortalError,
    QueueWaitTooLongError,
    TransientPortalError,
)
from ..common.events import STQSuccessEvent
from ..common.models import (
    BookingDetails,
    BookingParams,
    CampsiteAvailability,
    RelatedType,
    SkipTheQueueEntry,
    STQResult,
    STQState,
    site_sort_key,
)
from .base import (
    Executor,
    ExecutionOutcome,
    ExecutionResult,
    available_for_stay,
    site_type_matches,
)

logger = logging.getLogger(__name__)


def choose_site(sites: List[CampsiteAvailability], current_site_id: Optional[str]) -> CampsiteAvailability:
    """The site already held, else the cheapest, else the lowest id"""
    for site in sites:
        if current_site_id and site.site_id == current_site_id:
            return site
    return min(sites, key=lambda s: (s.total_price, site_sort_key(s.site_id)))


class STQExecutor(Executor):
    """Runs one Beat the Crowd cycle for an STQ entry"""

    async def execute(self, entry: SkipTheQueueEntry) -> ExecutionResult:
        if entry.pending_booking_reference:
            return await self.reconcile(entry)

        if not entry.is_active or entry.is_terminal:
            return ExecutionResult(
                outcome=ExecutionOutcome.SKIPPED,
                message=f"Entry is {entry.state.value}",
            )

        if entry.attempts_exhausted:
            return await self._exhaust(entry)

        now = self.clock()
        today = now.date()
        if entry.arrival_date <= today:
            self.storage.update_stq(
                entry.id,
                state=STQState.ERROR,
                last_checked_at=now,
                last_result=STQResult.ERROR,
                last_error="Stay has already started",
            )
            return ExecutionResult(outcome=ExecutionOutcome.ERROR, message="Stay has already started")

        booking = self.config.booking
        departure = entry.candidate_departure(
            today,
            booking.booking_window_days,
            booking.max_stay_nights(entry.arrival_date),
        )
        if departure is None:
            return await self._not_found(entry, "Booking window has not moved past the current departure")

        try:
            await self.admit()
        except QueueWaitTooLongError as e:
            self.storage.update_stq(entry.id, last_checked_at=now)
            return ExecutionResult(outcome=ExecutionOutcome.DEFERRED, message=str(e))
        except AuthenticationError as e:
            return await self._halt(entry, e)
        except TransientPortalError as e:
            return self._transient(entry, "Queue admission failed", e)
        except PortalError as e:
            return self._error(entry, "Queue admission failed", e)

        try:
            sites = await self.call(self.portal.check_availability(
                entry.campground_id,
                entry.arrival_date,
                departure,
                entry.num_guests,
                entry.site_type,
            ))
        except AuthenticationError as e:
            return await self._halt(entry, e)
        except TransientPortalError as e:
            return self._transient(entry, "Availability check failed", e)
        except Exception as e:
            return self._error(entry, "Availability check failed", e)

        matches = [
            site for site in sites
            if available_for_stay(site, entry.arrival_date, departure)
            and site_type_matches(site, entry.site_type)
        ]
        if not matches:
            return await self._not_found(entry, f"No site free until {departure}")

        return await self._rebook(entry, choose_site(matches, entry.site_id), departure)

    # ========================================
    # Rebooking
    # ========================================

    async def _rebook(
        self,
        entry: SkipTheQueueEntry,
        site: CampsiteAvailability,
        departure: date,
    ) -> ExecutionResult:
        params = BookingParams(
            campground_id=entry.campground_id,
            site_id=site.site_id,
            arrival_date=entry.arrival_date,
            departure_date=departure,
            num_guests=entry.num_guests,
            site_type=entry.site_type or site.site_type,
            customer=self.customer,
        )

        try:
            booking = await self.call(self.portal.create_booking(params))
        except BookingConflictError:
            return await self._not_found(entry, f"Site {site.site_id} was taken before it could be booked")
        except AuthenticationError as e:
            return await self._halt(entry, e)
        except PortalError as e:
            return self._transient(entry, f"Booking site {site.site_id} failed", e)

        if booking.reference == entry.booking_reference:
            return self._error(
                entry,
                "Portal returned the existing booking reference",
                PortalError(f"New booking reference {booking.reference} equals the current one"),
            )

        logger.info(
            f"STQ {entry.id}: created {booking.reference} for site {site.site_id} "
            f"until {departure}, cancelling {entry.booking_reference}"
        )
        entry = self.storage.update_stq(
            entry.id,
            pending_booking_reference=booking.reference,
            pending_departure_date=departure,
            pending_site_id=site.site_id,
        ) or entry.model_copy(update={
            "pending_booking_reference": booking.reference,
            "pending_departure_date": departure,
            "pending_site_id": site.site_id,
        })

        return await self._cancel_and_swap(entry)

    async def _cancel_and_swap(self, entry: SkipTheQueueEntry) -> ExecutionResult:
        try:
            await self.call(self.portal.cancel_booking(entry.booking_reference))
        except Exception as e:
            return await self._anomaly(entry, e)
        return await self._complete_swap(entry)

    async def _complete_swap(self, entry: SkipTheQueueEntry) -> ExecutionResult:
        old_reference = entry.booking_reference
        new_reference = entry.pending_booking_reference
        now = self.clock()

        updated = self.storage.update_stq(
            entry.id,
            booking_reference=new_reference,
            new_booking_reference=new_reference,
            previous_booking_reference=old_reference,
            departure_date=entry.pending_departure_date or entry.departure_date,
            site_id=entry.pending_site_id or entry.site_id,
            state=STQState.SUCCESS,
            last_result=STQResult.SUCCESS,
            last_error=None,
            last_checked_at=now,
            success_date=now,
            anomaly_details=None,
            pending_booking_reference=None,
            pending_departure_date=None,
            pending_site_id=None,
        )
        if updated is None:
            logger.error(f"STQ {entry.id} vanished after rebooking {old_reference} -> {new_reference}")
            updated = entry

        logger.info(f"STQ {entry.id}: rebooked {old_reference} -> {new_reference}")
        await self.notifications.notify_stq_success(updated, old_reference)
        self.publish(STQSuccessEvent(
            stq_id=entry.id,
            old_reference=old_reference,
            new_reference=new_reference,
            departure_date=updated.departure_date,
        ))
        return ExecutionResult(
            outcome=ExecutionOutcome.REBOOKED,
            message=f"Rebooked {old_reference} -> {new_reference}",
            booking_reference=new_reference,
        )

    async def _anomaly(self, entry: SkipTheQueueEntry, cause: BaseException) -> ExecutionResult:
        anomaly = AnomalyError(
            f"New booking {entry.pending_booking_reference} was created but cancelling "
            f"{entry.booking_reference} failed: {cause}. Both bookings are currently held; "
            f"cancel one of them and resolve this entry.",
            old_reference=entry.booking_reference,
            new_reference=entry.pending_booking_reference,
            cause=cause,
        )
        details = str(anomaly)
        logger.error(
            f"STQ {entry.id} anomaly: old={anomaly.old_reference} "
            f"new={anomaly.new_reference} cause={type(cause).__name__}: {cause}"
        )
        self.storage.update_stq(
            entry.id,
            state=STQState.ANOMALY,
            last_result=STQResult.ANOMALY,
            last_error=str(cause) or type(cause).__name__,
            last_checked_at=self.clock(),
            anomaly_details=details,
        )
        await self.notifications.notify_anomaly(entry, details)
        return ExecutionResult(
            outcome=ExecutionOutcome.ANOMALY,
            message=details,
            error_details=f"{type(cause).__name__}: {cause}",
            booking_reference=entry.pending_booking_reference,
        )

    # ========================================
    # Reconciliation
    # ========================================

    async def reconcile(self, entry: SkipTheQueueEntry) -> ExecutionResult:
        """
        Settle an entry whose rebook stopped between create and swap.

        The portal decides: if the old booking is already cancelled the swap
        is completed; if the new booking is gone the checkpoint is dropped
        and the entry goes back to active; if both are still held the
        cancel is retried once.
        """
        new_reference = entry.pending_booking_reference
        if not new_reference:
            return ExecutionResult(outcome=ExecutionOutcome.SKIPPED, message="Nothing to reconcile")

        try:
            old = await self._lookup(entry.booking_reference)
            new = await self._lookup(new_reference)
        except AuthenticationError as e:
            self.storage.update_stq(entry.id, last_error=str(e), last_checked_at=self.clock())
            await self.notifications.notify_auth_required(entry.id, RelatedType.STQ)
            return ExecutionResult(
                outcome=ExecutionOutcome.ERROR,
                message="Authentication required to reconcile",
                error_details=str(e),
            )
        except Exception as e:
            self.storage.update_stq(entry.id, last_error=str(e) or type(e).__name__, last_checked_at=self.clock())
            return ExecutionResult(
                outcome=ExecutionOutcome.ERROR,
                message="Could not look up bookings to reconcile",
                error_details=f"{type(e).__name__}: {e}",
            )

        old_gone = old is None or old.is_cancelled
        new_gone = new is None or new.is_cancelled

        if new_gone and old_gone:
            self.storage.update_stq(
                entry.id,
                pending_booking_reference=None,
                pending_departure_date=None,
                pending_site_id=None,
            )
            return self._error(
                entry,
                "Both bookings are cancelled",
                PortalError(f"Neither {entry.booking_reference} nor {new_reference} is held"),
            )

        if new_gone:
            logger.warning(f"STQ {entry.id}: new booking {new_reference} is gone, keeping {entry.booking_reference}")
            self.storage.update_stq(
                entry.id,
                state=STQState.ACTIVE,
                last_checked_at=self.clock(),
                anomaly_details=None,
                pending_booking_reference=None,
                pending_departure_date=None,
                pending_site_id=None,
            )
            return ExecutionResult(
                outcome=ExecutionOutcome.RECOVERED,
                message=f"Dropped missing booking {new_reference}; entry active again",
            )

        if old_gone:
            return await self._complete_swap(entry)

        logger.info(f"STQ {entry.id}: both bookings held, retrying cancel of {entry.booking_reference}")
        return await self._cancel_and_swap(entry)

    async def _lookup(self, reference: str) -> Optional[BookingDetails]:
        try:
            return await self.call(self.portal.get_booking(reference))
        except AuthenticationError:
            raise
        except PortalError as e:
            if e.status_code == 404:
                return None
            raise

    # ========================================
    # Outcomes
    # ========================================

    async def _not_found(self, entry: SkipTheQueueEntry, message: str) -> ExecutionResult:
        attempts = entry.attempts_count + 1
        fields = dict(
            attempts_count=attempts,
            last_checked_at=self.clock(),
            last_result=STQResult.UNAVAILABLE,
            last_error=None,
        )
        if attempts >= entry.max_attempts:
            fields["state"] = STQState.EXHAUSTED

        updated = self.storage.update_stq(entry.id, **fields)
        if attempts >= entry.max_attempts:
            await self.notifications.notify_stq_exhausted(updated or entry)
            logger.info(f"STQ {entry.id} exhausted after {attempts} attempts")
            return ExecutionResult(outcome=ExecutionOutcome.EXHAUSTED, message=message)
        return ExecutionResult(outcome=ExecutionOutcome.UNAVAILABLE, message=message)

    async def _exhaust(self, entry: SkipTheQueueEntry) -> ExecutionResult:
        updated = self.storage.update_stq(entry.id, state=STQState.EXHAUSTED, last_checked_at=self.clock())
        await self.notifications.notify_stq_exhausted(updated or entry)
        return ExecutionResult(
            outcome=ExecutionOutcome.EXHAUSTED,
            message=f"{entry.attempts_count} of {entry.max_attempts} attempts already used",
        )

    def _transient(self, entry: SkipTheQueueEntry, message: str, error: Exception) -> ExecutionResult:
        logger.warning(f"STQ {entry.id}: {message}: {error}")
        self.storage.update_stq(
            entry.id,
            last_checked_at=self.clock(),
            last_result=STQResult.ERROR,
            last_error=str(error) or type(error).__name__,
        )
        return ExecutionResult(
            outcome=ExecutionOutcome.ERROR,
            message=message,
            error_details=f"{type(error).__name__}: {error}",
        )

    def _error(self, entry: SkipTheQueueEntry, message: str, error: Exception) -> ExecutionResult:
        logger.error(f"STQ {entry.id} stopped: {message}: {error}")
        self.storage.update_stq(
            entry.id,
            state=STQState.ERROR,
            last_checked_at=self.clock(),
            last_result=STQResult.ERROR,
            last_error=f"{message}: {error}",
        )
        return ExecutionResult(
            outcome=ExecutionOutcome.ERROR,
            message=message,
            error_details=f"{type(error).__name__}: {error}",
        )

    async def _halt(self, entry: SkipTheQueueEntry, error: AuthenticationError) -> ExecutionResult:
        result = self._error(entry, "Authentication required", error)
        await self.notifications.notify_auth_required(entry.id, RelatedType.STQ)
        return result
