"""
Watch Executor

Checks one watch against the portal and, when it is set to auto-book,
books the best matching site.
"""
import logging
from typing import List, Optional

from ..common.errors import (
    AuthenticationError,
    BookingConflictError,
    PortalError,
    QueueWaitTooLongError,
    TransientPortalError,
)
from ..common.events import WatchFoundEvent
from ..common.models import (
    BookingParams,
    BookingResult,
    CampsiteAvailability,
    RelatedType,
    Watch,
    WatchResult,
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

HALT_AUTHENTICATION = "authentication"


def filter_sites(watch: Watch, sites: List[CampsiteAvailability]) -> List[CampsiteAvailability]:
    """Sites that satisfy every criterion of the watch for the whole stay"""
    preferred = {p.strip().lower() for p in watch.preferred_sites if p.strip()}
    matches = []
    for site in sites:
        if not available_for_stay(site, watch.arrival_date, watch.departure_date):
            continue
        if preferred and site.site_id.lower() not in preferred and site.site_name.lower() not in preferred:
            continue
        if not site_type_matches(site, watch.site_type):
            continue
        if watch.max_price is not None and site.max_night_price > watch.max_price:
            continue
        matches.append(site)
    return matches


def best_match(sites: List[CampsiteAvailability]) -> CampsiteAvailability:
    """Cheapest stay, then lowest site id"""
    return min(sites, key=lambda s: (s.total_price, site_sort_key(s.site_id)))


class WatchExecutor(Executor):
    """Runs one availability check for a watch"""

    async def execute(self, watch: Watch) -> ExecutionResult:
        now = self.clock()

        if watch.arrival_date < now.date():
            self.storage.update_watch(
                watch.id,
                is_active=False,
                last_checked_at=now,
                last_result=WatchResult.ERROR,
                last_error="Arrival date has passed",
            )
            logger.info(f"Watch {watch.id} deactivated, arrival {watch.arrival_date} has passed")
            return ExecutionResult(outcome=ExecutionOutcome.ERROR, message="Arrival date has passed; watch deactivated")

        try:
            await self.admit()
        except QueueWaitTooLongError as e:
            self.storage.update_watch(watch.id, last_checked_at=now)
            return ExecutionResult(outcome=ExecutionOutcome.DEFERRED, message=str(e))
        except AuthenticationError as e:
            return await self._halt(watch, e)
        except PortalError as e:
            return self._failed(watch, "Queue admission failed", e)

        try:
            sites = await self.call(self.portal.check_availability(
                watch.campground_id,
                watch.arrival_date,
                watch.departure_date,
                watch.num_guests,
                watch.site_type,
            ))
        except AuthenticationError as e:
            return await self._halt(watch, e)
        except Exception as e:
            return self._failed(watch, "Availability check failed", e)

        matches = filter_sites(watch, sites)
        if not matches:
            return self._not_found(watch, f"No matching sites ({len(sites)} checked)")

        if watch.auto_book:
            return await self._auto_book(watch, matches)

        self._record_found(watch, matches)
        if watch.notify_only:
            await self.notifications.notify_watch_found(watch, matches)
        return ExecutionResult(outcome=ExecutionOutcome.FOUND, message=f"{len(matches)} matching sites")

    async def _auto_book(self, watch: Watch, matches: List[CampsiteAvailability]) -> ExecutionResult:
        site = best_match(matches)
        params = BookingParams(
            campground_id=watch.campground_id,
            site_id=site.site_id,
            arrival_date=watch.arrival_date,
            departure_date=watch.departure_date,
            num_guests=watch.num_guests,
            site_type=watch.site_type or site.site_type,
            customer=self.customer,
        )

        try:
            booking: BookingResult = await self.call(self.portal.create_booking(params))
        except BookingConflictError as e:
            logger.info(f"Watch {watch.id}: site {site.site_id} taken before booking ({e})")
            return self._not_found(watch, f"Site {site.site_id} was taken before it could be booked")
        except AuthenticationError as e:
            return await self._halt(watch, e)
        except TransientPortalError as e:
            logger.warning(f"Watch {watch.id} booking attempt failed: {e}")
            self._record_found(watch, matches, last_error=f"Booking failed: {e}")
            await self.notifications.notify_booking_failed(watch, str(e))
            return ExecutionResult(
                outcome=ExecutionOutcome.ERROR,
                message=f"Booking site {site.site_id} failed",
                error_details=f"{type(e).__name__}: {e}",
            )
        except PortalError as e:
            self._record_found(watch, matches, last_error=f"Booking failed: {e}")
            await self.notifications.notify_booking_failed(watch, str(e))
            return ExecutionResult(
                outcome=ExecutionOutcome.FOUND,
                message=f"{len(matches)} matching sites; booking site {site.site_id} failed",
                error_details=str(e),
            )

        self._record_found(watch, matches, is_active=False)
        await self.notifications.notify_booking_confirmed(watch, booking, site)
        logger.info(f"Watch {watch.id} booked site {site.site_id}: {booking.reference}")
        return ExecutionResult(
            outcome=ExecutionOutcome.BOOKED,
            message=f"Booked site {site.site_id}",
            booking_reference=booking.reference,
        )

    def _record_found(
        self,
        watch: Watch,
        matches: List[CampsiteAvailability],
        last_error: Optional[str] = None,
        **fields
    ):
        self.storage.update_watch(
            watch.id,
            last_checked_at=self.clock(),
            last_result=WatchResult.FOUND,
            last_error=last_error,
            found_count=watch.found_count + 1,
            last_availability=matches,
            **fields
        )
        self.publish(WatchFoundEvent(
            watch_id=watch.id,
            watch_name=watch.name,
            campground_id=watch.campground_id,
            sites=matches,
        ))

    def _failed(self, watch: Watch, message: str, error: Exception) -> ExecutionResult:
        logger.warning(f"Watch {watch.id}: {message}: {error}")
        self.storage.update_watch(
            watch.id,
            last_checked_at=self.clock(),
            last_result=WatchResult.ERROR,
            last_error=str(error) or type(error).__name__,
        )
        return ExecutionResult(
            outcome=ExecutionOutcome.ERROR,
            message=message,
            error_details=f"{type(error).__name__}: {error}",
        )

    def _not_found(self, watch: Watch, message: str) -> ExecutionResult:
        self.storage.update_watch(
            watch.id,
            last_checked_at=self.clock(),
            last_result=WatchResult.NOT_FOUND,
            last_error=None,
            last_availability=[],
        )
        return ExecutionResult(outcome=ExecutionOutcome.NOT_FOUND, message=message)

    async def _halt(self, watch: Watch, error: AuthenticationError) -> ExecutionResult:
        logger.error(f"Watch {watch.id} halted: portal rejected the session ({error})")
        self.storage.update_watch(
            watch.id,
            last_checked_at=self.clock(),
            last_result=WatchResult.ERROR,
            last_error=str(error),
            halted_reason=HALT_AUTHENTICATION,
        )
        await self.notifications.notify_auth_required(watch.id, RelatedType.WATCH)
        return ExecutionResult(
            outcome=ExecutionOutcome.ERROR,
            message="Authentication required; watch halted",
            error_details=str(error),
        )
