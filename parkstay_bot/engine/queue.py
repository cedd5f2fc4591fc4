"""
Queue Session Manager

During busy periods ParkStay puts visitors in a virtual waiting room.
Every executor passes through ensure_admitted() before touching the
portal. The handshake and refresh path is serialized by a lock, so
concurrent executors share one place in the queue; once the session is
active they proceed concurrently.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Optional, Dict, Any, Awaitable

from ..common.config import QueueConfig
from ..common.errors import PortalTimeoutError, QueueWaitTooLongError, TransientPortalError
from ..common.events import EventBus, QueueStatusEvent
from ..common.models import QueueSession, QueueStatus, QueueTicket
from ..common.timing import Clock, utcnow, format_countdown, format_wait
from ..portal.base import PortalClient

logger = logging.getLogger(__name__)


class QueueSessionManager:
    """Owns the process-wide queue session for the account"""

    def __init__(
        self,
        portal: PortalClient,
        storage,
        config: Optional[QueueConfig] = None,
        clock: Clock = utcnow,
        events: Optional[EventBus] = None,
        sleep=asyncio.sleep,
        call_timeout_seconds: Optional[float] = None,
    ):
        self.portal = portal
        self.storage = storage
        self.config = config or QueueConfig()
        self.clock = clock
        self.events = events
        self.call_timeout_seconds = call_timeout_seconds
        self._sleep = sleep
        self._session: Optional[QueueSession] = None
        self._lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def session(self) -> Optional[QueueSession]:
        return self._session

    @property
    def is_active(self) -> bool:
        return (
            self._session is not None
            and self._session.effective_status(self.clock()) == QueueStatus.ACTIVE
        )

    # ========================================
    # Persistence
    # ========================================

    def restore(self) -> Optional[QueueSession]:
        """Reload a persisted session, discarding it when already expired"""
        stored = self.storage.get_queue_session()
        if stored is None:
            return None

        if stored.is_expired(self.clock()):
            logger.info("Stored queue session has expired, a new one will be created")
            self.storage.clear_queue_session()
            return None

        self._session = stored
        if stored.status == QueueStatus.ACTIVE:
            self.portal.use_queue_session(stored.session_key)
        logger.info(f"Restored queue session {stored.session_key[:8]}... ({stored.status.value})")
        return stored

    def _apply(self, ticket: QueueTicket) -> QueueSession:
        now = self.clock()
        previous = self._session
        self._session = QueueSession(
            session_key=ticket.session_key,
            status=QueueStatus(ticket.status),
            position=ticket.position,
            estimated_wait_seconds=ticket.estimated_wait_seconds,
            expiry_seconds=ticket.expiry_seconds,
            created_at=(
                previous.created_at
                if previous and previous.session_key == ticket.session_key
                else now
            ),
            expires_at=now + timedelta(seconds=ticket.expiry_seconds),
            last_checked_at=now,
        )
        self.storage.save_queue_session(self._session)

        if self._session.status == QueueStatus.ACTIVE:
            self.portal.use_queue_session(self._session.session_key)

        self._publish()
        return self._session

    async def _call(self, awaitable: Awaitable[QueueTicket]) -> QueueTicket:
        if self.call_timeout_seconds is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, self.call_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise PortalTimeoutError(
                f"Queue call exceeded {self.call_timeout_seconds:g}s"
            ) from e

    def _publish(self):
        if not self.events:
            return
        now = self.clock()
        session = self._session
        self.events.publish(QueueStatusEvent(
            status=session.effective_status(now) if session else None,
            position=session.position if session else 0,
            estimated_wait_seconds=session.estimated_wait_seconds if session else 0,
            expiry_remaining_seconds=session.expiry_remaining(now) if session else 0,
        ))

    # ========================================
    # Admission
    # ========================================

    async def ensure_admitted(self) -> QueueSession:
        """
        Return an active session, joining or waiting in the queue as needed.

        Raises QueueWaitTooLongError when the estimated or actual wait goes
        past max_wait_seconds. Portal errors from the handshake propagate.
        """
        async with self._lock:
            now = self.clock()
            session = self._session

            if session is None or session.is_expired(now):
                old_key = session.session_key if session else None
                if session is not None:
                    logger.info("Queue session expired, rejoining")
                session = self._apply(await self._call(self.portal.join_queue(old_key)))
            elif (
                session.status == QueueStatus.ACTIVE
                and session.expiry_remaining(now) <= self.config.refresh_buffer_seconds
            ):
                session = self._apply(await self._call(self.portal.refresh_queue(session.session_key)))

            if session.status == QueueStatus.ACTIVE:
                return session

            return await self._wait_until_active()

    async def _wait_until_active(self) -> QueueSession:
        waited = 0.0
        session = self._session

        while session.status != QueueStatus.ACTIVE:
            self._check_wait(session, waited)
            logger.info(
                f"In queue at position {session.position}, "
                f"estimated wait {format_wait(session.estimated_wait_seconds)}"
            )

            await self._sleep(self.config.poll_interval_seconds)
            waited += self.config.poll_interval_seconds

            try:
                session = self._apply(await self._call(self.portal.refresh_queue(session.session_key)))
            except TransientPortalError as e:
                logger.warning(f"Queue poll error, retrying: {e}")
                await self._sleep(self.config.retry_delay_seconds)
                waited += self.config.retry_delay_seconds

        logger.info("Queue session active")
        return session

    def _check_wait(self, session: QueueSession, waited: float):
        ceiling = self.config.max_wait_seconds
        if session.estimated_wait_seconds > ceiling:
            raise QueueWaitTooLongError(
                f"Estimated queue wait {format_wait(session.estimated_wait_seconds)} "
                f"exceeds {format_wait(ceiling)}",
                estimated_wait_seconds=session.estimated_wait_seconds,
                position=session.position,
            )
        if waited >= ceiling:
            raise QueueWaitTooLongError(
                f"Waited {format_wait(int(waited))} in queue without admission",
                estimated_wait_seconds=session.estimated_wait_seconds,
                position=session.position,
            )

    # ========================================
    # Background refresh
    # ========================================

    def start(self):
        """Start the background task that keeps an active session alive"""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self):
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

    async def _refresh_loop(self):
        while True:
            delay = self.config.poll_interval_seconds
            session = self._session
            if session is not None and session.status == QueueStatus.ACTIVE:
                remaining = session.expiry_remaining(self.clock())
                delay = max(delay, remaining - self.config.refresh_buffer_seconds)

            await self._sleep(delay)

            try:
                await self.refresh_if_due()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Failed to refresh queue session: {e}")
                self._publish()
                await self._sleep(self.config.retry_delay_seconds)

    async def refresh_if_due(self) -> bool:
        """Refresh an active session inside the refresh buffer, returns True if refreshed"""
        async with self._lock:
            session = self._session
            if session is None or session.status != QueueStatus.ACTIVE:
                return False
            now = self.clock()
            if session.is_expired(now):
                self._publish()
                return False
            if session.expiry_remaining(now) > self.config.refresh_buffer_seconds:
                return False
            self._apply(await self._call(self.portal.refresh_queue(session.session_key)))
            logger.info("Queue session refreshed")
            return True

    # ========================================
    # Status and teardown
    # ========================================

    async def logout(self):
        """Discard the session; the only terminal transition"""
        await self.stop()
        async with self._lock:
            self._session = None
            self.storage.clear_queue_session()
            self.portal.use_queue_session(None)
        self._publish()
        logger.info("Queue session discarded")

    def status(self) -> Dict[str, Any]:
        now = self.clock()
        session = self._session
        if session is None:
            return {
                "status": None,
                "session_key": None,
                "position": 0,
                "estimated_wait": "Unknown",
                "expiry_remaining": "No session",
            }

        remaining = session.expiry_remaining(now)
        return {
            "status": session.effective_status(now).value,
            "session_key": session.session_key,
            "position": session.position,
            "estimated_wait": format_wait(session.estimated_wait_seconds),
            "expiry_remaining": format_countdown(remaining) if remaining > 0 else "Expired",
        }
