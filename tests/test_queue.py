"""
Tests for the queue session manager (parkstay_bot/engine/queue.py)
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from parkstay_bot.common.config import QueueConfig
from parkstay_bot.common.errors import PortalTimeoutError, QueueWaitTooLongError, TransientPortalError
from parkstay_bot.common.events import EventBus, EventType
from parkstay_bot.common.models import QueueSession, QueueStatus, QueueTicket
from parkstay_bot.engine.queue import QueueSessionManager

KEY = "A" * 52


def ticket(status="active", position=0, wait=0, expiry=600, key=KEY):
    return QueueTicket(
        session_key=key,
        status=status,
        position=position,
        estimated_wait_seconds=wait,
        expiry_seconds=expiry,
    )


@pytest.fixture()
def sleeps(clock):
    """Sleep stand-in that advances the frozen clock instead of waiting"""
    slept = []

    async def sleep(seconds):
        slept.append(seconds)
        clock.advance(seconds=seconds)

    sleep.slept = slept
    return sleep


@pytest.fixture()
def events():
    return EventBus()


@pytest.fixture()
def manager(portal, storage, clock, events, sleeps):
    return QueueSessionManager(
        portal,
        storage,
        QueueConfig(poll_interval_seconds=5, refresh_buffer_seconds=120, max_wait_seconds=900),
        clock=clock,
        events=events,
        sleep=sleeps,
    )


class TestAdmission:
    @pytest.mark.asyncio
    async def test_joins_when_no_session(self, manager, portal, storage, events):
        portal.queue_tickets = [ticket()]
        updates = []
        events.subscribe(EventType.QUEUE_STATUS_UPDATE, updates.append)

        session = await manager.ensure_admitted()

        assert session.status == QueueStatus.ACTIVE
        assert portal.calls == ["join_queue"]
        assert portal.queue_session_key == KEY
        assert storage.get_queue_session().session_key == KEY
        assert updates[-1].status == QueueStatus.ACTIVE
        assert updates[-1].expiry_remaining_seconds == 600

    @pytest.mark.asyncio
    async def test_active_session_reused(self, manager, portal):
        await manager.ensure_admitted()
        await manager.ensure_admitted()

        assert portal.calls == ["join_queue"]

    @pytest.mark.asyncio
    async def test_refreshes_inside_buffer(self, manager, portal, clock):
        await manager.ensure_admitted()
        clock.advance(seconds=500)

        session = await manager.ensure_admitted()

        assert portal.calls == ["join_queue", "refresh_queue"]
        assert session.expiry_remaining(clock()) == 600

    @pytest.mark.asyncio
    async def test_expired_session_rejoins_with_same_key(self, manager, portal, clock):
        portal.queue_tickets = [ticket(key=KEY)]
        first = await manager.ensure_admitted()
        clock.advance(seconds=601)
        portal.join_queue = AsyncMock(return_value=ticket(key=KEY))

        session = await manager.ensure_admitted()

        portal.join_queue.assert_awaited_once_with(KEY)
        assert session.created_at == first.created_at

    @pytest.mark.asyncio
    async def test_waits_until_active(self, manager, portal, sleeps):
        portal.queue_tickets = [
            ticket("waiting", position=40, wait=60),
            ticket("waiting", position=3, wait=10),
            ticket("active"),
        ]

        session = await manager.ensure_admitted()

        assert session.status == QueueStatus.ACTIVE
        assert sleeps.slept == [5, 5]
        assert portal.calls == ["join_queue", "refresh_queue", "refresh_queue"]
        assert portal.queue_session_key == KEY

    @pytest.mark.asyncio
    async def test_estimate_above_ceiling_raises(self, manager, portal, sleeps):
        portal.queue_tickets = [ticket("waiting", position=5000, wait=3600)]

        with pytest.raises(QueueWaitTooLongError) as exc:
            await manager.ensure_admitted()

        assert exc.value.position == 5000
        assert exc.value.estimated_wait_seconds == 3600
        assert sleeps.slept == []
        assert portal.queue_session_key is None

    @pytest.mark.asyncio
    async def test_actual_wait_above_ceiling_raises(self, portal, storage, clock, sleeps):
        manager = QueueSessionManager(
            portal, storage, QueueConfig(poll_interval_seconds=5, max_wait_seconds=10),
            clock=clock, sleep=sleeps,
        )
        portal.queue_tickets = [ticket("waiting", position=9, wait=5) for _ in range(5)]

        with pytest.raises(QueueWaitTooLongError):
            await manager.ensure_admitted()

        assert sum(sleeps.slept) == 10

    @pytest.mark.asyncio
    async def test_transient_poll_error_retried(self, manager, portal, sleeps):
        portal.queue_tickets = [ticket("waiting", position=2, wait=10)]
        portal.refresh_queue = AsyncMock(side_effect=[TransientPortalError("502"), ticket("active")])

        session = await manager.ensure_admitted()

        assert session.status == QueueStatus.ACTIVE
        assert portal.refresh_queue.await_count == 2

    @pytest.mark.asyncio
    async def test_slow_join_times_out(self, manager, portal, storage):
        manager.call_timeout_seconds = 0.01

        async def slow(session_key=None):
            await asyncio.sleep(1)

        portal.join_queue = slow

        with pytest.raises(PortalTimeoutError):
            await manager.ensure_admitted()

        assert manager.session is None
        assert storage.get_queue_session() is None

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_handshake(self, manager, portal):
        await asyncio.gather(*[manager.ensure_admitted() for _ in range(5)])

        assert portal.calls == ["join_queue"]


class TestLifecycle:
    def _saved(self, clock, status=QueueStatus.ACTIVE, expires_in=300):
        now = clock()
        return QueueSession(
            session_key=KEY,
            status=status,
            expiry_seconds=600,
            created_at=now,
            expires_at=now + timedelta(seconds=expires_in),
            last_checked_at=now,
        )

    def test_restore_active_session(self, manager, portal, storage, clock):
        storage.save_queue_session(self._saved(clock))

        restored = manager.restore()

        assert restored.session_key == KEY
        assert manager.is_active
        assert portal.queue_session_key == KEY

    def test_restore_discards_expired(self, manager, storage, clock):
        storage.save_queue_session(self._saved(clock, expires_in=-1))

        assert manager.restore() is None
        assert storage.get_queue_session() is None

    @pytest.mark.asyncio
    async def test_refresh_if_due(self, manager, portal, clock):
        await manager.ensure_admitted()
        assert await manager.refresh_if_due() is False

        clock.advance(seconds=490)
        assert await manager.refresh_if_due() is True
        assert portal.calls[-1] == "refresh_queue"

    @pytest.mark.asyncio
    async def test_logout_discards_session(self, manager, portal, storage):
        await manager.ensure_admitted()

        await manager.logout()

        assert manager.session is None
        assert storage.get_queue_session() is None
        assert portal.queue_session_key is None
        assert manager.status()["status"] is None

    @pytest.mark.asyncio
    async def test_status(self, manager, portal, clock):
        portal.queue_tickets = [ticket(expiry=600)]
        await manager.ensure_admitted()
        clock.advance(seconds=60)

        status = manager.status()

        assert status["status"] == "active"
        assert status["position"] == 0
        assert status["expiry_remaining"] == "9m 0s"
