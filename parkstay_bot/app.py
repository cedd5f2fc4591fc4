"""
Wiring of the ParkStay bot

Builds storage, the portal client, the queue manager, notifications, both
executors, the scheduler and the command surface from one Config.
"""
import logging
from typing import Optional

from rich.console import Console

from .common.config import Config
from .common.events import EventBus
from .common.notifications import NotificationDispatcher, NotificationService
from .common.timing import Clock, make_clock
from .engine.commands import CommandService
from .engine.job_log import JobLogger
from .engine.queue import QueueSessionManager
from .engine.scheduler import JobScheduler
from .engine.stq import STQExecutor
from .engine.watch import WatchExecutor
from .portal.base import PortalClient
from .portal.client import ParkStayClient
from .storage import Storage, create_storage

logger = logging.getLogger(__name__)


class ParkStayApp:
    """
    One running instance of the bot.

    Collaborators can be injected (tests pass a fake portal, in-memory
    storage and a frozen clock); anything not given is built from config.
    """

    def __init__(
        self,
        config: Config,
        portal: Optional[PortalClient] = None,
        storage: Optional[Storage] = None,
        clock: Optional[Clock] = None,
        console: Optional[Console] = None,
    ):
        self.config = config
        self.clock = clock or make_clock(config.scheduler.timezone)
        self.storage = storage if storage is not None else create_storage(config.storage.path)
        self.portal = portal or ParkStayClient(config)
        self.events = EventBus()

        self.job_logger = JobLogger(self.storage)
        self.dispatcher = NotificationDispatcher(
            self.storage,
            retry_delay_ms=config.notifications.retry_delay_ms,
            console=console,
        )
        self.notifications = NotificationService(self.storage, self.dispatcher, self.events)
        self.queue = QueueSessionManager(
            self.portal,
            self.storage,
            config.queue,
            clock=self.clock,
            events=self.events,
            call_timeout_seconds=config.scheduler.call_timeout_seconds,
        )

        executor_args = dict(
            portal=self.portal,
            storage=self.storage,
            notifications=self.notifications,
            config=config,
            queue=self.queue,
            events=self.events,
            clock=self.clock,
        )
        self.watch_executor = WatchExecutor(**executor_args)
        self.stq_executor = STQExecutor(**executor_args)

        self.scheduler = JobScheduler(
            self.storage,
            self.watch_executor,
            self.stq_executor,
            self.job_logger,
            config=config.scheduler,
            queue=self.queue,
            clock=self.clock,
        )
        self.commands = CommandService(
            self.storage,
            self.scheduler,
            self.notifications,
            self.dispatcher,
            self.job_logger,
            queue=self.queue,
            booking=config.booking,
            clock=self.clock,
        )

    def load_providers(self):
        """Register the providers listed in the notifications config"""
        records = self.dispatcher.sync_from_config(self.config.notifications)
        logger.info(f"{len(records)} notification providers configured")
        return records

    async def start(self):
        self.load_providers()
        await self.scheduler.start()

    async def close(self):
        if self.scheduler.running:
            await self.scheduler.stop()
        await self.queue.stop()
        await self.dispatcher.close()
        await self.events.close()
        await self.portal.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()
