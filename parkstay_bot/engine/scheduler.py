"""
Job Scheduler

A single asyncio loop ticks every few seconds, picks the watches and STQ
entries whose next_check_at has passed and runs each in its own task.

The scheduler owns the in-flight registry: at most one execution per
entity, and no more than max_concurrent executions at once. Every
execution produces exactly one JobLog row, and an executor that raises
is logged as an error without disturbing the loop or other jobs.
"""
import asyncio
import logging
import time
import traceback
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, List, Dict, Tuple, Union, Any
import pytz

from ..common.config import SchedulerConfig
from ..common.errors import EntityNotFoundError, JobAlreadyRunningError
from ..common.models import JobStatus, JobType, SkipTheQueueEntry, Watch
from ..common.timing import Clock, utcnow
from .base import ExecutionOutcome, ExecutionResult
from .job_log import JobLogger
from .queue import QueueSessionManager
from .stq import STQExecutor
from .watch import WatchExecutor

logger = logging.getLogger(__name__)

NEVER_CHECKED = datetime.min.replace(tzinfo=pytz.UTC)


class JobKind(str, Enum):
    WATCH = "watch"
    STQ = "stq"


JOB_TYPES = {
    JobKind.WATCH: JobType.WATCH_POLL,
    JobKind.STQ: JobType.STQ_CHECK,
}

Entity = Union[Watch, SkipTheQueueEntry]
JobKey = Tuple[JobKind, int]


class JobScheduler:
    """Drives watches and STQ entries on their own intervals"""

    def __init__(
        self,
        storage,
        watch_executor: WatchExecutor,
        stq_executor: STQExecutor,
        job_logger: JobLogger,
        config: Optional[SchedulerConfig] = None,
        queue: Optional[QueueSessionManager] = None,
        clock: Clock = utcnow,
        sleep=asyncio.sleep,
    ):
        self.storage = storage
        self.watch_executor = watch_executor
        self.stq_executor = stq_executor
        self.job_logger = job_logger
        self.config = config or SchedulerConfig()
        self.queue = queue
        self.clock = clock
        self._sleep = sleep

        self._in_flight: Dict[JobKey, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False
        self._last_cleanup: Optional[datetime] = None

    # ========================================
    # Lifecycle
    # ========================================

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Recover interrupted rebooks, restore the queue session and start ticking"""
        if self._running:
            return

        if self.queue is not None:
            self.queue.restore()
            self.queue.start()

        await self.recover()

        self._running = True
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(
            f"Scheduler started (tick {self.config.tick_seconds:g}s, "
            f"max {self.config.max_concurrent} concurrent jobs)"
        )

    async def stop(self):
        """Stop ticking, give in-flight jobs a grace period, then cancel them"""
        self._running = False

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        tasks = list(self._in_flight.values())
        if tasks:
            logger.info(f"Waiting up to {self.config.shutdown_grace_seconds:g}s for {len(tasks)} jobs")
            done, pending = await asyncio.wait(tasks, timeout=self.config.shutdown_grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(f"Cancelled {len(pending)} jobs at shutdown")

        if self.queue is not None:
            await self.queue.stop()

        logger.info("Scheduler stopped")

    async def wait(self):
        """Block until the loop ends (storage failures end it)"""
        if self._loop_task is not None:
            await self._loop_task

    async def _loop(self):
        while self._running:
            await self.tick()
            if self._cleanup_due():
                await self.run_cleanup()
            await self._sleep(self.config.tick_seconds)

    # ========================================
    # Selection and dispatch
    # ========================================

    def select_due(self, now: Optional[datetime] = None) -> List[Tuple[JobKind, Entity]]:
        """Active, unhalted entities due by now, earliest first, then lowest id"""
        now = now or self.clock()
        due: List[Tuple[JobKind, Entity]] = []

        for watch in self.storage.list_watches(active_only=True):
            if watch.schedulable and (watch.next_check_at is None or watch.next_check_at <= now):
                due.append((JobKind.WATCH, watch))

        for entry in self.storage.list_stq(active_only=True):
            if entry.is_terminal:
                continue
            if entry.next_check_at is None or entry.next_check_at <= now:
                due.append((JobKind.STQ, entry))

        due.sort(key=lambda item: (item[1].next_check_at or NEVER_CHECKED, item[1].id))
        return due

    async def tick(self) -> List[asyncio.Task]:
        """Dispatch due jobs up to the concurrency limit"""
        started = []
        async with self._lock:
            capacity = self.config.max_concurrent - len(self._in_flight)
            if capacity <= 0:
                logger.debug("All job slots busy, skipping tick")
                return started

            for kind, entity in self.select_due():
                if len(started) >= capacity:
                    break
                key = (kind, entity.id)
                if key in self._in_flight:
                    continue
                task = asyncio.create_task(self._run(kind, entity.id))
                self._in_flight[key] = task
                started.append(task)

        if started:
            logger.debug(f"Dispatched {len(started)} jobs ({len(self._in_flight)} in flight)")
        return started

    async def execute_now(self, kind: JobKind, entity_id: int) -> ExecutionResult:
        """Run one entity immediately, outside its schedule"""
        return await self._run_exclusive(kind, entity_id)

    async def reconcile_now(self, stq_id: int) -> ExecutionResult:
        """Reconcile an STQ entry against the portal, e.g. to resolve an anomaly"""
        return await self._run_exclusive(JobKind.STQ, stq_id, reconcile=True)

    async def _run_exclusive(self, kind: JobKind, entity_id: int, reconcile: bool = False) -> ExecutionResult:
        key = (kind, entity_id)
        async with self._lock:
            if key in self._in_flight:
                raise JobAlreadyRunningError(f"{kind.value} {entity_id} is already running")
            if self._load(kind, entity_id) is None:
                raise EntityNotFoundError(f"{kind.value} {entity_id} not found")
            task = asyncio.create_task(self._run(kind, entity_id, reconcile))
            self._in_flight[key] = task
        return await task

    def is_running(self, kind: JobKind, entity_id: int) -> bool:
        return (kind, entity_id) in self._in_flight

    def _load(self, kind: JobKind, entity_id: int) -> Optional[Entity]:
        if kind == JobKind.WATCH:
            return self.storage.get_watch(entity_id)
        return self.storage.get_stq(entity_id)

    async def _run(self, kind: JobKind, entity_id: int, reconcile: bool = False) -> Optional[ExecutionResult]:
        try:
            entity = self._load(kind, entity_id)
            if entity is None:
                logger.debug(f"{kind.value} {entity_id} deleted before it ran")
                return None

            if reconcile:
                execution = self.stq_executor.reconcile(entity)
            elif kind == JobKind.WATCH:
                execution = self.watch_executor.execute(entity)
            else:
                execution = self.stq_executor.execute(entity)

            result = await self._execute_logged(kind, entity_id, execution)
            self._reschedule(kind, entity_id)
            return result
        finally:
            async with self._lock:
                self._in_flight.pop((kind, entity_id), None)

    async def _execute_logged(self, kind: JobKind, entity_id: int, execution) -> ExecutionResult:
        started = time.monotonic()
        try:
            result = await execution
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"{kind.value} {entity_id} execution raised")
            result = ExecutionResult(
                outcome=ExecutionOutcome.ERROR,
                message=f"Unexpected error: {e}",
                error_details=traceback.format_exc(),
            )

        self.job_logger.record(
            JOB_TYPES[kind],
            entity_id,
            result.job_status,
            outcome=result.outcome.value,
            message=result.message,
            error_details=result.error_details,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    def _reschedule(self, kind: JobKind, entity_id: int):
        now = self.clock()
        if kind == JobKind.WATCH:
            watch = self.storage.get_watch(entity_id)
            if watch is None:
                return
            next_check = (
                now + timedelta(minutes=watch.check_interval_minutes)
                if watch.schedulable else None
            )
            self.storage.update_watch(entity_id, next_check_at=next_check)
        else:
            entry = self.storage.get_stq(entity_id)
            if entry is None:
                return
            next_check = (
                now + timedelta(minutes=entry.check_interval_minutes)
                if entry.is_active and not entry.is_terminal else None
            )
            self.storage.update_stq(entity_id, next_check_at=next_check)

    # ========================================
    # Recovery and housekeeping
    # ========================================

    async def recover(self) -> List[ExecutionResult]:
        """Reconcile every STQ entry left holding a pending booking reference"""
        results = []
        for entry in self.storage.list_stq():
            if not entry.pending_booking_reference:
                continue
            logger.warning(
                f"STQ {entry.id} was interrupted mid-rebook "
                f"({entry.booking_reference} -> {entry.pending_booking_reference}), reconciling"
            )
            results.append(await self.reconcile_now(entry.id))
        return results

    def _cleanup_due(self) -> bool:
        if self._last_cleanup is None:
            return True
        interval = timedelta(hours=self.config.cleanup_interval_hours)
        return self.clock() - self._last_cleanup >= interval

    async def run_cleanup(self) -> Dict[str, int]:
        """Prune job logs and notifications past their retention"""
        started = time.monotonic()
        now = self.clock()
        self._last_cleanup = now

        logs = self.job_logger.prune(self.config.job_log_retention_days, now)
        notifications = self.storage.prune_notifications(
            now - timedelta(days=self.config.notification_retention_days)
        )

        self.job_logger.record(
            JobType.CLEANUP,
            0,
            JobStatus.SUCCESS,
            outcome="pruned",
            message=f"Removed {logs} job logs and {notifications} notifications",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return {"job_logs": logs, "notifications": notifications}

    def status(self) -> Dict[str, Any]:
        due = self.select_due()
        return {
            "running": self._running,
            "in_flight": len(self._in_flight),
            "in_flight_jobs": [f"{kind.value}:{entity_id}" for kind, entity_id in self._in_flight],
            "max_concurrent": self.config.max_concurrent,
            "due_watches": sum(1 for kind, _ in due if kind == JobKind.WATCH),
            "due_stq": sum(1 for kind, _ in due if kind == JobKind.STQ),
            "last_cleanup": self._last_cleanup,
            "queue": self.queue.status() if self.queue is not None else None,
        }
