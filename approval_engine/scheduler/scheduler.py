"""Workflow Scheduler - Background jobs of the approval engine

Supports multi-server deployment with locking via MongoDB.
Handles:
- Event outbox delivery with lock-based concurrency control
- Stale lock cleanup for crash recovery
- Periodic scan for instances past the processing delay
"""
import os
import socket
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..engine.engine import WorkflowEngine
from ..utils.logger import get_logger, correlation_scope
from ..utils.idgen import generate_id
from ..utils.time import utc_now

logger = get_logger(__name__)


class WorkflowScheduler:
    """
    Scheduler using APScheduler with MongoDB locking

    Designed for multi-server deployment:
    - Each server runs its own scheduler instance
    - Outbox events are locked before delivery (only one server delivers each)
    - Stale locks are cleaned up automatically (crash recovery)
    """

    def __init__(self, engine: Optional[WorkflowEngine] = None):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.engine = engine or WorkflowEngine()
        self._is_running = False

        # Unique server ID for distributed locking
        self._server_id = self._generate_server_id()
        self._dispatch_count = 0

    def _generate_server_id(self) -> str:
        hostname = socket.gethostname()
        pid = os.getpid()
        unique = generate_id()[:8]
        return f"{hostname}-{pid}-{unique}"

    @property
    def server_id(self) -> str:
        return self._server_id

    def start(self) -> None:
        """Start the scheduler; must be called with a running event loop"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()

        # Deliver outbox events at configured interval (default 10 seconds)
        self.scheduler.add_job(
            self._dispatch_events,
            trigger=IntervalTrigger(seconds=settings.scheduler_interval_seconds),
            id="dispatch_events",
            name="Dispatch pending workflow events",
            replace_existing=True
        )

        # Clean up stale locks every 5 minutes (crash recovery)
        self.scheduler.add_job(
            self._cleanup_stale_locks,
            trigger=IntervalTrigger(minutes=5),
            id="cleanup_stale_locks",
            name="Cleanup stale event locks",
            replace_existing=True
        )

        self.scheduler.add_job(
            self._scan_delays,
            trigger=IntervalTrigger(minutes=settings.delay_scan_interval_minutes),
            id="scan_delays",
            name="Scan delayed instances",
            replace_existing=True
        )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Scheduler started",
            extra={"server_id": self._server_id}
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown()
            self._is_running = False
            logger.info("Scheduler stopped", extra={"server_id": self._server_id})

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def _dispatch_events(self) -> None:
        """Deliver pending outbox events; each one is locked by this server first"""
        with correlation_scope():
            start_time = utc_now()
            try:
                stats = self.engine.dispatch_events(worker_id=self._server_id)
            except Exception as e:
                # Keep the job scheduled; the next tick retries
                logger.error(
                    f"Error in event dispatch job: {e}",
                    extra={"server_id": self._server_id},
                    exc_info=True
                )
                return

            self._dispatch_count += stats["sent"]
            if stats["sent"] or stats["failed"]:
                duration_ms = (utc_now() - start_time).total_seconds() * 1000
                logger.debug(
                    f"Dispatch cycle took {duration_ms:.0f} ms, {self._dispatch_count} events sent so far",
                    extra={"server_id": self._server_id}
                )

    async def _cleanup_stale_locks(self) -> None:
        """
        Release locks held by crashed processes

        An event whose worker died is picked up by another server once the
        lock is cleared.
        """
        try:
            cleaned = self.engine.events.repo.cleanup_stale_locks(
                max_lock_age_minutes=settings.stale_lock_cleanup_minutes
            )
        except Exception as e:
            logger.error(f"Error cleaning up stale locks: {e}", extra={"server_id": self._server_id})
            return

        if cleaned > 0:
            logger.info(
                f"Cleaned up {cleaned} stale event locks",
                extra={"server_id": self._server_id}
            )

    async def _scan_delays(self) -> None:
        """Log instances past the processing delay"""
        with correlation_scope():
            try:
                delayed = self.engine.list_delayed()
            except Exception as e:
                logger.error(f"Error in delay scan job: {e}", extra={"server_id": self._server_id})
                return

            if delayed:
                logger.warning(
                    f"{len(delayed)} instances exceed the {settings.sla_delay_threshold_days} day processing delay",
                    extra={"server_id": self._server_id}
                )


# Global scheduler instance
_scheduler: Optional[WorkflowScheduler] = None


def get_scheduler(engine: Optional[WorkflowEngine] = None) -> WorkflowScheduler:
    """Get or create scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = WorkflowScheduler(engine)
    return _scheduler


def start_scheduler(engine: Optional[WorkflowEngine] = None) -> WorkflowScheduler:
    """Start the global scheduler"""
    scheduler = get_scheduler(engine)
    scheduler.start()
    return scheduler


def stop_scheduler() -> None:
    """Stop the global scheduler"""
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None
