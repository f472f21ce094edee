"""
Background Scheduling
=====================

Wrapper around APScheduler for the periodic sync jobs (incremental poll,
store vectorization and pending-update sweep).
"""

from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from incident_sync.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class SyncScheduler:
    """
    Wrapper for APScheduler running interval jobs on the asyncio loop.

    Manages the lifecycle of the scheduler and jobs. Each job runs with
    ``max_instances=1`` so a slow run is never overlapped by the next tick.
    """

    def __init__(self, misfire_grace_seconds: int = 60):
        self._misfire_grace_seconds = misfire_grace_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._jobs: Dict[str, int] = {}
        self._running = False

    def _get_scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone="UTC")
        return self._scheduler

    def add_interval_job(
        self,
        job_func: JobFunc,
        job_id: str,
        seconds: int,
        name: Optional[str] = None
    ) -> None:
        """Register (or replace) an interval job."""
        self._get_scheduler().add_job(
            job_func,
            "interval",
            seconds=seconds,
            id=job_id,
            name=name or job_id,
            misfire_grace_time=self._misfire_grace_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._jobs[job_id] = seconds
        logger.info(
            "Scheduled job registered",
            extra={"job_id": job_id, "interval_seconds": seconds}
        )

    def remove_job(self, job_id: str) -> bool:
        """Unregister a job. Returns False when it was not scheduled."""
        if job_id not in self._jobs:
            return False
        self._jobs.pop(job_id)
        if self._scheduler is not None and self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)
        logger.info("Scheduled job removed", extra={"job_id": job_id})
        return True

    def has_job(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def start(self) -> None:
        """Start the scheduler (must be called from the running event loop)."""
        if self._running:
            logger.warning("Sync scheduler already running")
            return

        self._get_scheduler().start()
        self._running = True
        logger.info("Sync scheduler started", extra={"jobs": sorted(self._jobs)})

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        self._jobs.clear()
        self._running = False
        logger.info("Sync scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
