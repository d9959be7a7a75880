"""Scheduler service for the periodic reconciliation sweep."""

import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from notifier.logging import get_logger

logger = get_logger(__name__, component="scheduler")

RECONCILE_JOB_ID = "notification-reconcile"


class SchedulerService:
    """
    Wraps APScheduler to run a job at a fixed interval in the background.

    The main thread stays free to handle signals and coordinate shutdown.
    Overlapping runs are prevented and a delayed run executes only once.
    """

    def __init__(
        self,
        job_callable: Callable[[], object],
        interval_seconds: int,
        shutdown_event: Optional[threading.Event] = None,
        job_id: str = RECONCILE_JOB_ID,
        job_name: str = "Notification reconciliation",
        run_immediately: bool = True,
    ):
        """
        Initialize the scheduler service.

        Args:
            job_callable: Function to call on each run (e.g. reconciler.run_once)
            interval_seconds: Interval between runs in seconds
            shutdown_event: Optional event set on shutdown for coordination
            job_id: Scheduler job identifier
            job_name: Human-readable job name for logs
            run_immediately: Whether the first run happens at startup
        """
        self.job_callable = job_callable
        self.interval_seconds = interval_seconds
        self.shutdown_event = shutdown_event
        self.job_id = job_id
        self.job_name = job_name
        self.run_immediately = run_immediately

        self.scheduler = BackgroundScheduler(
            job_defaults={
                "max_instances": 1,
                "coalesce": True,
                "misfire_grace_time": interval_seconds,
            },
            timezone=timezone.utc,
        )

    def start(self) -> None:
        """Register the job and start the scheduler thread."""
        if self.scheduler.running:
            logger.warning(
                "Scheduler already running; ignoring start()",
                extra={"event": "scheduler.already_running", "job_id": self.job_id},
            )
            return

        next_run = datetime.now(timezone.utc) if self.run_immediately else None
        job_kwargs = {"next_run_time": next_run} if next_run else {}

        self.scheduler.add_job(
            func=self._run_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds, timezone=timezone.utc),
            id=self.job_id,
            name=self.job_name,
            replace_existing=True,
            **job_kwargs,
        )
        self.scheduler.start()

        logger.info(
            f"Scheduler started with interval: {self.interval_seconds} seconds",
            extra={
                "event": "scheduler.started",
                "job_id": self.job_id,
                "interval_seconds": self.interval_seconds,
                "run_immediately": self.run_immediately,
            },
        )

    def _run_job(self) -> None:
        try:
            self.job_callable()
        except Exception as e:
            # APScheduler would only log this at its own (quiet) logger
            logger.error(
                f"Scheduled job {self.job_name} failed: {e}",
                extra={"event": "scheduler.job_failed", "job_id": self.job_id},
                exc_info=True,
            )

    def shutdown(self, wait: bool = False) -> None:
        """
        Shutdown the scheduler.

        Args:
            wait: If True, wait for a running job to complete before returning
        """
        logger.info(
            "Shutting down scheduler",
            extra={"event": "scheduler.stopping", "wait_for_jobs": wait},
        )

        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

        if self.shutdown_event:
            self.shutdown_event.set()

        logger.info("Scheduler shutdown complete", extra={"event": "scheduler.stopped"})

    def trigger_now(self) -> None:
        """Run the job synchronously in the current thread."""
        logger.info(
            f"Triggering immediate run of {self.job_name}",
            extra={"event": "scheduler.trigger_now", "job_id": self.job_id},
        )
        self._run_job()

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_next_run_time(self) -> Optional[datetime]:
        job = self.scheduler.get_job(self.job_id)
        return job.next_run_time if job else None
