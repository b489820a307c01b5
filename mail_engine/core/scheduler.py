"""Scheduler that runs the periodic sync job with retry backoff"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from mail_engine import config
from mail_engine.core.periodic_sync import JobResult, PeriodicSyncJob


logger = logging.getLogger(__name__)

SYNC_JOB_ID = "periodic_sync"
RETRY_JOB_ID = "periodic_sync_retry"


class SyncScheduler:
    """
    Runs a PeriodicSyncJob on a fixed interval.

    A tick that asks for a retry schedules a one-off extra run after an
    exponentially growing delay (base, doubling, capped). A successful tick
    resets the delay and cancels any pending retry.
    """

    def __init__(
        self,
        job: PeriodicSyncJob,
        interval_seconds: Optional[int] = None,
        scheduler: Optional[BackgroundScheduler] = None,
        retry_base_seconds: Optional[int] = None,
        retry_max_seconds: Optional[int] = None
    ):
        self.job = job
        self.interval_seconds = interval_seconds or config.SYNC_INTERVAL_SECONDS
        self.scheduler = scheduler or BackgroundScheduler()
        self.retry_base_seconds = retry_base_seconds or config.RETRY_BASE_SECONDS
        self.retry_max_seconds = retry_max_seconds or config.RETRY_MAX_SECONDS
        self._attempt = 0
        self._tick_lock = threading.Lock()

    def start(self, run_now: bool = True) -> None:
        """Register the interval job and start the scheduler."""
        # An explicit next_run_time of None adds the job paused
        first_run = {"next_run_time": datetime.now()} if run_now else {}
        self.scheduler.add_job(
            self.run_once,
            'interval',
            seconds=self.interval_seconds,
            id=SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **first_run
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Sync scheduler started (interval: {self.interval_seconds} seconds)")

    def run_once(self) -> Optional[JobResult]:
        """
        Run one tick unless another one is in progress.

        Returns:
            The tick result, or None if the tick was skipped.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Previous sync still running, skipping this tick")
            return None
        try:
            try:
                result = self.job.run()
            except Exception:
                logger.exception("Periodic sync job crashed")
                result = JobResult.RETRY
            self._handle_result(result)
            return result
        finally:
            self._tick_lock.release()

    def next_retry_delay(self) -> int:
        """Delay before the next retry; each call doubles it up to the cap."""
        delay = min(self.retry_base_seconds * (2 ** self._attempt), self.retry_max_seconds)
        self._attempt += 1
        return delay

    def _handle_result(self, result: JobResult) -> None:
        if result == JobResult.SUCCESS:
            self._attempt = 0
            if self.scheduler.get_job(RETRY_JOB_ID):
                self.scheduler.remove_job(RETRY_JOB_ID)
            return

        delay = self.next_retry_delay()
        self.scheduler.add_job(
            self.run_once,
            'date',
            run_date=datetime.now() + timedelta(seconds=delay),
            id=RETRY_JOB_ID,
            replace_existing=True,
        )
        logger.info(f"Sync retry scheduled in {delay} seconds")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler and the job's worker pool."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Sync scheduler stopped")
        self.job.pool.shutdown(wait=wait)
