"""
APScheduler-driven polling loop for backupd.

Manages:
- The poll tick: reload the job list, evaluate every schedule, run due jobs
- Due evaluation for each schedule form
- Starting and stopping the blocking scheduler
"""

import logging
from datetime import datetime
from typing import List

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backupd.backup.archive import ArchiveProducer
from backupd.backup.executor import execute_backup_job
from backupd.job_config import load_jobs, ConfigError, DEFAULT_RETENTION
from backupd.models import Job, FixedTime, Hourly, Daily, Weekly, UnknownSchedule, ScheduleSpec


logger = logging.getLogger(__name__)

TICK_JOB_ID = 'backup_tick'
MONDAY = 0


def is_due(schedule: ScheduleSpec, now: datetime) -> bool:
    """
    Decide whether a schedule fires at ``now``.

    Matching is at minute granularity and exact: a tick that lands outside
    the matching minute misses that slot, and nothing catches it up later.

    'hourly' is due on every tick, so it runs once per poll interval rather
    than once per clock hour.

    Args:
        schedule: Parsed schedule of a job
        now: Local time of the tick

    Returns:
        True if the job should run on this tick
    """
    if isinstance(schedule, FixedTime):
        return now.hour == schedule.hour and now.minute == schedule.minute
    if isinstance(schedule, Hourly):
        return True
    if isinstance(schedule, Daily):
        return now.hour == 0 and now.minute == 0
    if isinstance(schedule, Weekly):
        return now.hour == 0 and now.minute == 0 and now.weekday() == MONDAY
    return False


class BackupScheduler:
    """
    Runs due backup jobs once per poll interval.
    """

    def __init__(
        self,
        config_path: str,
        producer: ArchiveProducer,
        poll_interval: int = 60,
        default_retention: int = DEFAULT_RETENTION,
    ):
        """
        Args:
            config_path: Job list, re-read on every tick
            producer: Archive producer with the process-wide compressor
            poll_interval: Seconds between ticks
            default_retention: Retention for lines that omit it
        """
        self.config_path = config_path
        self.producer = producer
        self.poll_interval = poll_interval
        self.default_retention = default_retention
        self.scheduler = None

    def load_jobs(self) -> List[Job]:
        """Load the job list, or an empty list if it cannot be read this tick."""
        try:
            return load_jobs(self.config_path, self.default_retention)
        except (ConfigError, OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to load job list, skipping this tick: {e}")
            return []

    def tick(self, now: datetime = None) -> dict:
        """
        Run one poll iteration.

        The job list is loaded once, up front; jobs then run one after
        another. A failing job is logged and the tick moves on.

        Args:
            now: Time to evaluate schedules against (defaults to now)

        Returns:
            Summary dict:
            {
                'jobs_loaded': int,
                'jobs_due': int,
                'succeeded': int,
                'failed': int,
                'unknown_schedule': int,
                'results': List[JobResult]
            }
        """
        if now is None:
            now = datetime.now()

        jobs = self.load_jobs()
        summary = {
            'jobs_loaded': len(jobs),
            'jobs_due': 0,
            'succeeded': 0,
            'failed': 0,
            'unknown_schedule': 0,
            'results': []
        }

        for job in jobs:
            if isinstance(job.schedule, UnknownSchedule):
                logger.warning(f"Unknown schedule: {job.schedule} for directory {job.source_dir}")
                summary['unknown_schedule'] += 1
                continue

            if not is_due(job.schedule, now):
                continue

            summary['jobs_due'] += 1
            result = self._run_job(job)

            if result is not None and result.succeeded:
                summary['succeeded'] += 1
            else:
                summary['failed'] += 1
            if result is not None:
                summary['results'].append(result)

        if summary['jobs_due']:
            logger.info(
                f"Tick complete. Due: {summary['jobs_due']}, "
                f"succeeded: {summary['succeeded']}, failed: {summary['failed']}"
            )

        return summary

    def _run_job(self, job: Job):
        try:
            return execute_backup_job(job, self.producer)
        except Exception:
            logger.exception(f"Backup job for {job.source_dir} crashed")
            return None

    def _scheduled_tick(self):
        """Tick entry point for APScheduler; nothing may escape it."""
        try:
            self.tick()
        except Exception:
            logger.exception("Poll tick failed")

    def start(self):
        """
        Start polling. Blocks until stop() is called.
        """
        if self.scheduler is not None and self.scheduler.running:
            logger.info("Scheduler already running")
            return

        executors = {
            'default': ThreadPoolExecutor(max_workers=1)
        }

        job_defaults = {
            'coalesce': True,  # Combine missed ticks into one
            'max_instances': 1,  # Ticks never overlap
            'misfire_grace_time': self.poll_interval
        }

        self.scheduler = BlockingScheduler(executors=executors, job_defaults=job_defaults)

        # First tick runs immediately, then every poll_interval seconds
        self.scheduler.add_job(
            func=self._scheduled_tick,
            trigger=IntervalTrigger(seconds=self.poll_interval),
            id=TICK_JOB_ID,
            name='Backup poll tick',
            next_run_time=datetime.now(),
            replace_existing=True
        )

        logger.info(f"Scheduler started (poll interval {self.poll_interval}s, job list {self.config_path})")
        self.scheduler.start()

    def stop(self):
        """Stop polling."""
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running
