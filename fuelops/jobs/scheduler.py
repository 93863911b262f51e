"""
APScheduler Configuration

Background job scheduler for the commission engine.

Jobs:
- auto_calculate_commissions: daily at the configured time, only while
  auto-calculation is enabled

The toggle and time of day start from AUTO_CALCULATION_* settings and can be
changed at runtime with configure_auto_calculation(). Runtime changes live in
this process only; a restart goes back to the settings.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from fuelops.config import settings

logger = logging.getLogger(__name__)

AUTO_CALCULATION_JOB_ID = 'auto_calculate_commissions'

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 300,  # Allow 5 minutes grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)


async def run_auto_calculation():
    """
    Wrapper called by APScheduler.
    Errors are logged here so a failed run does not kill the scheduler.
    """
    from fuelops.jobs.commission_jobs import auto_calculate_commissions

    try:
        result = await auto_calculate_commissions()
        logger.info(
            f"Job '{AUTO_CALCULATION_JOB_ID}' completed: "
            f"{result['succeeded']} succeeded, {result['failed']} failed"
        )
    except Exception as e:
        logger.error(f"Job '{AUTO_CALCULATION_JOB_ID}' failed: {e}")


@dataclass
class AutoCalculationConfig:
    enabled: bool
    hour: int
    minute: int

    @property
    def schedule_time(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


def config_from_settings() -> AutoCalculationConfig:
    return AutoCalculationConfig(
        enabled=settings.AUTO_CALCULATION_ENABLED,
        hour=settings.AUTO_CALCULATION_HOUR,
        minute=settings.AUTO_CALCULATION_MINUTE,
    )


_config = config_from_settings()


def get_auto_calculation_config() -> AutoCalculationConfig:
    return _config


def auto_calculation_schedule() -> str:
    return f"daily at {_config.schedule_time} {settings.SCHEDULER_TIMEZONE}"


def _schedule_job():
    scheduler.add_job(
        run_auto_calculation,
        'cron',
        hour=_config.hour,
        minute=_config.minute,
        id=AUTO_CALCULATION_JOB_ID,
        name='Commission Auto-Calculation',
        replace_existing=True,
    )


def _unschedule_job():
    if scheduler.get_job(AUTO_CALCULATION_JOB_ID) is not None:
        scheduler.remove_job(AUTO_CALCULATION_JOB_ID)


def start_scheduler():
    """Start the background job scheduler."""
    global _config
    _config = config_from_settings()

    if not _config.enabled:
        logger.info("Commission auto-calculation disabled; scheduler not started")
        return

    if not scheduler.running:
        _schedule_job()
        scheduler.start()
        logger.info("Background job scheduler started")

        # Log all scheduled jobs
        jobs = scheduler.get_jobs()
        for job in jobs:
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def configure_auto_calculation(enabled: bool, schedule_time: Optional[str] = None) -> AutoCalculationConfig:
    """
    Turn auto-calculation on or off and optionally move it to another time of day.

    schedule_time is "HH:MM" in the scheduler timezone. Enabling starts the
    scheduler if it is not running yet; disabling removes the job and leaves
    the scheduler itself alone.
    """
    global _config
    hour, minute = _config.hour, _config.minute
    if schedule_time is not None:
        hour, minute = (int(part) for part in schedule_time.split(":"))
    _config = AutoCalculationConfig(enabled=enabled, hour=hour, minute=minute)

    if enabled:
        _schedule_job()
        if not scheduler.running:
            scheduler.start()
        logger.info(f"Commission auto-calculation enabled, {auto_calculation_schedule()}")
    else:
        _unschedule_job()
        logger.info("Commission auto-calculation disabled")

    return _config


def reset_auto_calculation_config() -> AutoCalculationConfig:
    """Drop runtime changes and go back to the settings."""
    global _config
    _config = config_from_settings()
    if not _config.enabled:
        _unschedule_job()
    return _config


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    result = []
    for job in jobs:
        # Jobs added before the scheduler starts have no next_run_time yet
        next_run_time = getattr(job, 'next_run_time', None)
        result.append({
            'id': job.id,
            'name': job.name,
            'next_run_time': str(next_run_time) if next_run_time else None,
            'trigger': str(job.trigger),
        })
    return result
