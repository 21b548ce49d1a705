"""
APScheduler configuration for running backups periodically.

Used by `mailcow-backup schedule` as an alternative to a cron entry: the
backup runs in the foreground process on the SCHEDULE_CRON crontab.
"""

import logging
from typing import Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from mailcow_backup.backup.executor import RunResult, execute_backup
from mailcow_backup.config import BackupConfig, ConfigError


logger = logging.getLogger(__name__)

JOB_ID = 'mailcow_backup'


def init_scheduler(config: BackupConfig, job_func: Optional[Callable] = None) -> BlockingScheduler:
    """
    Create a scheduler with the backup job registered.

    Args:
        config: Backup configuration with schedule_cron set
        job_func: Callable run with the config on every trigger (run_scheduled_backup if None)

    Returns:
        Configured, not yet started BlockingScheduler

    Raises:
        ConfigError: If SCHEDULE_CRON is missing or not a valid crontab expression
    """
    if not config.schedule_cron:
        raise ConfigError("Missing required setting for scheduled mode: SCHEDULE_CRON")

    try:
        trigger = CronTrigger.from_crontab(config.schedule_cron)
    except ValueError as e:
        raise ConfigError(f"Invalid SCHEDULE_CRON {config.schedule_cron!r}: {e}")

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Never two runs against the same mailcow at once
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(executors=executors, job_defaults=job_defaults)
    scheduler.add_job(
        func=job_func or run_scheduled_backup,
        args=[config],
        trigger=trigger,
        id=JOB_ID,
        name='Mailcow Backup',
        replace_existing=True
    )

    return scheduler


def run_scheduled_backup(config: BackupConfig) -> RunResult:
    """
    Job function: run one backup and log its outcome.

    Failures are already notified by the executor; the scheduler keeps running.
    """
    result = execute_backup(config)
    if result.succeeded:
        logger.info(f"Scheduled backup {result.run_id} completed")
    else:
        logger.error(f"Scheduled backup {result.run_id} failed: {result.error}")
    return result


def run_scheduler(config: BackupConfig, scheduler: Optional[BlockingScheduler] = None):
    """
    Run backups on the configured schedule until interrupted.

    Args:
        config: Backup configuration
        scheduler: Pre-built scheduler (init_scheduler(config) if None)
    """
    scheduler = scheduler or init_scheduler(config)
    logger.info(f"Starting scheduler (schedule: {config.schedule_cron})")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
