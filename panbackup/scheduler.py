"""
APScheduler configuration for periodic backup runs.

Manages:
- A cron-triggered job that runs every configured entry
- Blocking the process until interrupted
"""

import logging
from typing import Callable, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from panbackup.config import BackupConfig, ConfigError
from panbackup.backup.orchestrator import run_backups


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup_run'


def parse_schedule(cron: str) -> CronTrigger:
    """
    Parse a standard 5-field crontab expression (local time).

    Raises:
        ConfigError: If the expression is invalid
    """
    try:
        return CronTrigger.from_crontab(cron)
    except ValueError as e:
        raise ConfigError(f"Invalid schedule '{cron}': {e}") from e


def create_scheduler(
    config: BackupConfig,
    cron: str,
    prompt: Optional[Callable[[str], str]] = None
) -> BlockingScheduler:
    """
    Create a scheduler with one backup job.

    Args:
        config: Loaded configuration
        cron: Crontab expression
        prompt: Callable used for interactive Baidu authorization

    Returns:
        Configured (not started) BlockingScheduler

    Raises:
        ConfigError: If the cron expression is invalid
    """
    trigger = parse_schedule(cron)

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Never overlap two runs
        'misfire_grace_time': 300
    }

    scheduler = BlockingScheduler(executors=executors, job_defaults=job_defaults)

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[config, prompt],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Backup run',
        replace_existing=True
    )

    logger.info(f"Scheduled backup run ({cron})")
    return scheduler


def _execute_backup_wrapper(config: BackupConfig, prompt: Optional[Callable[[str], str]] = None):
    """
    Run all entries from the scheduler thread.

    A failed run is logged; the schedule keeps going.
    """
    try:
        summary = run_backups(config, prompt=prompt)
        logger.info(f"Scheduled backup run finished with exit code {summary.exit_code}")
    except Exception:
        logger.exception("Scheduled backup run failed")


def run_scheduled(config: BackupConfig, cron: str, prompt: Optional[Callable[[str], str]] = None):
    """
    Block and run backups on the given cron schedule until interrupted.
    """
    scheduler = create_scheduler(config, cron, prompt=prompt)

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
