"""
Background Job Scheduler using APScheduler.

Runs the periodic monitoring maintenance (anomaly detection, metric
cleanup) inside the application's event loop.

Usage:
    from journal_sync.core.scheduler import register_job

    @register_job(trigger='interval', minutes=5, id='my_job', timeout_seconds=60)
    async def my_background_job():
        ...
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import wraps
from typing import Callable, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

# ============================================================================
# Scheduler Configuration
# ============================================================================

DEFAULT_JOB_TIMEOUT_SECONDS = 5 * 60

job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,
    'misfire_grace_time': 60,
}

scheduler = AsyncIOScheduler(
    jobstores={'default': MemoryJobStore()},
    executors={'default': AsyncIOExecutor()},
    job_defaults=job_defaults,
    timezone='UTC',
)


# ============================================================================
# Event Listeners
# ============================================================================

def job_executed_listener(event: JobExecutionEvent):
    """Log when a job completes successfully."""
    logger.debug(f"Job '{event.job_id}' executed at {event.scheduled_run_time}")


def job_error_listener(event: JobExecutionEvent):
    """Log when a job fails."""
    logger.error(f"Job '{event.job_id}' failed with error: {event.exception}")
    if event.traceback:
        logger.error(f"  Traceback: {event.traceback}")


def job_missed_listener(event: JobExecutionEvent):
    """Log when a job is missed."""
    logger.warning(f"Job '{event.job_id}' missed its scheduled time: {event.scheduled_run_time}")


scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)


class JobTimeoutError(Exception):
    """Raised when a job exceeds its timeout."""
    def __init__(self, job_id: str, timeout_seconds: int):
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Job '{job_id}' timed out after {timeout_seconds} seconds")


# ============================================================================
# Job Registration
# ============================================================================

# Jobs declared before the scheduler starts
_pending_jobs: list[Callable] = []


def register_job(
    trigger: str = 'interval',
    id: Optional[str] = None,
    name: Optional[str] = None,
    replace_existing: bool = True,
    timeout_seconds: Optional[int] = None,
    **trigger_args
) -> Callable:
    """
    Decorator to register a coroutine function as a scheduled job.

    Args:
        trigger: Type of trigger ('interval', 'cron', 'date')
        id: Unique job ID (defaults to function name)
        name: Human-readable job name
        replace_existing: Replace job if it already exists
        timeout_seconds: Max execution time (default: 5 minutes)
        **trigger_args: Arguments for the trigger (e.g., minutes=5)
    """
    job_timeout = timeout_seconds if timeout_seconds is not None else DEFAULT_JOB_TIMEOUT_SECONDS

    def decorator(func: Callable) -> Callable:
        job_id = id or func.__name__
        job_name = name or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = datetime.now(timezone.utc)
            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=job_timeout)
            except asyncio.TimeoutError:
                elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
                logger.error(f"Job '{job_id}' TIMED OUT after {elapsed:.2f}s (limit: {job_timeout}s)")
                raise JobTimeoutError(job_id, job_timeout)

        wrapper._job_info = {
            'func': wrapper,
            'trigger': trigger,
            'id': job_id,
            'name': job_name,
            'replace_existing': replace_existing,
            'timeout_seconds': job_timeout,
            'trigger_args': trigger_args,
        }

        if scheduler.running:
            _add_registered_job(wrapper)
        else:
            _pending_jobs.append(wrapper)

        return wrapper
    return decorator


def _add_registered_job(job_func: Callable) -> None:
    info = job_func._job_info
    scheduler.add_job(
        info['func'],
        info['trigger'],
        id=info['id'],
        name=info['name'],
        replace_existing=info['replace_existing'],
        **info['trigger_args']
    )
    logger.info(f"Registered job: {info['id']} ({info['trigger']}, timeout: {info['timeout_seconds']}s)")


# ============================================================================
# Scheduler Lifecycle
# ============================================================================

def start_scheduler():
    """Start the scheduler and register pending jobs."""
    if scheduler.running:
        logger.warning("Scheduler is already running")
        return

    for job_func in _pending_jobs:
        _add_registered_job(job_func)
    _pending_jobs.clear()

    scheduler.start()
    logger.info(f"Background scheduler started with {len(scheduler.get_jobs())} job(s)")


def stop_scheduler():
    """Stop the scheduler without waiting for running jobs."""
    if not scheduler.running:
        logger.warning("Scheduler is not running")
        return
    scheduler.shutdown(wait=False)
    logger.info("Background scheduler stopped")


def get_job_status() -> list[dict]:
    """Get status of all registered jobs."""
    jobs = []
    for job in scheduler.get_jobs():
        timeout = DEFAULT_JOB_TIMEOUT_SECONDS
        if hasattr(job.func, '_job_info'):
            timeout = job.func._job_info.get('timeout_seconds', DEFAULT_JOB_TIMEOUT_SECONDS)

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run_time': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger),
            'timeout_seconds': timeout,
        })
    return jobs
